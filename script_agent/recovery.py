"""错误恢复策略：按优先级排列的独立策略集合

每个策略判断自己是否适用，适用时执行恢复动作；每次尝试只应用
优先级最高的那个适用策略。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .controller import Controller
from .errors import ErrorKind
from .models import CustomAction, UIElement
from .perception import ScreenSnapshot, has_dialog_indicator
from .resolver import iter_nodes

logger = logging.getLogger(__name__)

# 屏幕上已知的安全空白区域（左上角）
SAFE_BLANK_POINT = (50, 100)


@dataclass(frozen=True)
class RecoveryContext:
    """恢复上下文"""
    error_kind: ErrorKind
    error_message: Optional[str]
    screen: ScreenSnapshot
    retry_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecoverySuccess:
    """恢复成功，可以继续执行"""
    message: str
    should_retry: bool = False
    suggested_action: Optional[CustomAction] = None


@dataclass(frozen=True)
class RecoveryFailure:
    """恢复失败"""
    message: str
    fatal: bool = False


@dataclass(frozen=True)
class NeedsHumanIntervention:
    """需要人工干预"""
    reason: str
    instructions: Optional[str] = None


RecoveryResult = Union[RecoverySuccess, RecoveryFailure, NeedsHumanIntervention]


def _find_clickable(screen: ScreenSnapshot, labels) -> Optional[UIElement]:
    for node, _ in iter_nodes(screen.root):
        if not node.clickable:
            continue
        combined = node.combined_text.lower()
        if any(label.lower() in combined for label in labels):
            return node
    return None


def _texts_contain_any(screen: ScreenSnapshot, indicators) -> bool:
    return any(indicator.lower() in text.lower() for text in screen.visible_texts for indicator in indicators)


class RecoveryStrategy:
    """恢复策略基类，priority 越小越优先"""
    name = "base"
    priority = 100

    def __init__(self, controller: Controller, delay_scale: float = 1.0):
        self.controller = controller
        self.delay_scale = delay_scale

    async def _pause(self, seconds: float):
        if seconds * self.delay_scale > 0:
            await asyncio.sleep(seconds * self.delay_scale)

    def is_applicable(self, context: RecoveryContext) -> bool:
        raise NotImplementedError

    async def recover(self, context: RecoveryContext) -> RecoveryResult:
        raise NotImplementedError


class AppCrashStrategy(RecoveryStrategy):
    name = "AppCrash"
    priority = 1

    CRASH_INDICATORS = (
        "已停止运行", "停止运行", "无响应", "崩溃",
        "has stopped", "stopped working", "not responding", "crashed",
        "Unfortunately", "keeps stopping",
    )

    def is_applicable(self, context: RecoveryContext) -> bool:
        return context.error_kind is ErrorKind.APP_CRASH or _texts_contain_any(context.screen, self.CRASH_INDICATORS)

    async def recover(self, context: RecoveryContext) -> RecoveryResult:
        logger.info("处理应用崩溃")
        button = _find_clickable(context.screen, ("关闭", "确定", "OK", "Close"))
        if button is not None:
            await self.controller.tap_element(button)
            await self._pause(0.5)
        if await self.controller.home():
            package = str(context.metadata.get("target_app") or context.screen.package or "")
            return RecoverySuccess(
                message="应用崩溃，已返回桌面",
                should_retry=False,
                suggested_action=CustomAction(action="launch", package=package) if package else None,
            )
        return RecoveryFailure("无法从崩溃中恢复", fatal=True)


class PermissionPromptStrategy(RecoveryStrategy):
    name = "PermissionPrompt"
    priority = 5

    PERMISSION_INDICATORS = (
        "允许", "权限", "访问", "获取位置", "拍照", "录音", "通讯录", "存储", "悬浮窗",
        "Allow", "Permission", "Access", "Grant", "While using", "Only this time",
    )
    ALLOW_TEXTS = ("始终允许", "仅在使用时允许", "仅此一次", "允许", "While using the app", "Only this time", "Allow")

    def __init__(self, controller: Controller, auto_grant: bool = False, delay_scale: float = 1.0):
        super().__init__(controller, delay_scale)
        self.auto_grant = auto_grant

    def _is_permission_dialog(self, screen: ScreenSnapshot) -> bool:
        has_allow = any("允许" in label or "allow" in label.lower() for label in screen.clickable_labels)
        return has_allow and _texts_contain_any(screen, self.PERMISSION_INDICATORS)

    def is_applicable(self, context: RecoveryContext) -> bool:
        return context.error_kind is ErrorKind.PERMISSION_DENIED or self._is_permission_dialog(context.screen)

    async def recover(self, context: RecoveryContext) -> RecoveryResult:
        logger.info("处理权限请求")
        if not self.auto_grant:
            return NeedsHumanIntervention("需要授予权限", "请手动点击允许按钮授予必要权限")
        button = _find_clickable(context.screen, self.ALLOW_TEXTS)
        if button is not None and await self.controller.tap_element(button):
            await self._pause(0.5)
            return RecoverySuccess(f"已授予权限: {button.label}", should_retry=True)
        return NeedsHumanIntervention("无法自动处理权限请求", "请手动授予权限后继续")


class DialogDismissStrategy(RecoveryStrategy):
    name = "DialogDismiss"
    priority = 10

    DISMISS_TEXTS = (
        "取消", "关闭", "确定", "知道了", "我知道了", "暂不", "以后再说",
        "跳过", "不了", "下次", "稍后", "忽略", "拒绝", "不允许",
        "Cancel", "Close", "OK", "Got it", "Skip", "Later", "Dismiss",
        "No thanks", "Not now", "Deny", "Don't allow",
    )

    def is_applicable(self, context: RecoveryContext) -> bool:
        return context.error_kind is ErrorKind.UNEXPECTED_DIALOG or has_dialog_indicator(context.screen)

    async def recover(self, context: RecoveryContext) -> RecoveryResult:
        logger.info("尝试关闭弹窗")
        button = _find_clickable(context.screen, self.DISMISS_TEXTS)
        if button is not None and await self.controller.tap_element(button):
            await self._pause(0.5)
            return RecoverySuccess(f"成功关闭弹窗: {button.label}", should_retry=True)
        if await self.controller.tap(*SAFE_BLANK_POINT):
            await self._pause(0.3)
            return RecoverySuccess("点击空白区域关闭弹窗", should_retry=True)
        if await self.controller.back():
            await self._pause(0.3)
            return RecoverySuccess("使用返回键关闭弹窗", should_retry=True)
        return RecoveryFailure("无法关闭弹窗")


class ScreenChangedStrategy(RecoveryStrategy):
    name = "ScreenChanged"
    priority = 15

    LOADING_INDICATORS = ("加载中", "正在加载", "Loading", "请稍候", "Please wait")

    def is_applicable(self, context: RecoveryContext) -> bool:
        return context.error_kind in (ErrorKind.SCREEN_CHANGED, ErrorKind.INVALID_LANDING_PAGE)

    async def recover(self, context: RecoveryContext) -> RecoveryResult:
        logger.info("处理屏幕意外变化")
        if _texts_contain_any(context.screen, self.LOADING_INDICATORS):
            await self._pause(2.0)
            return RecoverySuccess("等待页面加载完成", should_retry=True)
        if await self.controller.back():
            await self._pause(0.5)
            return RecoverySuccess("返回上一页", should_retry=True)
        return RecoveryFailure("屏幕状态异常，需要重新规划")


class ElementNotFoundStrategy(RecoveryStrategy):
    """等待 -> 向一个方向滚动 -> 向另一方向滚动，逐次升级"""
    name = "ElementNotFound"
    priority = 20

    def is_applicable(self, context: RecoveryContext) -> bool:
        return context.error_kind is ErrorKind.ELEMENT_NOT_FOUND

    async def recover(self, context: RecoveryContext) -> RecoveryResult:
        logger.info("处理元素未找到 (第 %s 次)", context.retry_count + 1)
        if context.retry_count == 0:
            await self._pause(1.0)
            return RecoverySuccess("等待页面加载", should_retry=True)
        if context.retry_count == 1 and await self.controller.swipe("up", 0.5):
            return RecoverySuccess("向下滚动查找元素", should_retry=True)
        if context.retry_count == 2 and await self.controller.swipe("down", 0.7):
            return RecoverySuccess("向上滚动查找元素", should_retry=True)
        return RecoveryFailure("多次尝试后仍未找到元素")


class NetworkErrorStrategy(RecoveryStrategy):
    name = "NetworkError"
    priority = 25

    NETWORK_INDICATORS = (
        "网络异常", "网络错误", "连接失败", "加载失败", "请求超时", "网络不给力",
        "Network error", "Connection failed", "Failed to load", "No internet",
    )

    def is_applicable(self, context: RecoveryContext) -> bool:
        return context.error_kind is ErrorKind.NETWORK_ERROR or _texts_contain_any(context.screen, self.NETWORK_INDICATORS)

    async def recover(self, context: RecoveryContext) -> RecoveryResult:
        logger.info("处理网络错误")
        await self._pause(3.0)
        return RecoverySuccess("等待网络恢复", should_retry=True)


class RecoveryRegistry:
    """恢复策略注册表"""

    def __init__(self):
        self.strategies: List[RecoveryStrategy] = []

    def register(self, strategy: RecoveryStrategy) -> None:
        self.strategies.append(strategy)
        self.strategies.sort(key=lambda s: s.priority)

    def unregister(self, name: str) -> None:
        self.strategies = [s for s in self.strategies if s.name != name]

    def applicable(self, context: RecoveryContext) -> List[RecoveryStrategy]:
        return [s for s in self.strategies if s.is_applicable(context)]

    async def try_recover(self, context: RecoveryContext) -> RecoveryResult:
        """应用优先级最高的适用策略"""
        candidates = self.applicable(context)
        if not candidates:
            return RecoveryFailure("没有适用的恢复策略")
        strategy = candidates[0]
        result = await strategy.recover(context)
        logger.info("🛠 恢复策略 %s -> %s", strategy.name, type(result).__name__)
        return result


def create_default_registry(controller: Controller, auto_grant_permissions: bool = False,
                            delay_scale: float = 1.0) -> RecoveryRegistry:
    """创建默认的恢复策略注册表"""
    registry = RecoveryRegistry()
    registry.register(AppCrashStrategy(controller, delay_scale))
    registry.register(PermissionPromptStrategy(controller, auto_grant_permissions, delay_scale))
    registry.register(DialogDismissStrategy(controller, delay_scale))
    registry.register(ScreenChangedStrategy(controller, delay_scale))
    registry.register(ElementNotFoundStrategy(controller, delay_scale))
    registry.register(NetworkErrorStrategy(controller, delay_scale))
    return registry
