"""弹窗规则库：不经过 AI，自动检测并关闭常见弹窗、广告、提示框"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .controller import Controller
from .models import UIElement
from .perception import ScreenContextProvider
from .resolver import iter_nodes

logger = logging.getLogger(__name__)

CLOSE_BUTTON_TEXTS = (
    # 明确的关闭词
    "关闭", "×", "✕", "X", "╳", "x",
    "取消", "跳过", "暂不", "暂时不",
    # 拒绝词
    "不了", "不用了", "不需要", "不感兴趣",
    "残忍拒绝", "狠心离开", "忍痛拒绝", "放弃", "算了",
    # 单按钮弹窗的确认词
    "我知道了", "知道了", "好的", "好", "确定", "确认", "了解", "明白了", "收到",
    # 延迟词
    "以后再说", "下次再说", "稍后", "不再提醒", "不再显示",
    # 广告
    "跳过广告", "Skip", "SKIP",
    # 权限 / 更新
    "拒绝", "禁止", "不允许", "稍后开启",
    "暂不更新", "以后更新", "忽略此版本", "下次提醒",
    # 英文
    "Close", "Cancel", "Dismiss", "Not now", "No thanks", "Later", "Got it", "OK",
)

POPUP_TITLE_PATTERNS = (
    "温馨提示", "提示", "通知", "公告",
    "新用户专享", "专属福利", "限时优惠", "特惠",
    "开启通知", "获取权限", "申请权限",
    "版本更新", "发现新版本", "升级",
    "签到", "打卡", "领取", "红包", "优惠券", "折扣",
    "活动", "邀请",
)

# 不应点击的按钮（避免误触）
AVOID_BUTTON_TEXTS = (
    "立即更新", "马上更新", "立即升级",
    "立即领取", "马上领取", "去领取",
    "去看看", "查看详情", "了解更多",
    "开启", "允许", "同意", "确认领取",
    "购买", "付款", "支付", "充值",
    "分享到", "转发", "邀请好友",
    "Update now", "Allow", "Buy",
)

APP_SPECIFIC_CLOSE_TEXTS = (
    (("jd", "jingdong"), ("关闭弹窗", "不感兴趣", "下次再看", "暂不领取", "残忍离开")),
    (("taobao", "tmall"), ("狠心拒绝", "关闭浮层", "不再提醒")),
    (("xingin", "xhs"), ("暂不开启", "以后再说", "不感兴趣")),
    (("douyin", "aweme"), ("暂不", "下次再说", "不感兴趣", "拒绝")),
    (("tencent.mm", "weixin"), ("取消", "我知道了", "忽略")),
)

POPUP_TYPES = (
    (("更新", "版本", "update"), "update"),
    (("权限", "允许", "permission"), "permission"),
    (("红包", "优惠", "福利"), "promotion"),
    (("签到", "打卡"), "checkin"),
    (("通知", "消息", "notification"), "notification"),
    (("广告", "推广", "advert"), "ad"),
)


@dataclass(frozen=True)
class PopupDetection:
    """弹窗检测结果"""
    has_popup: bool
    popup_type: Optional[str] = None
    close_button: Optional[UIElement] = None
    close_text: Optional[str] = None
    confidence: float = 0.0


@dataclass(frozen=True)
class DismissResult:
    """弹窗清理结果"""
    dismissed: bool
    popups_cleared: int = 0
    details: Tuple[str, ...] = field(default_factory=tuple)


def app_close_texts(package: str) -> Tuple[str, ...]:
    """获取 APP 特定的关闭按钮文字"""
    for keys, texts in APP_SPECIFIC_CLOSE_TEXTS:
        if any(key in package for key in keys):
            return texts
    return ()


def find_close_button(root: Optional[UIElement], close_texts: Sequence[str],
                      avoid_texts: Sequence[str] = AVOID_BUTTON_TEXTS) -> Optional[UIElement]:
    lowered_avoid = [a.lower() for a in avoid_texts]
    for node, _ in iter_nodes(root):
        if not node.clickable:
            continue
        text = (node.text or "").strip()
        desc = (node.content_desc or "").strip()
        combined = f"{text} {desc}".lower()
        if any(avoid in combined for avoid in lowered_avoid):
            continue
        for close in close_texts:
            if len(close) == 1:
                # 单字符精确匹配
                if text == close or desc == close:
                    return node
            elif text.lower() == close.lower() or desc.lower() == close.lower():
                return node
    return None


def classify_popup(all_text: str) -> str:
    lowered = all_text.lower()
    for keys, popup_type in POPUP_TYPES:
        if any(key in lowered for key in keys):
            return popup_type
    return "generic"


class PopupReflex:
    """弹窗自动关闭器：基于规则库，零 Token 消耗"""

    def __init__(self, screen: ScreenContextProvider, controller: Controller):
        self.screen = screen
        self.controller = controller

    def detect(self, root: Optional[UIElement]) -> PopupDetection:
        """检测当前屏幕是否有弹窗"""
        if root is None:
            return PopupDetection(False)
        close_texts = CLOSE_BUTTON_TEXTS + app_close_texts(root.package)
        all_text = " ".join(n.combined_text for n, _ in iter_nodes(root))
        button = find_close_button(root, close_texts)
        if button is not None:
            logger.debug("🎯 检测到弹窗关闭按钮: %s", button.label)
            return PopupDetection(True, classify_popup(all_text), button, button.label, 0.9)
        if any(pattern.lower() in all_text.lower() for pattern in POPUP_TITLE_PATTERNS):
            logger.debug("⚠ 检测到弹窗特征，但未找到关闭按钮")
            return PopupDetection(True, "unknown", confidence=0.6)
        return PopupDetection(False)

    async def dismiss_once(self) -> Optional[str]:
        """尝试关闭一个弹窗，成功返回按钮文字"""
        snap = await self.screen.snapshot()
        detection = self.detect(snap.root)
        if not detection.has_popup or detection.close_button is None:
            return None
        if await self.controller.tap_element(detection.close_button):
            logger.info("✓ 已关闭弹窗 [%s]: %s", detection.popup_type, detection.close_text)
            return detection.close_text or "?"
        return None

    async def dismiss_all(self, max_attempts: int = 5, delay_s: float = 0.3) -> DismissResult:
        """循环清理所有弹窗，max_attempts 防止死循环"""
        details: List[str] = []
        cleared = 0
        for attempt in range(max_attempts):
            closed = await self.dismiss_once()
            if closed is None:
                return DismissResult(cleared > 0, cleared, tuple(details))
            cleared += 1
            details.append(f"第{attempt + 1}次：关闭 {closed}")
            if delay_s > 0:
                await asyncio.sleep(delay_s)
        details.append(f"达到最大尝试次数 {max_attempts}")
        return DismissResult(cleared > 0, cleared, tuple(details))
