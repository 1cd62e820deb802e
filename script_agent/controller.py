"""执行模块：把点击 / 滑动 / 输入 / 返回下发到屏幕绑定"""

import asyncio
import logging
from typing import List, Optional, Tuple

from .models import UIElement
from .perception import ScreenBinding

logger = logging.getLogger(__name__)

TAP_DURATION_MS = 150
SWIPE_DURATION_MS = 300


def swipe_endpoints(direction: str, width: int, height: int,
                    distance: float = 0.5) -> Optional[List[Tuple[int, int]]]:
    """根据方向和屏幕比例计算滑动起止点；distance=0.5 时为 3/4 -> 1/4"""
    half = distance / 2
    direction = direction.lower()
    if direction == "up":
        return [(width // 2, int(height * (0.5 + half))), (width // 2, int(height * (0.5 - half)))]
    if direction == "down":
        return [(width // 2, int(height * (0.5 - half))), (width // 2, int(height * (0.5 + half)))]
    if direction == "left":
        return [(int(width * (0.5 + half)), height // 2), (int(width * (0.5 - half)), height // 2)]
    if direction == "right":
        return [(int(width * (0.5 - half)), height // 2), (int(width * (0.5 + half)), height // 2)]
    return None


class Controller:
    """执行模块：下发手势，返回是否成功"""

    def __init__(self, binding: ScreenBinding, action_delay_s: float = 1.0):
        self.binding = binding
        self.action_delay_s = action_delay_s

    async def _settle(self, factor: float = 1.0):
        if self.action_delay_s > 0:
            await asyncio.sleep(self.action_delay_s * factor)

    async def tap(self, x: int, y: int) -> bool:
        """点击坐标"""
        try:
            ok = await self.binding.tap(x, y)
        except Exception as e:
            logger.warning("❌ 点击失败 (%s, %s): %s", x, y, e)
            return False
        if ok:
            logger.info("✓ 点击 (%s, %s)", x, y)
            await self._settle(0.5)
        else:
            logger.warning("❌ 点击手势被取消 (%s, %s)", x, y)
        return ok

    async def tap_element(self, element: UIElement) -> bool:
        """点击元素中心"""
        if element.bounds.is_empty():
            logger.warning("❌ 元素无有效坐标: %s", element.label)
            return False
        x, y = element.center()
        ok = await self.tap(x, y)
        if ok:
            logger.info("✓ 点击 [%s] %s", element.short_class, element.label[:40])
        return ok

    async def swipe(self, direction: str, distance: float = 0.5) -> bool:
        """滑动"""
        width, height = self.binding.screen_size()
        path = swipe_endpoints(direction, width, height, distance)
        if path is None:
            logger.warning("❌ 无效滑动方向: %s", direction)
            return False
        try:
            ok = await self.binding.swipe(path, SWIPE_DURATION_MS)
        except Exception as e:
            logger.warning("❌ 滑动失败: %s", e)
            return False
        if ok:
            logger.info("✓ 滑动 %s", direction)
            await self._settle()
        return ok

    async def set_text(self, node: UIElement, text: str) -> bool:
        """填充输入框"""
        try:
            ok = await self.binding.set_text(node, text)
        except Exception as e:
            logger.warning("❌ 填充失败: %s", e)
            return False
        if ok:
            logger.info("✓ 填充 %s = '%s'", node.label[:30] or node.short_class, text)
            await self._settle(0.5)
        return ok

    async def back(self) -> bool:
        """返回"""
        try:
            ok = await self.binding.back()
        except Exception as e:
            logger.warning("❌ 返回失败: %s", e)
            return False
        if ok:
            logger.info("✓ 返回")
            await self._settle()
        return ok

    async def home(self) -> bool:
        try:
            ok = await self.binding.home()
        except Exception as e:
            logger.warning("❌ 回到桌面失败: %s", e)
            return False
        if ok:
            await self._settle()
        return ok

    async def launch(self, package: str) -> bool:
        """启动应用，失败（未安装）返回 False"""
        try:
            ok = await self.binding.launch_app(package)
        except Exception as e:
            logger.warning("❌ 启动失败 %s: %s", package, e)
            return False
        if ok:
            logger.info("✓ 启动 %s", package)
            await self._settle(2.0)
        return ok

    async def wait(self, ms: int) -> bool:
        """等待"""
        if ms > 0:
            await asyncio.sleep(ms / 1000)
        logger.debug("✓ 等待 %sms", ms)
        return True
