"""感知模块：读取 UI 树快照、生成差异与给 LLM 看的元素摘要"""

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence, Tuple

from .models import UIElement
from .resolver import collect_texts, iter_nodes

logger = logging.getLogger(__name__)

DIALOG_INDICATORS = (
    "弹窗", "提示", "通知", "确认", "警告",
    "Dialog", "Alert", "Popup", "Modal",
)


class ScreenBinding(Protocol):
    """屏幕绑定：读取 UI 树并注入手势，手势均为可等待对象"""

    async def read(self) -> Optional[UIElement]: ...

    async def screenshot(self) -> Optional[bytes]: ...

    async def tap(self, x: int, y: int) -> bool: ...

    async def swipe(self, path: Sequence[Tuple[int, int]], duration_ms: int = 300) -> bool: ...

    async def set_text(self, node: UIElement, text: str) -> bool: ...

    async def back(self) -> bool: ...

    async def home(self) -> bool: ...

    async def launch_app(self, package: str) -> bool: ...

    def screen_size(self) -> Tuple[int, int]: ...


@dataclass(frozen=True)
class ScreenSnapshot:
    """某一时刻的屏幕快照（不可变，每步读取一次）"""
    root: Optional[UIElement]
    screenshot: Optional[bytes] = None
    taken_at: float = field(default_factory=time.time)

    @property
    def package(self) -> str:
        return self.root.package if self.root is not None else ""

    @property
    def visible_texts(self) -> List[str]:
        return collect_texts(self.root)

    @property
    def clickable_labels(self) -> List[str]:
        return [node.label for node, _ in iter_nodes(self.root) if node.clickable and node.label]

    @property
    def has_dialog(self) -> bool:
        for node, _ in iter_nodes(self.root):
            if "dialog" in node.class_name.lower():
                return True
        return False

    @property
    def fingerprint(self) -> str:
        digest = hashlib.sha1()
        for node, depth in iter_nodes(self.root):
            digest.update(f"{depth}|{node.short_class}|{node.label}|{node.bounds}".encode("utf-8"))
        return digest.hexdigest()

    def contains_text(self, needle: str) -> bool:
        needle = needle.lower()
        return any(needle in text.lower() for text in self.visible_texts)


@dataclass(frozen=True)
class ScreenDiff:
    """两次快照之间的差异"""
    has_changes: bool
    added: Tuple[str, ...] = ()
    removed: Tuple[str, ...] = ()
    summary: str = ""


class ScreenContextProvider:
    """
    感知模块：从屏幕绑定读取快照，增强语义信息。
    """

    def __init__(self, binding: ScreenBinding, capture_screenshots: bool = False):
        self.binding = binding
        self.capture_screenshots = capture_screenshots
        self.last_snapshot: Optional[ScreenSnapshot] = None

    async def snapshot(self) -> ScreenSnapshot:
        """读取当前 UI 树（可选附带截图）"""
        root = await self.binding.read()
        shot = None
        if self.capture_screenshots:
            shot = await self.binding.screenshot()
        snap = ScreenSnapshot(root=root, screenshot=shot)
        self.last_snapshot = snap
        return snap

    async def changed_since(self, previous: Optional[ScreenSnapshot]) -> Tuple[ScreenSnapshot, ScreenDiff]:
        current = await self.snapshot()
        return current, self.diff(previous, current)

    @staticmethod
    def diff(old: Optional[ScreenSnapshot], new: Optional[ScreenSnapshot], limit: int = 20) -> ScreenDiff:
        """按可见文本比较两次快照"""
        if old is None and new is None:
            return ScreenDiff(False, summary="无数据")
        if old is None or old.root is None:
            texts = new.visible_texts if new is not None else []
            return ScreenDiff(True, added=tuple(texts[:limit]), summary=f"新页面加载，共 {len(texts)} 条文本")
        if new is None or new.root is None:
            return ScreenDiff(True, removed=tuple(old.visible_texts[:limit]), summary="页面已关闭")
        if old.fingerprint == new.fingerprint:
            return ScreenDiff(False, summary="页面无变化")
        old_texts = old.visible_texts
        new_texts = new.visible_texts
        added = [t for t in new_texts if t not in old_texts]
        removed = [t for t in old_texts if t not in new_texts]
        summary = f"新增 {len(added)} 条，消失 {len(removed)} 条"
        if not added and not removed:
            summary = "布局变化，文本未变"
        return ScreenDiff(True, tuple(added[:limit]), tuple(removed[:limit]), summary)

    @staticmethod
    def summarize(root: Optional[UIElement], max_items: int = 40) -> str:
        """生成元素文本摘要（用于 LLM）"""
        if root is None:
            return "(无窗口)"
        lines = []
        for node, _ in iter_nodes(root):
            if len(lines) >= max_items:
                break
            label = node.label
            if not label or not (node.clickable or node.editable):
                continue
            x, y = node.center()
            flags = ""
            if node.editable:
                flags += " [EDIT]"
            if not node.enabled:
                flags += " [DISABLED]"
            lines.append(f"[{node.short_class}] \"{label[:60]}\" @ ({x}, {y}){flags}")
        if not lines:
            texts = collect_texts(root, limit=max_items)
            return "\n".join(f"\"{t[:60]}\"" for t in texts) or "(无可见元素)"
        return "\n".join(lines)

    @staticmethod
    def diff_summary(diff: ScreenDiff) -> str:
        """给 AI 看的简短差异描述"""
        if not diff.has_changes:
            return "页面无变化"
        lines = ["【页面变化摘要】", diff.summary]
        if diff.added:
            lines.append("新增: " + ", ".join(t[:30] for t in diff.added[:5]))
        if diff.removed:
            lines.append("消失: " + ", ".join(t[:30] for t in diff.removed[:5]))
        return "\n".join(lines)


def has_dialog_indicator(snapshot: ScreenSnapshot) -> bool:
    return snapshot.has_dialog or any(
        indicator.lower() in text.lower() for text in snapshot.visible_texts for indicator in DIALOG_INDICATORS
    )
