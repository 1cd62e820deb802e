import unittest

from script_agent.controller import swipe_endpoints
from script_agent.memory import Memory
from script_agent.perception import ScreenContextProvider, ScreenSnapshot, has_dialog_indicator
from tests.fakes import FakeScreen, button, node, tree


class SnapshotTests(unittest.IsolatedAsyncioTestCase):
    async def test_snapshot_records_last_snapshot(self) -> None:
        screen = FakeScreen({"main": tree(button("首页", row=8))})
        provider = ScreenContextProvider(screen)
        snap = await provider.snapshot()
        self.assertIs(provider.last_snapshot, snap)
        self.assertEqual(snap.clickable_labels, ["首页"])
        self.assertIsNone(snap.screenshot)

    def test_diff_reports_added_and_removed_texts(self) -> None:
        old = ScreenSnapshot(tree(node("列表"), node("笔记一")))
        new = ScreenSnapshot(tree(node("列表"), node("笔记二")))
        diff = ScreenContextProvider.diff(old, new)
        self.assertTrue(diff.has_changes)
        self.assertEqual(diff.added, ("笔记二",))
        self.assertEqual(diff.removed, ("笔记一",))
        self.assertFalse(ScreenContextProvider.diff(old, ScreenSnapshot(old.root)).has_changes)
        self.assertEqual(ScreenContextProvider.diff_summary(ScreenContextProvider.diff(old, old)), "页面无变化")

    def test_summary_lists_interactive_nodes_with_coordinates(self) -> None:
        root = tree(node("标题"), button("搜索", row=1), node("", editable=True, clickable=True, desc="输入框", row=2))
        summary = ScreenContextProvider.summarize(root)
        self.assertIn('"搜索" @ (540, 290)', summary)
        self.assertIn("[EDIT]", summary)
        self.assertNotIn("标题", summary)
        self.assertEqual(ScreenContextProvider.summarize(tree(node("只有文字"))), '"只有文字"')
        self.assertEqual(ScreenContextProvider.summarize(None), "(无窗口)")

    def test_dialog_indicator(self) -> None:
        self.assertTrue(has_dialog_indicator(ScreenSnapshot(tree(node("系统提示")))))
        self.assertTrue(has_dialog_indicator(ScreenSnapshot(tree(node("x", cls="android.app.AlertDialog")))))
        self.assertFalse(has_dialog_indicator(ScreenSnapshot(tree(node("首页")))))


class SwipeEndpointTests(unittest.TestCase):
    def test_up_swipe_moves_from_lower_to_upper_quarter(self) -> None:
        self.assertEqual(swipe_endpoints("up", 1080, 1920), [(540, 1440), (540, 480)])
        self.assertEqual(swipe_endpoints("left", 1000, 2000), [(750, 1000), (250, 1000)])
        self.assertIsNone(swipe_endpoints("diagonal", 1080, 1920))


class MemoryTests(unittest.TestCase):
    def test_repeated_action_needs_threshold_identical_records(self) -> None:
        memory = Memory()
        memory.record("tap", "a", "failed")
        memory.record("tap", "a", "failed")
        self.assertFalse(memory.is_repeated_action("tap", "a"))
        memory.record("tap", "a", "success")
        self.assertTrue(memory.is_repeated_action("tap", "a"))
        self.assertFalse(memory.is_repeated_action("tap", "b"))
        self.assertEqual(memory.failed_targets, ["a", "a"])

    def test_format_history(self) -> None:
        memory = Memory()
        self.assertEqual(memory.format_history(), "(无历史)")
        memory.record("back", None, "success")
        memory.record("execute_step", "2", "failed")
        self.assertEqual(memory.format_history(),
                         "Step 1: back → success\nStep 2: execute_step (2) → failed\n已失败目标: 2")
        memory.record("tap_text", "2", "failed")
        self.assertTrue(memory.format_history().endswith("已失败目标: 2"))


if __name__ == "__main__":
    unittest.main()
