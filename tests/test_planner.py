import unittest

from script_agent.models import AgentChoice, StepType
from script_agent.planner import Planner, parse_custom_action
from tests.fakes import FakeChatModel, make_step


class ParseCustomActionTests(unittest.TestCase):
    def test_aliases_and_nested_params(self) -> None:
        action = parse_custom_action({"type": "click", "params": {"x": "120", "y": 300}})
        self.assertEqual((action.action, action.x, action.y), ("tap", 120, 300))
        self.assertEqual(parse_custom_action({"action": "scroll", "direction": "DOWN"}).direction, "down")

    def test_tap_without_coordinates_uses_text(self) -> None:
        action = parse_custom_action({"action": "tap", "text": "登录"})
        self.assertEqual(action.action, "tap_text")
        self.assertEqual(action.text, "登录")

    def test_incomplete_or_unknown_actions(self) -> None:
        self.assertIsNone(parse_custom_action({"action": "tap"}))
        self.assertIsNone(parse_custom_action({"action": "input"}))
        self.assertIsNone(parse_custom_action({"action": "fly"}))
        self.assertIsNone(parse_custom_action("back"))


class PlannerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.steps = [
            make_step(StepType.LAUNCH_APP, {"package": "com.xingin.xhs"}, description="打开小红书"),
            make_step(StepType.SWIPE, {"direction": "up"}, index=2, description="上滑"),
        ]

    async def test_verification_parses_confidence(self) -> None:
        planner = Planner(FakeChatModel([{"isCorrect": False, "confidence": 3, "reason": "没变化"}]))
        verification = await planner.verify_step(self.steps[1], 2, 2, "(屏幕)", "页面无变化")
        self.assertFalse(verification.is_correct)
        self.assertEqual(verification.confidence, 1.0)
        self.assertEqual(verification.reason, "没变化")

    async def test_verification_failure_counts_as_pass(self) -> None:
        planner = Planner(FakeChatModel([RuntimeError("timeout")]))
        verification = await planner.verify_step(self.steps[0], 1, 2, "", "")
        self.assertTrue(verification.is_correct)
        self.assertEqual(verification.confidence, 0.0)

    async def test_recovery_suggestion(self) -> None:
        model = FakeChatModel([{"reason": "被遮挡", "should_retry": True, "action": {"action": "back"}}])
        suggestion = await Planner(model).suggest_recovery(self.steps[0], "未找到元素", "(屏幕)")
        self.assertTrue(suggestion.should_retry)
        self.assertEqual(suggestion.action.action, "back")
        self.assertIn("未找到元素", model.prompts[0])

    async def test_agent_decisions(self) -> None:
        planner = Planner(FakeChatModel([
            {"decision": "EXECUTE_STEP", "step_index": 1, "reason": "继续"},
            {"decision": "CUSTOM_ACTION", "action": {"action": "input", "text": "旅行"}},
            {"decision": "CUSTOM_ACTION", "action": {"action": "teleport"}},
            {"decision": "WAIT", "ms": 2500},
            {"decision": "EXECUTE_STEP", "step_index": 99},
        ]))

        def ask():
            return planner.decide_agent_action("目标", self.steps, 0, "(屏幕)", "(无历史)")

        first = await ask()
        self.assertEqual((first.choice, first.step_index), (AgentChoice.EXECUTE_STEP, 1))
        second = await ask()
        self.assertEqual(second.action.text, "旅行")
        third = await ask()
        self.assertIs(third.choice, AgentChoice.WAIT)
        fourth = await ask()
        self.assertEqual(fourth.wait_ms, 2500)
        fifth = await ask()
        self.assertEqual(fifth.step_index, 0)

    async def test_agent_fallback_follows_the_plan(self) -> None:
        planner = Planner(FakeChatModel([RuntimeError("down"), {"decision": "DANCE"}, RuntimeError("down")]))
        fallback = await planner.decide_agent_action("目标", self.steps, 1, "", "")
        self.assertEqual((fallback.choice, fallback.step_index), (AgentChoice.EXECUTE_STEP, 1))
        unknown = await planner.decide_agent_action("目标", self.steps, 0, "", "")
        self.assertEqual(unknown.step_index, 0)
        finished = await planner.decide_agent_action("目标", self.steps, 2, "", "")
        self.assertIs(finished.choice, AgentChoice.GOAL_ACHIEVED)

    async def test_decide_action(self) -> None:
        planner = Planner(FakeChatModel([{"action": "swipe", "direction": "up"}, "不知道"]))
        self.assertEqual((await planner.decide_action("往下看", "")).action, "swipe")
        self.assertIsNone(await planner.decide_action("往下看", ""))


if __name__ == "__main__":
    unittest.main()
