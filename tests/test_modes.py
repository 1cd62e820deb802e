import tempfile
import unittest

from script_agent.config import AgentConfig
from script_agent.context import ExecutionCallbacks
from script_agent.core import ScriptEngine
from script_agent.errors import ErrorKind
from script_agent.models import ExecutionMode, ExecutionResult, FailurePolicy, StepType
from script_agent.modes import EngineSession, auto_adjust
from script_agent.storage import ScriptStore
from tests.fakes import FakeScreen, button, make_engine, make_script, make_step, node, tree

HOME = tree(button("首页", row=8), button("设置", row=2))


def assert_home(index=1, **kwargs):
    return make_step(StepType.ASSERT, {"text": "首页"}, index=index, description="确认在首页", **kwargs)


def tap_missing(on_failure=FailurePolicy.RETRY, index=1):
    return make_step(StepType.FIND_AND_TAP, {"text": "不存在的按钮"}, index=index,
                     description="点击不存在的按钮", on_failure=on_failure, max_retries=0)


def save(engine, *steps, goal="test goal"):
    script = make_script(*steps, goal=goal)
    engine.store.save(script)
    return script.id


class AutoAdjustTests(unittest.TestCase):
    def _result(self, success, interventions=0):
        return ExecutionResult(success=success, steps_executed=0, total_steps=1,
                               ai_intervention_count=interventions)

    def test_interventions_promote_to_agent(self) -> None:
        session = EngineSession()
        session.record(self._result(True, interventions=5))
        self.assertIs(auto_adjust(session, ExecutionMode.SMART), ExecutionMode.AGENT)
        self.assertIs(session.mode, ExecutionMode.AGENT)

    def test_demotion_requires_zero_interventions(self) -> None:
        session = EngineSession()
        session.record(self._result(True, interventions=1))
        for _ in range(12):
            session.record(self._result(True))
        self.assertIsNone(auto_adjust(session, ExecutionMode.SMART))
        session.reset_counters()
        for _ in range(10):
            session.record(self._result(True))
        self.assertIs(auto_adjust(session, ExecutionMode.MONITOR), ExecutionMode.FAST)

    def test_only_middle_tiers_adjust(self) -> None:
        session = EngineSession(ExecutionMode.FAST)
        for _ in range(3):
            session.record(self._result(False))
        self.assertIsNone(auto_adjust(session, ExecutionMode.FAST))
        self.assertIsNone(auto_adjust(session, ExecutionMode.AGENT))
        self.assertIs(session.mode, ExecutionMode.FAST)

    def test_success_resets_failure_streak(self) -> None:
        session = EngineSession()
        session.record(self._result(False))
        session.record(self._result(False))
        session.record(self._result(True))
        session.record(self._result(False))
        self.assertEqual(session.consecutive_failures, 1)
        self.assertIsNone(auto_adjust(session, ExecutionMode.SMART))


class SmartModeTests(unittest.IsolatedAsyncioTestCase):
    async def test_three_failures_promote_next_execution_to_agent(self) -> None:
        screen = FakeScreen({"main": HOME})
        engine = make_engine(self, screen, [{"decision": "GOAL_IMPOSSIBLE", "reason": "没有这个按钮"}])
        script_id = save(engine, tap_missing())

        for expected_mode in (ExecutionMode.SMART, ExecutionMode.SMART, ExecutionMode.AGENT):
            result = await engine.execute(script_id)
            self.assertFalse(result.success)
            self.assertIs(result.mode, ExecutionMode.SMART)
            self.assertEqual(result.ai_intervention_count, 0)
            self.assertIs(engine.mode, expected_mode)

        result = await engine.execute(script_id)
        self.assertIs(result.mode, ExecutionMode.AGENT)
        self.assertIs(result.error_kind, ErrorKind.AI_ABORTED)
        self.assertEqual(engine.get(script_id).fail_count, 4)

    async def test_ten_clean_successes_demote_to_fast(self) -> None:
        screen = FakeScreen({"main": HOME})
        engine = make_engine(self, screen)
        script_id = save(engine, assert_home())

        for _ in range(9):
            self.assertTrue((await engine.execute(script_id)).success)
            self.assertIs(engine.mode, ExecutionMode.SMART)
        await engine.execute(script_id)

        self.assertIs(engine.mode, ExecutionMode.FAST)
        self.assertEqual(engine.get(script_id).success_count, 10)

    async def test_explicit_fast_run_does_not_adjust(self) -> None:
        engine = make_engine(self, FakeScreen({"main": HOME}))
        script_id = save(engine, tap_missing())
        for _ in range(4):
            await engine.execute(script_id, ExecutionMode.FAST)
        self.assertIs(engine.mode, ExecutionMode.SMART)
        self.assertEqual(engine.session.consecutive_failures, 4)

    async def test_auto_adjust_can_be_disabled(self) -> None:
        engine = make_engine(self, FakeScreen({"main": HOME}), auto_adjust=False)
        script_id = save(engine, tap_missing())
        for _ in range(3):
            await engine.execute(script_id)
        self.assertIs(engine.mode, ExecutionMode.SMART)

    async def test_abort_stops_without_recovery(self) -> None:
        engine = make_engine(self, FakeScreen({"main": HOME}))
        script_id = save(engine, tap_missing(FailurePolicy.ABORT), assert_home(index=2))

        result = await engine.execute(script_id)

        self.assertFalse(result.success)
        self.assertEqual(result.failed_step_index, 0)
        self.assertEqual(result.steps_executed, 0)
        self.assertIs(result.error_kind, ErrorKind.ELEMENT_NOT_FOUND)
        self.assertFalse(any("恢复流程" in line for line in result.logs))

    async def test_skip_continues_with_next_step(self) -> None:
        engine = make_engine(self, FakeScreen({"main": HOME}))
        script_id = save(engine, tap_missing(FailurePolicy.SKIP), assert_home(index=2))

        result = await engine.execute(script_id)

        self.assertTrue(result.success)
        self.assertEqual(result.steps_executed, 2)

    async def test_popups_are_dismissed_before_each_step(self) -> None:
        screen = FakeScreen(
            {"popup": tree(node("温馨提示"), button("我知道了", row=4)), "main": HOME},
            transitions={("popup", "tap:我知道了"): "main"},
        )
        engine = make_engine(self, screen)
        script_id = save(engine, assert_home())
        dismissed = []

        result = await engine.execute(script_id, callbacks=ExecutionCallbacks(on_popup_dismissed=dismissed.append))

        self.assertTrue(result.success)
        self.assertEqual(result.popups_dismissed_count, 1)
        self.assertEqual(dismissed, [1])

    async def test_fast_mode_leaves_popups_alone(self) -> None:
        screen = FakeScreen(
            {"popup": tree(node("温馨提示"), button("我知道了", row=4)), "main": HOME},
            transitions={("popup", "tap:我知道了"): "main"},
        )
        engine = make_engine(self, screen)
        script_id = save(engine, assert_home(max_retries=0))

        result = await engine.execute(script_id, ExecutionMode.FAST)

        self.assertFalse(result.success)
        self.assertIs(result.error_kind, ErrorKind.ASSERTION_FAILED)
        self.assertEqual(screen.tapped, [])

    async def test_model_recovery_runs_when_no_strategy_applies(self) -> None:
        screen = FakeScreen(
            {"detail": tree(node("详情内容")), "main": HOME},
            transitions={("detail", "back"): "main"},
        )
        engine = make_engine(self, screen, [
            {"reason": "不在首页", "should_retry": True, "action": {"action": "back"}},
        ])
        script_id = save(engine, assert_home(max_retries=0))

        result = await engine.execute(script_id)

        self.assertTrue(result.success)
        self.assertEqual(screen.backs, 1)
        self.assertEqual(result.ai_intervention_count, 1)

    async def test_escalation_hands_the_step_to_the_model(self) -> None:
        screen = FakeScreen({"main": tree(button("首页", row=8), button("更多设置", row=2))})
        engine = make_engine(self, screen, [{"action": "tap_text", "text": "更多设置"}])
        step = make_step(StepType.FIND_AND_TAP, {"text": "设置"}, description="打开设置",
                         on_failure=FailurePolicy.ESCALATE_TO_AI, max_retries=0)
        script_id = save(engine, step)
        interventions = []

        result = await engine.execute(script_id, callbacks=ExecutionCallbacks(
            on_ai_intervention=lambda reason, action: interventions.append(action)))

        self.assertTrue(result.success)
        self.assertEqual(screen.tapped, ["更多设置"])
        self.assertEqual(result.ai_intervention_count, 1)
        self.assertEqual(interventions, ["AI 接管"])

    async def test_stop_request_cancels_between_steps(self) -> None:
        engine = make_engine(self, FakeScreen({"main": HOME}))
        script_id = save(engine, assert_home(), assert_home(index=2))
        callbacks = ExecutionCallbacks(on_step_complete=lambda num, ok, err: engine.stop())

        result = await engine.execute(script_id, callbacks=callbacks)

        self.assertFalse(result.success)
        self.assertIs(result.error_kind, ErrorKind.CANCELLED)
        self.assertEqual(result.steps_executed, 1)

    async def test_step_execution_limit(self) -> None:
        engine = make_engine(self, FakeScreen({"main": HOME}), max_step_executions=1)
        script_id = save(engine, assert_home(), assert_home(index=2))

        result = await engine.execute(script_id)

        self.assertIs(result.error_kind, ErrorKind.TIMEOUT)
        self.assertEqual(result.failed_step_index, 1)

    async def test_progress_callback_reports_each_step(self) -> None:
        engine = make_engine(self, FakeScreen({"main": HOME}))
        script_id = save(engine, assert_home(), assert_home(index=2))
        progress = []

        await engine.execute(script_id, on_progress=lambda cur, total, desc: progress.append((cur, total)))

        self.assertEqual(progress, [(1, 2), (2, 2)])


class MonitorModeTests(unittest.IsolatedAsyncioTestCase):
    async def test_repeated_negative_verifications_promote_mid_run(self) -> None:
        engine = make_engine(self, FakeScreen({"main": HOME}), [
            {"is_correct": False, "confidence": 0.9, "reason": "页面不对"},
            {"reason": "再试一次", "should_retry": True, "action": None},
            {"is_correct": False, "confidence": 0.9, "reason": "仍然不对"},
            {"decision": "GOAL_ACHIEVED", "reason": "已完成"},
        ])
        script_id = save(engine, assert_home(), assert_home(index=2))

        result = await engine.execute(script_id, ExecutionMode.MONITOR)

        self.assertTrue(result.success)
        self.assertIs(result.mode, ExecutionMode.AGENT)
        self.assertIs(engine.mode, ExecutionMode.AGENT)
        self.assertEqual(result.ai_intervention_count, 4)
        self.assertEqual(engine.model.responses, [])

    async def test_low_confidence_rejection_is_ignored(self) -> None:
        engine = make_engine(self, FakeScreen({"main": HOME}), [
            {"is_correct": False, "confidence": 0.5, "reason": "不确定"},
            {"is_correct": True, "confidence": 0.95},
        ])
        script_id = save(engine, assert_home(), assert_home(index=2))

        result = await engine.execute(script_id, ExecutionMode.MONITOR)

        self.assertTrue(result.success)
        self.assertEqual(result.ai_intervention_count, 0)

    async def test_rejection_fails_step_when_promotion_disabled(self) -> None:
        engine = make_engine(self, FakeScreen({"main": HOME}), [
            {"is_correct": False, "confidence": 0.9, "reason": "页面不对"},
            {"reason": "无法修复", "should_retry": False, "action": None},
            {"is_correct": False, "confidence": 0.9, "reason": "仍然不对"},
        ], auto_adjust=False)
        script_id = save(engine, assert_home())

        result = await engine.execute(script_id, ExecutionMode.MONITOR)

        self.assertFalse(result.success)
        self.assertIs(result.error_kind, ErrorKind.VERIFICATION_MISMATCH)
        self.assertIs(engine.mode, ExecutionMode.SMART)


class AgentModeTests(unittest.IsolatedAsyncioTestCase):
    async def test_agent_executes_chosen_steps_until_goal_achieved(self) -> None:
        screen = FakeScreen({"main": HOME})
        engine = make_engine(self, screen, [
            {"decision": "EXECUTE_STEP", "step_index": 0, "reason": "打开设置"},
            {"decision": "GOAL_ACHIEVED", "reason": "已打开"},
        ])
        tap_settings = make_step(StepType.FIND_AND_TAP, {"text": "设置"}, description="打开设置")
        script_id = save(engine, tap_settings, assert_home(index=2))

        result = await engine.execute(script_id, ExecutionMode.AGENT)

        self.assertTrue(result.success)
        self.assertEqual(result.steps_executed, 2)
        self.assertEqual(result.ai_intervention_count, 2)
        self.assertEqual(screen.tapped, ["设置"])

    async def test_goal_impossible_aborts(self) -> None:
        engine = make_engine(self, FakeScreen({"main": HOME}), [{"decision": "GOAL_IMPOSSIBLE", "reason": "无网络"}])
        script_id = save(engine, assert_home())

        result = await engine.execute(script_id, ExecutionMode.AGENT)

        self.assertFalse(result.success)
        self.assertIs(result.error_kind, ErrorKind.AI_ABORTED)

    async def test_iteration_cap_times_out(self) -> None:
        engine = make_engine(self, FakeScreen({"main": HOME}), [
            {"decision": "WAIT", "ms": 1}, {"decision": "WAIT", "ms": 1},
        ], agent_max_iterations=2)
        script_id = save(engine, assert_home())

        result = await engine.execute(script_id, ExecutionMode.AGENT)

        self.assertIs(result.error_kind, ErrorKind.TIMEOUT)

    async def test_repeated_action_presses_back(self) -> None:
        screen = FakeScreen({"main": HOME})
        repeat = {"decision": "EXECUTE_STEP", "step_index": 0}
        engine = make_engine(self, screen, [repeat] * 4 + [{"decision": "GOAL_ACHIEVED"}])
        script_id = save(engine, tap_missing())

        result = await engine.execute(script_id, ExecutionMode.AGENT)

        self.assertTrue(result.success)
        self.assertEqual(screen.backs, 1)

    async def test_agent_without_model_runs_as_smart(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        store = ScriptStore(tmp.name)
        engine = ScriptEngine(FakeScreen({"main": HOME}), None, store, AgentConfig(step_delay_scale=0))
        script = make_script(assert_home())
        store.save(script)

        result = await engine.execute(script.id, ExecutionMode.AGENT)

        self.assertTrue(result.success)
        self.assertIs(result.mode, ExecutionMode.SMART)


if __name__ == "__main__":
    unittest.main()
