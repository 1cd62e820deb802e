import asyncio
import tempfile
import unittest

from script_agent.context import RunControl
from script_agent.errors import ErrorKind
from script_agent.improver import SelfImprovementLoop
from script_agent.models import ExecutionMode, ExecutionResult, FailurePolicy, StepType
from script_agent.storage import ScriptStore
from tests.fakes import FakeChatModel, FakeScreen, button, make_engine, make_script, make_step, tree

IMPROVED = {"steps": [
    {"type": "WAIT", "description": "多等一会", "params": {"ms": 3000}, "on_fail": "SKIP"},
    {"type": "FIND_AND_TAP", "description": "点击设置", "params": {"contains": "设置"}, "max_retries": 5},
]}


def failure(step_index=0, kind=ErrorKind.ELEMENT_NOT_FOUND):
    return ExecutionResult(success=False, steps_executed=step_index, total_steps=1,
                           error="未找到元素", failed_step_index=step_index, error_kind=kind)


def original_script():
    return make_script(make_step(StepType.FIND_AND_TAP, {"text": "设置"}, description="点击设置"))


class ImproveTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.store = ScriptStore(tmp.name)

    async def test_improve_rewrites_steps_and_bumps_version(self) -> None:
        model = FakeChatModel([IMPROVED])
        loop = SelfImprovementLoop(model, self.store)
        script = original_script()

        improved = await loop.improve(script, failure())

        self.assertEqual(improved.id, script.id)
        self.assertEqual(improved.version, 2)
        self.assertEqual(improved.fail_count, 1)
        self.assertEqual([s.type for s in improved.steps], [StepType.WAIT, StepType.FIND_AND_TAP])
        self.assertIs(improved.steps[0].on_failure, FailurePolicy.SKIP)
        self.assertEqual(improved.steps[1].max_retries, 5)
        self.assertEqual(self.store.load(script.id).version, 2)
        self.assertIn("未找到元素", model.prompts[0])
        self.assertIn("失败步骤: 1", model.prompts[0])

    async def test_unusable_rewrite_keeps_the_old_version(self) -> None:
        for response in ("无法改进", {"steps": []}, RuntimeError("rate limited")):
            with self.subTest(response=response):
                loop = SelfImprovementLoop(FakeChatModel([response]), self.store)
                self.assertIsNone(await loop.improve(original_script(), failure()))
        self.assertIsNone(self.store.get("s1"))

    async def test_auto_improve_stops_after_max_cycles(self) -> None:
        loop = SelfImprovementLoop(FakeChatModel([IMPROVED] * 3), self.store, max_cycles=3)
        runs = []

        async def execute(script):
            runs.append(script.version)
            return failure(), script

        with self.assertLogs("script_agent.improver", level="WARNING") as logs:
            result, script = await loop.run_with_auto_improve(original_script(), execute)

        self.assertFalse(result.success)
        self.assertEqual(runs, [1, 2, 3, 4])
        self.assertEqual(script.version, 4)
        self.assertTrue(any(ErrorKind.IMPROVEMENT_EXHAUSTED.value in line for line in logs.output))

    async def test_auto_improve_stops_on_first_success(self) -> None:
        loop = SelfImprovementLoop(FakeChatModel([IMPROVED]), self.store)

        async def execute(script):
            if script.version == 1:
                return failure(), script
            return ExecutionResult(success=True, steps_executed=2, total_steps=2), script

        result, script = await loop.run_with_auto_improve(original_script(), execute)

        self.assertTrue(result.success)
        self.assertEqual(script.version, 2)

    async def test_cancelled_run_is_not_improved(self) -> None:
        model = FakeChatModel([IMPROVED])
        loop = SelfImprovementLoop(model, self.store)

        async def execute(script):
            return failure(kind=ErrorKind.CANCELLED), script

        result, script = await loop.run_with_auto_improve(original_script(), execute)

        self.assertIs(result.error_kind, ErrorKind.CANCELLED)
        self.assertEqual(script.version, 1)
        self.assertEqual(model.prompts, [])

    async def test_stop_before_rewrite_skips_the_model(self) -> None:
        model = FakeChatModel([IMPROVED])
        loop = SelfImprovementLoop(model, self.store)
        control = RunControl()
        runs = []

        async def execute(script):
            runs.append(script.version)
            control.stop()
            return failure(), script

        result, script = await loop.run_with_auto_improve(original_script(), execute, control)

        self.assertIs(result.error_kind, ErrorKind.CANCELLED)
        self.assertEqual(result.failed_step_index, 0)
        self.assertEqual(runs, [1])
        self.assertEqual(model.prompts, [])

    async def test_manual_improve_defaults_to_last_step(self) -> None:
        model = FakeChatModel([IMPROVED])
        loop = SelfImprovementLoop(model, self.store)
        script = make_script(
            make_step(StepType.WAIT, {"ms": 10}),
            make_step(StepType.BACK, {}, index=2),
        )

        improved = await loop.manual_improve(script, error="页面结构变了")

        self.assertEqual(improved.version, 2)
        self.assertIn("失败步骤: 2", model.prompts[0])
        self.assertIn("页面结构变了", model.prompts[0])


class EngineAutoImproveTests(unittest.IsolatedAsyncioTestCase):
    async def test_failed_run_is_rewritten_and_rerun(self) -> None:
        screen = FakeScreen({"main": tree(button("首页", row=8))})
        engine = make_engine(self, screen, [
            {"steps": [{"type": "ASSERT", "description": "确认首页", "params": {"text": "首页"}}]},
        ])
        broken = make_script(make_step(StepType.FIND_AND_TAP, {"text": "设置"},
                                       on_failure=FailurePolicy.ABORT, max_retries=0))
        engine.store.save(broken)

        result = await engine.execute_with_auto_improve(broken.id)

        self.assertTrue(result.success)
        stored = engine.get(broken.id)
        self.assertEqual(stored.version, 2)
        self.assertEqual(stored.success_count, 1)
        # 执行失败一次，改写时再计一次
        self.assertEqual(stored.fail_count, 2)

    async def test_engine_manual_improve(self) -> None:
        engine = make_engine(self, FakeScreen({"main": tree()}), [IMPROVED])
        engine.store.save(original_script())

        improved = await engine.improve("s1", failed_step_index=0, error="找不到设置")

        self.assertEqual(improved.version, 2)
        self.assertEqual(engine.get("s1").version, 2)

    async def test_stop_during_rewrite_prevents_rerun(self) -> None:
        screen = FakeScreen({"main": tree(button("首页", row=8))})
        engine = make_engine(self, screen)
        rewrite = {"steps": [{"type": "FIND_AND_TAP", "description": "点击首页", "params": {"text": "首页"}}]}

        def stop_then_answer():
            engine.stop()
            return rewrite

        engine.model.queue(stop_then_answer)
        broken = make_script(make_step(StepType.FIND_AND_TAP, {"text": "设置"},
                                       on_failure=FailurePolicy.ABORT, max_retries=0))
        engine.store.save(broken)

        result = await engine.execute_with_auto_improve(broken.id, mode=ExecutionMode.FAST)

        self.assertFalse(result.success)
        self.assertIs(result.error_kind, ErrorKind.CANCELLED)
        self.assertEqual(screen.tapped, [])
        stored = engine.get(broken.id)
        self.assertEqual(stored.version, 2)
        self.assertEqual(stored.success_count, 0)

    async def test_stop_while_waiting_for_the_lock_is_kept(self) -> None:
        screen = FakeScreen({"main": tree(button("首页", row=8))})
        engine = make_engine(self, screen)
        engine.store.save(make_script(make_step(StepType.FIND_AND_TAP, {"text": "首页"})))

        await engine.session.lock.acquire()
        pending = asyncio.ensure_future(engine.execute("s1"))
        await asyncio.sleep(0)
        engine.stop()
        engine.session.lock.release()
        result = await pending

        self.assertIs(result.error_kind, ErrorKind.CANCELLED)
        self.assertEqual(result.steps_executed, 0)
        self.assertEqual(screen.tapped, [])


if __name__ == "__main__":
    unittest.main()
