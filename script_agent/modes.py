"""执行模式控制：按 AI 介入程度执行脚本，并根据可靠性自动升降档

- FAST:    只做步骤内重试
- SMART:   每步前清理弹窗，重试耗尽后走一轮恢复（弹窗 -> 恢复策略 -> 模型修复）
- MONITOR: SMART + 每步执行后由模型验证，多次验证失败时中途升级为 AGENT
- AGENT:   步骤仅作参考，每轮由模型决定下一步
"""

import asyncio
import logging
from dataclasses import replace
from typing import Dict, Optional

from .config import ExecutionConfig
from .context import StepContext
from .errors import ErrorKind
from .memory import Memory
from .models import (
    AgentChoice,
    ExecutionMode,
    ExecutionResult,
    FailurePolicy,
    Script,
    Step,
    StepOutcome,
    StepType,
)
from .perception import ScreenContextProvider, ScreenSnapshot
from .planner import Planner
from .popup import PopupReflex
from .recovery import (
    NeedsHumanIntervention,
    RecoveryContext,
    RecoveryFailure,
    RecoveryRegistry,
    RecoverySuccess,
)
from .step_executor import StepExecutor
from .step_params import AIDecideParams

logger = logging.getLogger(__name__)

PROMOTE_AFTER_FAILURES = 3
PROMOTE_AFTER_INTERVENTIONS = 5
DEMOTE_AFTER_SUCCESSES = 10


class EngineSession:
    """引擎会话：当前模式与可靠性计数，显式传递而非全局状态"""

    def __init__(self, mode: ExecutionMode = ExecutionMode.SMART, auto_adjust: bool = True):
        self.mode = mode
        self.auto_adjust = auto_adjust
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        self.total_ai_interventions = 0
        self.lock = asyncio.Lock()

    def record(self, result: ExecutionResult) -> None:
        if result.success:
            self.consecutive_successes += 1
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1
            self.consecutive_successes = 0
        self.total_ai_interventions += result.ai_intervention_count

    def reset_counters(self) -> None:
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        self.total_ai_interventions = 0

    def status(self) -> str:
        return (f"{self.mode.emoji} {self.mode.display_name} | 连续失败 {self.consecutive_failures} | "
                f"连续成功 {self.consecutive_successes} | AI 介入 {self.total_ai_interventions}")


def auto_adjust(session: EngineSession, ran_mode: ExecutionMode) -> Optional[ExecutionMode]:
    """根据计数调整模式，一次最多跨一个档位；返回新模式，不变返回 None"""
    if not session.auto_adjust or ran_mode.tier_class != 1:
        return None
    target = None
    if (session.consecutive_failures >= PROMOTE_AFTER_FAILURES
            or session.total_ai_interventions >= PROMOTE_AFTER_INTERVENTIONS):
        target = ExecutionMode.AGENT
    elif session.consecutive_successes >= DEMOTE_AFTER_SUCCESSES and session.total_ai_interventions == 0:
        target = ExecutionMode.FAST
    if target is None or target is session.mode:
        return None
    logger.info("🔄 自动切换模式: %s -> %s", session.mode.display_name, target.display_name)
    session.mode = target
    return target


class ModeController:
    """按执行模式运行脚本"""

    def __init__(self, executor: StepExecutor, screen: ScreenContextProvider, popup: PopupReflex,
                 recovery: RecoveryRegistry, session: EngineSession, planner: Optional[Planner] = None):
        self.executor = executor
        self.screen = screen
        self.popup = popup
        self.recovery = recovery
        self.session = session
        self.planner = planner
        self._recoveries: Dict[int, int] = {}

    def _apply_config(self, config: ExecutionConfig):
        self.executor.config = config
        self.executor.controller.action_delay_s = config.action_delay_s

    async def run(self, script: Script, config: ExecutionConfig, ctx: StepContext) -> ExecutionResult:
        """执行脚本并更新会话计数与模式"""
        mode = config.mode
        self._apply_config(config)
        self._recoveries = {}
        ctx.log.add(f"{mode.emoji} 开始执行 [{mode.display_name}]: {script.name} v{script.version}")
        if mode is ExecutionMode.AGENT and self.planner is not None:
            result = await self._run_agent(script, config, ctx, start=0)
        else:
            if mode is ExecutionMode.AGENT:
                ctx.log.warn("⚠ 未配置模型，代理模式降级为智能模式执行")
                config = replace(config, mode=ExecutionMode.SMART)
                self._apply_config(config)
            result = await self._run_steps(script, config, ctx)
        self.session.record(result)
        auto_adjust(self.session, mode)
        status = "✓ 执行成功" if result.success else f"❌ 执行失败: {result.error}"
        logger.info("%s (%s)", status, self.session.status())
        return result

    def _result(self, script: Script, ctx: StepContext, mode: ExecutionMode, success: bool,
                steps_executed: int, error: Optional[str] = None, error_kind: Optional[ErrorKind] = None,
                failed_index: Optional[int] = None) -> ExecutionResult:
        total = len(script.steps)
        if success:
            steps_executed = total
            failed_index = None
        elif total:
            failed_index = min(failed_index if failed_index is not None else steps_executed, total - 1)
        if error:
            ctx.log.error(f"❌ {error}")
        return ExecutionResult(
            success=success,
            steps_executed=steps_executed,
            total_steps=total,
            extracted_data=dict(ctx.extracted_data),
            error=error,
            failed_step_index=failed_index,
            logs=ctx.log.lines,
            popups_dismissed_count=ctx.popups_dismissed,
            ai_intervention_count=ctx.ai_interventions,
            mode=mode,
            error_kind=error_kind,
        )

    async def _check_limits(self, config: ExecutionConfig, ctx: StepContext):
        """步骤之间的检查：停止 / 暂停 / 超时 / 步数上限，返回 (错误, 类别)"""
        if not await ctx.control.wait_if_paused():
            return "执行已被停止", ErrorKind.CANCELLED
        if ctx.elapsed > config.goal_timeout_s:
            return f"执行超时 ({config.goal_timeout_s:.0f}s)", ErrorKind.TIMEOUT
        if ctx.step_executions >= config.max_step_executions:
            return f"超过最大步骤执行次数 {config.max_step_executions}", ErrorKind.TIMEOUT
        return None, None

    async def _dismiss_popups(self, config: ExecutionConfig, ctx: StepContext) -> int:
        if not config.popup_dismiss_enabled:
            return 0
        result = await self.popup.dismiss_all(config.popup_max_attempts, config.popup_dismiss_delay_s)
        if result.popups_cleared:
            ctx.popups_dismissed += result.popups_cleared
            ctx.callbacks.popups_dismissed(result.popups_cleared)
            for detail in result.details:
                ctx.log.add(f"🧹 {detail}")
        return result.popups_cleared

    async def _pause(self, seconds: float):
        if seconds > 0:
            await asyncio.sleep(seconds)

    async def _run_steps(self, script: Script, config: ExecutionConfig, ctx: StepContext) -> ExecutionResult:
        mode = config.mode
        steps = script.steps
        total = len(steps)
        negative_verifications = 0
        for i, step in enumerate(steps):
            error, kind = await self._check_limits(config, ctx)
            if error:
                return self._result(script, ctx, mode, False, i, error, kind)
            upcoming = steps[i + 1:]
            ctx.callbacks.progress(i + 1, total, step.description)
            ctx.log.add(f"▶ 步骤 {i + 1}/{total} [{step.type.value}] {step.description}")
            if mode is not ExecutionMode.FAST:
                await self._dismiss_popups(config, ctx)

            before = self.screen.last_snapshot
            outcome = await self.executor.execute_with_retries(step, ctx, upcoming)
            if not outcome.success:
                outcome = await self._handle_exhausted(step, outcome, config, ctx, upcoming)
                if outcome is None:
                    ctx.callbacks.step_complete(i + 1, True, "skipped")
                    continue
                if not outcome.success:
                    ctx.callbacks.step_complete(i + 1, False, outcome.error)
                    return self._result(script, ctx, mode, False, i,
                                        f"步骤 {i + 1} 失败: {outcome.error}", outcome.error_kind, i)

            if mode is ExecutionMode.MONITOR and self.planner is not None:
                verified, negative_verifications = await self._verify_with_recovery(
                    step, i, total, before, config, ctx, upcoming, negative_verifications)
                if verified == "promote":
                    ctx.log.add(f"🤖 验证连续失败 {negative_verifications} 次，升级为全程代理，从步骤 {i + 1} 继续")
                    self.session.mode = ExecutionMode.AGENT
                    agent_config = replace(config, mode=ExecutionMode.AGENT)
                    self._apply_config(agent_config)
                    return await self._run_agent(script, agent_config, ctx, start=i)
                if verified == "failed":
                    if step.on_failure is FailurePolicy.SKIP:
                        ctx.log.warn(f"⏭ 步骤 {i + 1} 验证失败，按策略跳过")
                        continue
                    ctx.callbacks.step_complete(i + 1, False, "验证失败")
                    return self._result(script, ctx, mode, False, i, f"步骤 {i + 1} 验证失败",
                                        ErrorKind.VERIFICATION_MISMATCH, i)

            ctx.log.add(f"✓ 步骤 {i + 1} 完成")
            ctx.callbacks.step_complete(i + 1, True)
            await self._pause(config.step_delay_s)
        return self._result(script, ctx, mode, True, total)

    async def _handle_exhausted(self, step: Step, outcome: StepOutcome, config: ExecutionConfig,
                                ctx: StepContext, upcoming) -> Optional[StepOutcome]:
        """重试耗尽后按失败策略处理；返回 None 表示跳过该步骤"""
        policy = step.on_failure
        if policy is FailurePolicy.SKIP:
            ctx.log.warn(f"⏭ 步骤 {step.index} 失败，按策略跳过: {outcome.error}")
            return None
        if policy is FailurePolicy.ABORT:
            ctx.log.warn(f"⛔ 步骤 {step.index} 失败，按策略终止")
            return outcome
        if config.mode in (ExecutionMode.SMART, ExecutionMode.MONITOR):
            outcome = await self._recover_and_retry(step, outcome, config, ctx, upcoming)
            if not outcome.success and policy is FailurePolicy.ESCALATE_TO_AI:
                outcome = await self._ai_takeover(step, ctx)
        return outcome

    async def _recover_and_retry(self, step: Step, outcome: StepOutcome, config: ExecutionConfig,
                                 ctx: StepContext, upcoming) -> StepOutcome:
        """一轮恢复：弹窗 -> 首个适用的恢复策略 -> 一次模型修复，之后再试一次"""
        kind = outcome.error_kind or ErrorKind.UNKNOWN
        ctx.log.add(f"🛡️ 步骤 {step.index} 进入恢复流程 ({kind.value})")
        handled = await self._dismiss_popups(config, ctx) > 0

        if not handled:
            snap = await self.screen.snapshot()
            attempt = self._recoveries.get(step.index, 0)
            self._recoveries[step.index] = attempt + 1
            recovery = await self.recovery.try_recover(RecoveryContext(
                error_kind=kind,
                error_message=outcome.error,
                screen=snap,
                retry_count=attempt,
                metadata={"step_index": step.index},
            ))
            if isinstance(recovery, RecoverySuccess):
                ctx.log.add(f"🛠 恢复策略: {recovery.message}")
                if recovery.suggested_action is not None:
                    await self.executor.perform_action(recovery.suggested_action)
                handled = recovery.should_retry
            elif isinstance(recovery, NeedsHumanIntervention):
                ctx.log.warn(f"🙋 需要人工干预: {recovery.reason} {recovery.instructions or ''}".rstrip())
            elif isinstance(recovery, RecoveryFailure):
                ctx.log.warn(f"⚠ 恢复策略失败: {recovery.message}")
                if recovery.fatal:
                    return outcome

        if not handled and config.ai_recovery_enabled and self.planner is not None:
            snap = await self.screen.snapshot()
            suggestion = await self.planner.suggest_recovery(
                step, outcome.error or "", self.screen.summarize(snap.root))
            ctx.count_intervention("步骤失败", suggestion.reason or "请求恢复建议")
            ctx.log.add(f"🤖 AI 恢复建议: {suggestion.reason} {suggestion.suggestion}".rstrip())
            if suggestion.action is not None:
                ok = await self.executor.perform_action(suggestion.action)
                ctx.log.add(f"🤖 执行修复动作 {suggestion.action.describe()}: {'✓' if ok else '❌'}")

        ctx.log.add(f"🔄 恢复后再次尝试步骤 {step.index}")
        retried = await self.executor.execute_step(step, ctx, upcoming)
        if not retried.success:
            ctx.log.warn(f"❌ 恢复后仍失败: {retried.error}")
        return retried

    async def _ai_takeover(self, step: Step, ctx: StepContext) -> StepOutcome:
        """交给 AI 接管：以步骤描述为目标做一次 AI_DECIDE"""
        if self.planner is None:
            return StepOutcome.fail("无模型可接管", ErrorKind.AI_ABORTED)
        ctx.count_intervention("步骤失败", "AI 接管")
        ctx.log.add(f"🤖 AI 接管步骤 {step.index}: {step.description}")
        takeover = Step(step.index, StepType.AI_DECIDE, step.description,
                        AIDecideParams(goal=step.description), FailurePolicy.ABORT, 0)
        return await self.executor.execute_step(takeover, ctx)

    async def _verify(self, step: Step, current: int, total: int,
                      before: Optional[ScreenSnapshot], config: ExecutionConfig, ctx: StepContext) -> bool:
        after, diff = await self.screen.changed_since(before)
        verification = await self.planner.verify_step(
            step, current, total, self.screen.summarize(after.root), self.screen.diff_summary(diff))
        if verification.is_correct:
            ctx.log.add(f"👁️ 步骤 {current} 验证通过 (置信度 {verification.confidence:.2f})")
            return True
        if verification.confidence < config.ai_verify_threshold:
            ctx.log.warn(f"⚠ 步骤 {current} 验证存疑但置信度不足 ({verification.confidence:.2f})，继续执行")
            return True
        ctx.count_intervention("验证失败", verification.reason)
        ctx.log.warn(f"❌ 步骤 {current} AI 验证失败: {verification.reason}")
        return False

    async def _verify_with_recovery(self, step: Step, index: int, total: int, before: Optional[ScreenSnapshot],
                                    config: ExecutionConfig, ctx: StepContext, upcoming, negatives: int):
        """验证失败时走一次恢复并重新验证；返回 ("ok" | "failed" | "promote", 累计失败次数)"""
        recovered = False
        while True:
            if await self._verify(step, index + 1, total, before, config, ctx):
                return "ok", negatives
            negatives += 1
            if negatives >= config.monitor_promote_after and self.session.auto_adjust:
                return "promote", negatives
            if recovered:
                return "failed", negatives
            recovered = True
            before = self.screen.last_snapshot
            outcome = await self._recover_and_retry(
                step, StepOutcome.fail("验证结果与预期不符", ErrorKind.VERIFICATION_MISMATCH),
                config, ctx, upcoming)
            if not outcome.success:
                return "failed", negatives

    async def _run_agent(self, script: Script, config: ExecutionConfig, ctx: StepContext,
                         start: int) -> ExecutionResult:
        """代理模式：每轮由模型选择执行步骤、自定义动作、等待或结束"""
        mode = ExecutionMode.AGENT
        steps = script.steps
        total = len(steps)
        memory = Memory()
        cursor = start
        for iteration in range(config.agent_max_iterations):
            error, kind = await self._check_limits(config, ctx)
            if error:
                return self._result(script, ctx, mode, False, cursor, error, kind, cursor)
            if config.popup_dismiss_enabled:
                await self._dismiss_popups(config, ctx)
            snap = await self.screen.snapshot()
            decision = await self.planner.decide_agent_action(
                script.goal, steps, cursor, self.screen.summarize(snap.root), memory.format_history())
            ctx.count_intervention("代理决策", decision.choice.value)
            ctx.log.add(f"🤖 [{iteration + 1}/{config.agent_max_iterations}] {decision.choice.value}: {decision.reason}")

            if decision.choice is AgentChoice.GOAL_ACHIEVED:
                ctx.log.add("🎉 目标已达成")
                return self._result(script, ctx, mode, True, total)
            if decision.choice is AgentChoice.GOAL_IMPOSSIBLE:
                return self._result(script, ctx, mode, False, cursor,
                                    f"AI 判断目标无法达成: {decision.reason}", ErrorKind.AI_ABORTED, cursor)

            if decision.choice is AgentChoice.EXECUTE_STEP:
                action_name, target = "execute_step", str(decision.step_index)
            elif decision.choice is AgentChoice.CUSTOM_ACTION:
                action_name, target = decision.action.action, decision.action.describe()
            else:
                action_name, target = "wait", None

            if action_name != "wait" and memory.is_repeated_action(action_name, target):
                ctx.log.warn(f"⚠ 检测到重复动作 {action_name} ({target})，尝试返回")
                await self.executor.controller.back()
                memory.record("back", None, "success")
                continue

            if decision.choice is AgentChoice.EXECUTE_STEP:
                index = decision.step_index
                step = steps[index]
                ctx.callbacks.progress(index + 1, total, step.description)
                outcome = await self.executor.execute_with_retries(step, ctx, steps[index + 1:])
                memory.record(action_name, target, "success" if outcome.success else "failed")
                ctx.callbacks.step_complete(index + 1, outcome.success, outcome.error)
                if outcome.success:
                    ctx.log.add(f"✓ 步骤 {index + 1} 完成")
                    cursor = max(cursor, index + 1)
            elif decision.choice is AgentChoice.CUSTOM_ACTION:
                ok = await self.executor.perform_action(decision.action)
                memory.record(action_name, target, "success" if ok else "failed")
                ctx.log.add(f"{'✓' if ok else '❌'} 自定义动作: {target}")
            else:
                await self.executor.controller.wait(decision.wait_ms)
                memory.record(action_name, target, "success")
            await self._pause(config.step_delay_s)
        return self._result(script, ctx, mode, False, cursor,
                            f"达到最大迭代次数 {config.agent_max_iterations}", ErrorKind.TIMEOUT, cursor)
