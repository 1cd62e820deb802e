"""自我改进：执行失败后让模型重写步骤，版本号递增后重新执行"""

import logging
from dataclasses import replace
from typing import Awaitable, Callable, Optional, Tuple

from .context import RunControl
from .errors import ErrorKind, SynthesisError
from .llm import ChatModel, extract_json_payload, user_message
from .models import ExecutionResult, Script
from .storage import ScriptStore
from .synthesizer import build_improvement_prompt, parse_steps

logger = logging.getLogger(__name__)

MAX_IMPROVE_CYCLES = 3

ExecuteFn = Callable[[Script], Awaitable[Tuple[ExecutionResult, Script]]]


def _cancelled(result: ExecutionResult) -> ExecutionResult:
    return replace(result, error="执行已被停止", error_kind=ErrorKind.CANCELLED)


class SelfImprovementLoop:
    """自我改进循环，最多重写 max_cycles 次"""

    def __init__(self, model: ChatModel, store: ScriptStore, max_cycles: int = MAX_IMPROVE_CYCLES):
        self.model = model
        self.store = store
        self.max_cycles = max_cycles

    async def improve(self, script: Script, failed: ExecutionResult) -> Optional[Script]:
        """一次模型调用重写完整的步骤列表；成功返回新版本，失败返回 None"""
        logger.info("🔧 改进脚本 %s v%s (失败步骤 %s)", script.id, script.version, failed.failed_step_index)
        try:
            response = await self.model.chat(user_message(build_improvement_prompt(script, failed)))
            steps = parse_steps(extract_json_payload(response))
        except (SynthesisError, ValueError) as e:
            logger.warning("❌ 改进结果无法解析: %s", e)
            return None
        except Exception as e:
            logger.warning("❌ 改进调用失败: %s", e)
            return None
        improved = replace(script, steps=steps, version=script.version + 1, fail_count=script.fail_count + 1)
        self.store.save(improved)
        logger.info("✓ 脚本已改进: v%s -> v%s (%d 步)", script.version, improved.version, len(steps))
        return improved

    async def run_with_auto_improve(self, script: Script, execute: ExecuteFn,
                                    control: Optional[RunControl] = None) -> Tuple[ExecutionResult, Script]:
        """执行；失败则改进后重新执行，直到成功、被停止或达到改进上限"""
        result, script = await execute(script)
        cycles = 0
        while not result.success:
            if result.error_kind is ErrorKind.CANCELLED:
                return result, script
            if cycles >= self.max_cycles:
                logger.warning("⚠ [%s] 已改进 %d 次仍失败: %s", ErrorKind.IMPROVEMENT_EXHAUSTED.value, cycles, result.error)
                return result, script
            if control is not None and control.stop_requested:
                return _cancelled(result), script
            improved = await self.improve(script, result)
            if improved is None:
                return result, script
            script = improved
            cycles += 1
            # 改写期间可能收到停止请求
            if control is not None and control.stop_requested:
                logger.info("⏹ 改进后收到停止请求，不再重新执行 v%s", script.version)
                return _cancelled(result), script
            logger.info("🔁 第 %d 次改进后重新执行", cycles)
            result, script = await execute(script)
        return result, script

    async def manual_improve(self, script: Script, failed_step_index: Optional[int] = None,
                             error: Optional[str] = None) -> Optional[Script]:
        """在实际运行之外手动修复脚本：构造一个失败结果作为输入"""
        total = len(script.steps)
        index = failed_step_index if failed_step_index is not None else max(total - 1, 0)
        fake = ExecutionResult(
            success=False,
            steps_executed=index,
            total_steps=total,
            error=error or "用户请求改进",
            failed_step_index=index,
            logs=("用户手动触发改进",),
        )
        return await self.improve(script, fake)
