"""脚本引擎核心类：对外暴露生成 / 执行 / 改进 / 管理脚本的接口"""

import logging
import time
from dataclasses import replace
from typing import List, Optional, Tuple

from .config import AgentConfig
from .context import ExecutionCallbacks, ProgressCallback, RunControl, RunLog, StepContext
from .controller import Controller
from .errors import SynthesisError
from .improver import SelfImprovementLoop
from .llm import ChatModel
from .models import ExecutionMode, ExecutionResult, Script
from .modes import EngineSession, ModeController
from .perception import ScreenBinding, ScreenContextProvider
from .planner import Planner
from .popup import PopupReflex
from .recovery import create_default_registry
from .step_executor import StepExecutor
from .storage import ScriptStore
from .synthesizer import ScriptSynthesizer

logger = logging.getLogger(__name__)


class ScriptEngine:
    """
    自适应脚本引擎。

    一个引擎绑定一块屏幕；session.lock 保证同一屏幕上同时只有一个脚本在跑，
    模式、计数与脚本版本只在锁内修改。
    """

    def __init__(self, binding: ScreenBinding, model: Optional[ChatModel], store: ScriptStore,
                 config: Optional[AgentConfig] = None, session: Optional[EngineSession] = None):
        self.config = config or AgentConfig()
        self.store = store
        self.model = model
        self.screen = ScreenContextProvider(binding, self.config.capture_screenshots)
        self.controller = Controller(binding)
        self.planner = Planner(model) if model is not None else None
        self.executor = StepExecutor(self.screen, self.controller, self.planner)
        self.popup = PopupReflex(self.screen, self.controller)
        self.recovery = create_default_registry(
            self.controller, self.config.auto_grant_permissions, self.config.step_delay_scale)
        self.session = session or EngineSession(self.config.default_mode, self.config.auto_adjust)
        self.modes = ModeController(self.executor, self.screen, self.popup, self.recovery,
                                    self.session, self.planner)
        self.synthesizer = ScriptSynthesizer(model, store) if model is not None else None
        self.improver = (SelfImprovementLoop(model, store, self.config.max_improve_cycles)
                         if model is not None else None)
        self.control = RunControl()

    @property
    def mode(self) -> ExecutionMode:
        return self.session.mode

    async def generate(self, goal: str) -> Script:
        """根据目标生成并保存脚本"""
        if self.synthesizer is None:
            raise SynthesisError("未配置模型，无法生成脚本")
        return await self.synthesizer.synthesize(goal)

    async def _execute_locked(self, script: Script, mode: Optional[ExecutionMode],
                              callbacks: Optional[ExecutionCallbacks]) -> Tuple[ExecutionResult, Script]:
        mode = mode or self.session.mode
        ctx = StepContext(goal=script.goal, log=RunLog(), control=self.control,
                          callbacks=callbacks or ExecutionCallbacks())
        result = await self.modes.run(script, self.config.execution_config(mode), ctx)
        if result.success:
            updated = replace(script, success_count=script.success_count + 1, last_executed_at=time.time())
        else:
            updated = replace(script, fail_count=script.fail_count + 1, last_executed_at=time.time())
        self.store.save(updated)
        return result, updated

    async def execute(self, script_id: str, mode: Optional[ExecutionMode] = None,
                      on_progress: Optional[ProgressCallback] = None,
                      callbacks: Optional[ExecutionCallbacks] = None) -> ExecutionResult:
        """执行脚本；mode 为空时使用会话当前模式"""
        script = self.store.load(script_id)
        if callbacks is None:
            callbacks = ExecutionCallbacks(on_progress=on_progress)
        self.control.reset()
        async with self.session.lock:
            result, _ = await self._execute_locked(script, mode, callbacks)
        return result

    async def execute_with_auto_improve(self, script_id: str, mode: Optional[ExecutionMode] = None,
                                        on_progress: Optional[ProgressCallback] = None) -> ExecutionResult:
        """执行脚本，失败时自动改进并重新执行"""
        script = self.store.load(script_id)
        callbacks = ExecutionCallbacks(on_progress=on_progress)
        self.control.reset()
        async with self.session.lock:
            if self.improver is None:
                result, _ = await self._execute_locked(script, mode, callbacks)
                return result
            result, _ = await self.improver.run_with_auto_improve(
                script, lambda s: self._execute_locked(s, mode, callbacks), self.control)
        return result

    async def improve(self, script_id: str, failed_step_index: Optional[int] = None,
                      error: Optional[str] = None) -> Optional[Script]:
        """手动改进脚本，返回新版本（失败返回 None）"""
        script = self.store.load(script_id)
        if self.improver is None:
            logger.warning("⚠ 未配置模型，无法改进脚本")
            return None
        async with self.session.lock:
            return await self.improver.manual_improve(script, failed_step_index, error)

    def list(self) -> List[Script]:
        return self.store.list()

    def get(self, script_id: str) -> Optional[Script]:
        return self.store.get(script_id)

    def delete(self, script_id: str) -> bool:
        return self.store.delete(script_id)

    def set_mode(self, mode: ExecutionMode) -> None:
        logger.info("%s 切换到 %s", mode.emoji, mode.display_name)
        self.session.mode = mode

    def reset_counters(self) -> None:
        self.session.reset_counters()

    def stop(self) -> None:
        self.control.stop()

    def pause(self) -> None:
        self.control.pause()

    def resume(self) -> None:
        self.control.resume()
