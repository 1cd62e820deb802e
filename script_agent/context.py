"""运行上下文：执行日志、协作式取消 / 暂停与单次运行的共享状态"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger("script_agent.run")

ProgressCallback = Callable[[int, int, str], None]
StepCompleteCallback = Callable[[int, bool, Optional[str]], None]
NoticeCallback = Callable[[str, str], None]

PAUSE_POLL_SECONDS = 0.2


class RunLog:
    """单次执行的日志：同时写入 logging 与结果中的 logs"""

    def __init__(self, echo: Optional[Callable[[str], None]] = None):
        self._lines: List[str] = []
        self.echo = echo

    def add(self, message: str, level: int = logging.INFO) -> None:
        self._lines.append(message)
        logger.log(level, message)
        if self.echo is not None:
            self.echo(message)

    def warn(self, message: str) -> None:
        self.add(message, logging.WARNING)

    def error(self, message: str) -> None:
        self.add(message, logging.ERROR)

    @property
    def lines(self) -> Tuple[str, ...]:
        return tuple(self._lines)

    def tail(self, count: int = 20) -> List[str]:
        return self._lines[-count:]


class RunControl:
    """协作式停止 / 暂停标志，在步骤之间与暂停循环中轮询"""

    def __init__(self):
        self._stop = False
        self._paused = False

    def stop(self) -> None:
        self._stop = True

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    def reset(self) -> None:
        self._stop = False
        self._paused = False

    @property
    def stop_requested(self) -> bool:
        return self._stop

    @property
    def paused(self) -> bool:
        return self._paused

    async def wait_if_paused(self) -> bool:
        """暂停时阻塞，返回 False 表示期间收到了停止请求"""
        while self._paused and not self._stop:
            await asyncio.sleep(PAUSE_POLL_SECONDS)
        return not self._stop


@dataclass
class ExecutionCallbacks:
    """执行过程中的回调，均为可选"""
    on_progress: Optional[ProgressCallback] = None
    on_step_start: Optional[ProgressCallback] = None
    on_step_complete: Optional[StepCompleteCallback] = None
    on_ai_intervention: Optional[NoticeCallback] = None
    on_popup_dismissed: Optional[Callable[[int], None]] = None

    def progress(self, current: int, total: int, description: str) -> None:
        if self.on_progress is not None:
            self.on_progress(current, total, description)
        if self.on_step_start is not None:
            self.on_step_start(current, total, description)

    def step_complete(self, step_num: int, success: bool, error: Optional[str] = None) -> None:
        if self.on_step_complete is not None:
            self.on_step_complete(step_num, success, error)

    def ai_intervention(self, reason: str, action: str) -> None:
        if self.on_ai_intervention is not None:
            self.on_ai_intervention(reason, action)

    def popups_dismissed(self, count: int) -> None:
        if count and self.on_popup_dismissed is not None:
            self.on_popup_dismissed(count)


@dataclass
class StepContext:
    """单次脚本执行期间各步骤共享的状态"""
    goal: str
    log: RunLog
    control: RunControl = field(default_factory=RunControl)
    callbacks: ExecutionCallbacks = field(default_factory=ExecutionCallbacks)
    extracted_data: Dict[str, Any] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)
    step_executions: int = 0
    popups_dismissed: int = 0
    ai_interventions: int = 0

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def count_intervention(self, reason: str, action: str) -> None:
        self.ai_interventions += 1
        self.callbacks.ai_intervention(reason, action)
