"""数据模型定义"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import ErrorKind


@dataclass(frozen=True)
class Bounds:
    """屏幕坐标矩形"""
    left: int = 0
    top: int = 0
    right: int = 0
    bottom: int = 0

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    def center(self) -> Tuple[int, int]:
        return (self.left + self.right) // 2, (self.top + self.bottom) // 2

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0


@dataclass(frozen=True)
class UIElement:
    """单个 UI 节点的快照（每步重新读取，不持久化）"""
    class_name: str = ""
    text: Optional[str] = None
    content_desc: Optional[str] = None  # 无障碍标签
    resource_id: Optional[str] = None
    bounds: Bounds = field(default_factory=Bounds)
    clickable: bool = False
    enabled: bool = True
    editable: bool = False
    focused: bool = False
    package: str = ""
    children: Tuple["UIElement", ...] = ()

    @property
    def label(self) -> str:
        return (self.text or "").strip() or (self.content_desc or "").strip()

    @property
    def combined_text(self) -> str:
        return f"{self.text or ''} {self.content_desc or ''}"

    @property
    def short_class(self) -> str:
        return self.class_name.rsplit(".", 1)[-1]

    def center(self) -> Tuple[int, int]:
        return self.bounds.center()


class StepType(str, Enum):
    """步骤类型"""
    LAUNCH_APP = "LAUNCH_APP"
    TAP = "TAP"
    SWIPE = "SWIPE"
    WAIT = "WAIT"
    FIND_AND_TAP = "FIND_AND_TAP"
    SCROLL_UNTIL_FIND = "SCROLL_UNTIL_FIND"
    EXTRACT_DATA = "EXTRACT_DATA"
    INPUT_TEXT = "INPUT_TEXT"
    BACK = "BACK"
    ASSERT = "ASSERT"
    AI_DECIDE = "AI_DECIDE"
    SEARCH = "SEARCH"


class FailurePolicy(str, Enum):
    """步骤重试耗尽后的处理方式"""
    RETRY = "RETRY"
    SKIP = "SKIP"
    ABORT = "ABORT"
    ESCALATE_TO_AI = "ESCALATE_TO_AI"


class ExecutionMode(str, Enum):
    """执行模式：AI 介入程度由低到高"""
    FAST = "FAST"
    SMART = "SMART"
    MONITOR = "MONITOR"
    AGENT = "AGENT"

    @property
    def display_name(self) -> str:
        return _MODE_DISPLAY[self][0]

    @property
    def emoji(self) -> str:
        return _MODE_DISPLAY[self][1]

    @property
    def tier_class(self) -> int:
        """自动调整时的档位：FAST=0，SMART/MONITOR=1，AGENT=2"""
        if self is ExecutionMode.FAST:
            return 0
        if self is ExecutionMode.AGENT:
            return 2
        return 1

    @classmethod
    def from_name(cls, name: Optional[str]) -> "ExecutionMode":
        for mode in cls:
            if name and mode.value.lower() == name.strip().lower():
                return mode
        return cls.SMART


_MODE_DISPLAY = {
    ExecutionMode.FAST: ("极速模式", "🚀"),
    ExecutionMode.SMART: ("智能模式", "🛡️"),
    ExecutionMode.MONITOR: ("监控模式", "👁️"),
    ExecutionMode.AGENT: ("全程代理", "🤖"),
}


@dataclass(frozen=True)
class Step:
    """脚本中的单个步骤，params 为按类型解析后的参数对象"""
    index: int
    type: StepType
    description: str
    params: Any
    on_failure: FailurePolicy = FailurePolicy.RETRY
    max_retries: int = 3


@dataclass(frozen=True)
class Script:
    """可复用的自动化脚本，每次 AI 改写版本号递增"""
    id: str
    name: str
    goal: str
    steps: Tuple[Step, ...]
    version: int = 1
    outputs: Tuple[str, ...] = ()
    success_count: int = 0
    fail_count: int = 0
    created_at: float = field(default_factory=time.time)
    last_executed_at: Optional[float] = None


@dataclass(frozen=True)
class StepOutcome:
    """单步执行结果"""
    success: bool
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None) -> "StepOutcome":
        return cls(True, data=data)

    @classmethod
    def fail(cls, error: str, kind: ErrorKind = ErrorKind.UNKNOWN) -> "StepOutcome":
        return cls(False, error=error, error_kind=kind)


@dataclass(frozen=True)
class ExecutionResult:
    """一次脚本执行的结果（不可变）"""
    success: bool
    steps_executed: int
    total_steps: int
    extracted_data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    failed_step_index: Optional[int] = None
    logs: Tuple[str, ...] = ()
    popups_dismissed_count: int = 0
    ai_intervention_count: int = 0
    mode: Optional[ExecutionMode] = None
    error_kind: Optional[ErrorKind] = None


@dataclass
class MemoryRecord:
    """单条历史记录"""
    step_num: int
    action: str
    target: Optional[str]
    result: str  # success|failed


@dataclass(frozen=True)
class CustomAction:
    """模型给出的一次性动作"""
    action: str  # tap|tap_text|swipe|back|wait|input|launch|done
    x: Optional[int] = None
    y: Optional[int] = None
    text: Optional[str] = None
    direction: Optional[str] = None
    ms: Optional[int] = None
    package: Optional[str] = None

    def describe(self) -> str:
        parts = [self.action]
        if self.x is not None and self.y is not None:
            parts.append(f"({self.x}, {self.y})")
        for value in (self.text, self.direction, self.package):
            if value:
                parts.append(str(value))
        if self.ms:
            parts.append(f"{self.ms}ms")
        return " ".join(parts)


class AgentChoice(str, Enum):
    """代理模式下模型的决策类别"""
    EXECUTE_STEP = "EXECUTE_STEP"
    CUSTOM_ACTION = "CUSTOM_ACTION"
    WAIT = "WAIT"
    GOAL_ACHIEVED = "GOAL_ACHIEVED"
    GOAL_IMPOSSIBLE = "GOAL_IMPOSSIBLE"


@dataclass(frozen=True)
class AgentDecision:
    """代理模式 Planner 输出的结构化决策"""
    choice: AgentChoice
    reason: str = ""
    step_index: Optional[int] = None
    action: Optional[CustomAction] = None
    wait_ms: int = 1000


@dataclass(frozen=True)
class Verification:
    """监控模式下 AI 对步骤结果的判断"""
    is_correct: bool
    confidence: float
    reason: str = ""
    suggestion: Optional[str] = None


@dataclass(frozen=True)
class RecoverySuggestion:
    """AI 恢复建议"""
    should_retry: bool
    reason: str = ""
    action: Optional[CustomAction] = None
    suggestion: str = ""


def step_summaries(steps: List[Step]) -> List[str]:
    return [f"{s.index}. [{s.type.value}] {s.description}" for s in steps]
