"""UI Script Agent 包

包含各个模块：
- models / step_params: 数据模型与类型化步骤参数
- resolver: 元素定位
- perception: 感知模块（屏幕快照、差异、摘要）
- controller: 执行模块（手势下发）
- popup / recovery: 弹窗规则库与恢复策略
- step_executor: 步骤执行
- synthesizer / planner: 脚本合成与执行期 AI 决策
- modes: 执行模式控制与自动升降档
- improver: 自我改进循环
- storage: 脚本持久化
- browser: Playwright 屏幕绑定
- core: 核心引擎类
"""

from .config import AgentConfig, ExecutionConfig
from .context import ExecutionCallbacks, RunControl, RunLog, StepContext
from .errors import ErrorKind, ScriptAgentError, ScriptNotFound, SynthesisError
from .models import (
    ExecutionMode,
    ExecutionResult,
    FailurePolicy,
    Script,
    Step,
    StepType,
    UIElement,
)
from .llm import ChatModel, OpenAIChatModel
from .modes import EngineSession, ModeController, auto_adjust
from .resolver import resolve
from .storage import ScriptStore
from .core import ScriptEngine

__all__ = [
    "AgentConfig",
    "ExecutionConfig",
    "ExecutionCallbacks",
    "RunControl",
    "RunLog",
    "StepContext",
    "ErrorKind",
    "ScriptAgentError",
    "ScriptNotFound",
    "SynthesisError",
    "ExecutionMode",
    "ExecutionResult",
    "FailurePolicy",
    "Script",
    "Step",
    "StepType",
    "UIElement",
    "ChatModel",
    "OpenAIChatModel",
    "EngineSession",
    "ModeController",
    "auto_adjust",
    "resolve",
    "ScriptStore",
    "ScriptEngine",
]
