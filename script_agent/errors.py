"""错误分类：失败类别与步骤执行抛出的异常"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """失败类别，决定恢复策略的选择"""
    SYNTHESIS = "synthesis"
    ELEMENT_NOT_FOUND = "element_not_found"
    GESTURE_FAILED = "gesture_failed"
    INVALID_LANDING_PAGE = "invalid_landing_page"
    VERIFICATION_MISMATCH = "verification_mismatch"
    IMPROVEMENT_EXHAUSTED = "improvement_exhausted"
    APP_NOT_INSTALLED = "app_not_installed"
    ASSERTION_FAILED = "assertion_failed"
    UNEXPECTED_DIALOG = "unexpected_dialog"
    PERMISSION_DENIED = "permission_denied"
    APP_CRASH = "app_crash"
    SCREEN_CHANGED = "screen_changed"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    AI_ABORTED = "ai_aborted"
    NO_WINDOW = "no_window"
    INVALID_PARAMS = "invalid_params"
    SCRIPT_NOT_FOUND = "script_not_found"
    UNKNOWN = "unknown"


class ScriptAgentError(Exception):
    """所有引擎异常的基类"""
    kind = ErrorKind.UNKNOWN


class SynthesisError(ScriptAgentError):
    """模型输出无法解析为脚本（终止性错误，不重试）"""
    kind = ErrorKind.SYNTHESIS


class ElementNotFound(ScriptAgentError):
    kind = ErrorKind.ELEMENT_NOT_FOUND


class GestureDispatchFailure(ScriptAgentError):
    """手势下发失败，携带坐标便于定位"""
    kind = ErrorKind.GESTURE_FAILED

    def __init__(self, action: str, x: Optional[int] = None, y: Optional[int] = None):
        self.action = action
        self.x = x
        self.y = y
        where = f" @ ({x}, {y})" if x is not None and y is not None else ""
        super().__init__(f"手势失败: {action}{where}")


class InvalidLandingPage(ScriptAgentError):
    kind = ErrorKind.INVALID_LANDING_PAGE


class AppNotInstalled(ScriptAgentError):
    kind = ErrorKind.APP_NOT_INSTALLED

    def __init__(self, package: str):
        self.package = package
        super().__init__(f"App not installed: {package}")


class AssertionMismatch(ScriptAgentError):
    kind = ErrorKind.ASSERTION_FAILED


class InvalidStepParams(ScriptAgentError):
    kind = ErrorKind.INVALID_PARAMS


class NoActiveWindow(ScriptAgentError):
    kind = ErrorKind.NO_WINDOW

    def __init__(self, message: str = "No window"):
        super().__init__(message)


class ScriptNotFound(ScriptAgentError):
    kind = ErrorKind.SCRIPT_NOT_FOUND

    def __init__(self, script_id: str):
        self.script_id = script_id
        super().__init__(f"Script not found: {script_id}")