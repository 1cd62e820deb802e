"""步骤参数：每种步骤类型一个参数类，合成时一次性解析"""

import logging
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional, Tuple

from .models import FailurePolicy, Step, StepType

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3

SWIPE_DIRECTIONS = ("up", "down", "left", "right")


@dataclass(frozen=True)
class MatchCriteria:
    """元素匹配条件：精确文本 / 包含（语义等价）/ 正则"""
    text: Optional[str] = None
    contains: Optional[str] = None
    pattern: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.text or self.contains or self.pattern)

    def describe(self) -> str:
        return f"text={self.text}, contains={self.contains}, pattern={self.pattern}"


@dataclass(frozen=True)
class LaunchAppParams:
    package: str
    go_home: bool = True
    home_label: Optional[str] = None


@dataclass(frozen=True)
class TapParams:
    x: Optional[int] = None
    y: Optional[int] = None
    criteria: MatchCriteria = MatchCriteria()


@dataclass(frozen=True)
class SwipeParams:
    direction: str = "up"
    distance: float = 0.5  # 占屏幕的比例


@dataclass(frozen=True)
class WaitParams:
    ms: int = 1000


@dataclass(frozen=True)
class FindAndTapParams:
    criteria: MatchCriteria
    excludes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ScrollUntilFindParams:
    criteria: MatchCriteria
    excludes: Tuple[str, ...] = ()
    max_scrolls: int = 10
    direction: str = "up"
    tap: bool = True
    validate_landing: Optional[bool] = None  # None 表示根据目标推断


@dataclass(frozen=True)
class ExtractDataParams:
    field: str = "data"
    count: int = 5


@dataclass(frozen=True)
class InputTextParams:
    text: str
    criteria: MatchCriteria = MatchCriteria()


@dataclass(frozen=True)
class BackParams:
    times: int = 1


@dataclass(frozen=True)
class AssertParams:
    criteria: MatchCriteria
    present: bool = True


@dataclass(frozen=True)
class AIDecideParams:
    goal: str


@dataclass(frozen=True)
class SearchParams:
    text: Optional[str] = None
    criteria: MatchCriteria = MatchCriteria()


PARAMS_BY_TYPE = {
    StepType.LAUNCH_APP: LaunchAppParams,
    StepType.TAP: TapParams,
    StepType.SWIPE: SwipeParams,
    StepType.WAIT: WaitParams,
    StepType.FIND_AND_TAP: FindAndTapParams,
    StepType.SCROLL_UNTIL_FIND: ScrollUntilFindParams,
    StepType.EXTRACT_DATA: ExtractDataParams,
    StepType.INPUT_TEXT: InputTextParams,
    StepType.BACK: BackParams,
    StepType.ASSERT: AssertParams,
    StepType.AI_DECIDE: AIDecideParams,
    StepType.SEARCH: SearchParams,
}

# 关键词 -> 类型，按顺序匹配整个以下划线分隔的词
_TYPE_KEYWORDS = (
    ("SEARCH", StepType.SEARCH),
    ("SCROLL", StepType.SCROLL_UNTIL_FIND),
    ("SWIPE", StepType.SWIPE),
    ("CLICK", StepType.TAP),
    ("PRESS", StepType.TAP),
    ("FIND", StepType.FIND_AND_TAP),
    ("TAP", StepType.TAP),
    ("INPUT", StepType.INPUT_TEXT),
    ("TYPE", StepType.INPUT_TEXT),
    ("ENTER_TEXT", StepType.INPUT_TEXT),
    ("DELAY", StepType.WAIT),
    ("SLEEP", StepType.WAIT),
    ("PAUSE", StepType.WAIT),
    ("OPEN", StepType.LAUNCH_APP),
    ("LAUNCH", StepType.LAUNCH_APP),
    ("START", StepType.LAUNCH_APP),
    ("EXTRACT", StepType.EXTRACT_DATA),
    ("GET", StepType.EXTRACT_DATA),
    ("COLLECT", StepType.EXTRACT_DATA),
    ("BACK", StepType.BACK),
    ("RETURN", StepType.BACK),
    ("ASSERT", StepType.ASSERT),
    ("VERIFY", StepType.ASSERT),
    ("CHECK", StepType.ASSERT),
)

_POLICY_ALIASES = {
    "AI_TAKEOVER": FailurePolicy.ESCALATE_TO_AI,
    "ESCALATE": FailurePolicy.ESCALATE_TO_AI,
    "CONTINUE": FailurePolicy.SKIP,
    "IGNORE": FailurePolicy.SKIP,
    "STOP": FailurePolicy.ABORT,
    "FAIL": FailurePolicy.ABORT,
}


def normalize_step_type(raw: Any) -> StepType:
    """将模型给出的类型字符串映射为已知类型，无法识别时退化为 AI_DECIDE"""
    type_str = str(raw or "").strip().upper().replace("-", "_").replace(" ", "_")
    try:
        return StepType(type_str)
    except ValueError:
        pass
    compact = type_str.replace("_", "")
    for known in StepType:
        if known.value.replace("_", "") == compact:
            return known
    logger.warning("⚠ 未知步骤类型 '%s'，尝试智能映射...", raw)
    padded = f"_{type_str}_"
    for keyword, step_type in _TYPE_KEYWORDS:
        if f"_{keyword}_" in padded:
            return step_type
    logger.warning("⚠ 无法映射类型 '%s'，使用 AI_DECIDE", raw)
    return StepType.AI_DECIDE


def normalize_policy(raw: Any) -> FailurePolicy:
    policy_str = str(raw or "RETRY").strip().upper().replace("-", "_").replace(" ", "_")
    try:
        return FailurePolicy(policy_str)
    except ValueError:
        return _POLICY_ALIASES.get(policy_str, FailurePolicy.RETRY)


def _as_int(value: Any, default: Optional[int]) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any, default: Optional[bool]) -> Optional[bool]:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes", "y"):
        return True
    if text in ("false", "0", "no", "n"):
        return False
    return default


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _as_str_tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(item) for item in value if str(item).strip())


def _criteria(raw: Mapping[str, Any]) -> MatchCriteria:
    return MatchCriteria(
        text=_as_str(raw.get("text")),
        contains=_as_str(raw.get("contains")),
        pattern=_as_str(raw.get("pattern") or raw.get("regex")),
    )


def parse_params(step_type: StepType, raw: Optional[Mapping[str, Any]], description: str = ""):
    """把模型输出的松散参数字典解析成对应类型的参数对象"""
    raw = raw or {}
    if step_type is StepType.LAUNCH_APP:
        package = _as_str(raw.get("package") or raw.get("app") or raw.get("package_name")) or ""
        return LaunchAppParams(
            package=package,
            go_home=bool(_as_bool(raw.get("go_home"), True)),
            home_label=_as_str(raw.get("home_label")),
        )
    if step_type is StepType.TAP:
        return TapParams(x=_as_int(raw.get("x"), None), y=_as_int(raw.get("y"), None), criteria=_criteria(raw))
    if step_type is StepType.SWIPE:
        direction = str(raw.get("direction") or "up").lower()
        if direction not in SWIPE_DIRECTIONS:
            direction = "up"
        return SwipeParams(direction=direction, distance=min(max(_as_float(raw.get("distance"), 0.5), 0.1), 0.9))
    if step_type is StepType.WAIT:
        ms = raw.get("ms")
        if ms is None:
            ms = raw.get("duration")
        return WaitParams(ms=max(_as_int(ms, 1000) or 0, 0))
    if step_type is StepType.FIND_AND_TAP:
        return FindAndTapParams(criteria=_criteria(raw), excludes=_as_str_tuple(raw.get("excludes")))
    if step_type is StepType.SCROLL_UNTIL_FIND:
        direction = str(raw.get("direction") or "up").lower()
        return ScrollUntilFindParams(
            criteria=_criteria(raw),
            excludes=_as_str_tuple(raw.get("excludes")),
            max_scrolls=max(_as_int(raw.get("max_scrolls"), 10) or 1, 1),
            direction=direction if direction in SWIPE_DIRECTIONS else "up",
            tap=bool(_as_bool(raw.get("tap"), True)),
            validate_landing=_as_bool(raw.get("validate_landing"), None),
        )
    if step_type is StepType.EXTRACT_DATA:
        return ExtractDataParams(
            field=_as_str(raw.get("field")) or "data",
            count=max(_as_int(raw.get("count"), 5) or 1, 1),
        )
    if step_type is StepType.INPUT_TEXT:
        return InputTextParams(text=str(raw.get("value") or raw.get("input") or raw.get("text") or ""),
                               criteria=MatchCriteria(contains=_as_str(raw.get("target"))))
    if step_type is StepType.BACK:
        return BackParams(times=max(_as_int(raw.get("times"), 1) or 1, 1))
    if step_type is StepType.ASSERT:
        return AssertParams(criteria=_criteria(raw), present=bool(_as_bool(raw.get("present"), True)))
    if step_type is StepType.AI_DECIDE:
        return AIDecideParams(goal=_as_str(raw.get("goal")) or description)
    if step_type is StepType.SEARCH:
        return SearchParams(text=_as_str(raw.get("text")),
                            criteria=MatchCriteria(contains=_as_str(raw.get("contains")),
                                                   pattern=_as_str(raw.get("pattern"))))
    raise ValueError(f"Unsupported step type: {step_type}")


def params_to_dict(params: Any) -> Dict[str, Any]:
    """参数对象 -> 可持久化字典（与模型契约保持同一形状）"""
    out: Dict[str, Any] = {}
    for f in fields(params):
        value = getattr(params, f.name)
        if isinstance(value, MatchCriteria):
            continue
        if value is None or value == ():
            continue
        out[f.name] = list(value) if isinstance(value, tuple) else value
    criteria = getattr(params, "criteria", None)
    if isinstance(criteria, MatchCriteria):
        if isinstance(params, InputTextParams):
            out["value"] = out.pop("text", "")
            if criteria.contains:
                out["target"] = criteria.contains
        else:
            for key in ("text", "contains", "pattern"):
                if getattr(criteria, key):
                    out[key] = getattr(criteria, key)
    return out


def step_from_dict(raw: Mapping[str, Any], position: int) -> Step:
    """容错解析单个步骤；position 为从 1 开始的序号"""
    step_type = normalize_step_type(raw.get("type"))
    description = str(raw.get("description") or "")
    params = raw.get("params")
    if not isinstance(params, Mapping):
        params = {}
    return Step(
        index=_as_int(raw.get("index"), position) or position,
        type=step_type,
        description=description,
        params=parse_params(step_type, params, description),
        on_failure=normalize_policy(raw.get("on_fail", raw.get("on_failure"))),
        max_retries=max(_as_int(raw.get("max_retries"), DEFAULT_MAX_RETRIES) or 0, 0),
    )


def step_to_dict(step: Step) -> Dict[str, Any]:
    return {
        "index": step.index,
        "type": step.type.value,
        "description": step.description,
        "params": params_to_dict(step.params),
        "on_fail": step.on_failure.value,
        "max_retries": step.max_retries,
    }
