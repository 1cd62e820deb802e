"""规划模块：执行期的模型决策（验证、恢复建议、代理决策、AI_DECIDE）

模型调用失败或输出无法解析时都降级为安全默认值，不向上抛出。
"""

import logging
from typing import Any, Mapping, Optional, Sequence

from .llm import ChatModel, extract_json_payload, user_message
from .models import (
    AgentChoice,
    AgentDecision,
    CustomAction,
    RecoverySuggestion,
    Step,
    Verification,
    step_summaries,
)
from .step_params import params_to_dict

logger = logging.getLogger(__name__)

CUSTOM_ACTION_DOC = (
    '{"action": "tap", "x": 100, "y": 200} | {"action": "tap_text", "text": "按钮文字"} | '
    '{"action": "swipe", "direction": "up"} | {"action": "back"} | {"action": "wait", "ms": 1000} | '
    '{"action": "input", "text": "内容"} | {"action": "launch", "package": "包名"} | {"action": "done"}'
)

_CUSTOM_ACTIONS = ("tap", "tap_text", "swipe", "back", "wait", "input", "launch", "done")

_ACTION_ALIASES = {
    "click": "tap",
    "press": "tap",
    "click_text": "tap_text",
    "scroll": "swipe",
    "fill": "input",
    "type": "input",
    "open": "launch",
    "finish": "done",
}


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def parse_custom_action(raw: Any) -> Optional[CustomAction]:
    """把模型给出的动作字典转换为 CustomAction，无法识别返回 None"""
    if not isinstance(raw, Mapping):
        return None
    params = raw.get("params") if isinstance(raw.get("params"), Mapping) else {}
    merged = dict(params)
    merged.update({k: v for k, v in raw.items() if k != "params"})
    action = str(merged.get("action") or merged.get("type") or "").strip().lower()
    action = _ACTION_ALIASES.get(action, action)
    if action not in _CUSTOM_ACTIONS:
        return None
    x, y = _as_int(merged.get("x")), _as_int(merged.get("y"))
    text = merged.get("text") or merged.get("value")
    if action == "tap" and (x is None or y is None):
        if not text:
            return None
        action = "tap_text"
    if action in ("tap_text", "input") and not text:
        return None
    return CustomAction(
        action=action,
        x=x,
        y=y,
        text=str(text) if text else None,
        direction=str(merged.get("direction")).lower() if merged.get("direction") else None,
        ms=_as_int(merged.get("ms") or merged.get("duration")),
        package=str(merged.get("package")) if merged.get("package") else None,
    )


def _as_confidence(value: Any) -> float:
    try:
        return min(max(float(value), 0.0), 1.0)
    except (TypeError, ValueError):
        return 0.0


def _describe_step(step: Step) -> str:
    return (
        f"类型: {step.type.value}\n"
        f"描述: {step.description}\n"
        f"参数: {params_to_dict(step.params)}"
    )


class Planner:
    """规划模块：调用 LLM 做执行期决策"""

    def __init__(self, model: ChatModel):
        self.model = model

    async def _ask(self, prompt: str) -> Mapping[str, Any]:
        response = await self.model.chat(user_message(prompt))
        payload = extract_json_payload(response)
        if not isinstance(payload, Mapping):
            raise ValueError("expected a JSON object")
        return payload

    async def verify_step(self, step: Step, current: int, total: int,
                          screen_summary: str, diff_summary: str) -> Verification:
        """监控模式：判断刚执行的步骤是否真的成功"""
        prompt = (
            "你是手机自动化验证助手。请验证刚才执行的步骤是否成功。\n\n"
            f"## 执行的步骤\n步骤 {current}/{total}\n{_describe_step(step)}\n\n"
            f"## 当前屏幕\n{screen_summary}\n\n"
            f"{diff_summary}\n\n"
            "请判断步骤是否成功执行，返回 JSON:\n"
            '{"is_correct": true, "confidence": 0.9, "reason": "判断理由", "suggestion": "如果失败，恢复建议"}'
        )
        try:
            data = await self._ask(prompt)
        except Exception as e:
            logger.warning("⚠ 验证调用失败，按通过处理: %s", e)
            return Verification(True, 0.0, f"验证不可用: {e}")
        is_correct = data.get("is_correct", data.get("isCorrect", True))
        return Verification(
            is_correct=bool(is_correct),
            confidence=_as_confidence(data.get("confidence", 0.5)),
            reason=str(data.get("reason") or ""),
            suggestion=str(data["suggestion"]) if data.get("suggestion") else None,
        )

    async def suggest_recovery(self, step: Step, error: str, screen_summary: str) -> RecoverySuggestion:
        """智能模式：步骤失败后请模型给一个修复动作"""
        prompt = (
            "你是手机自动化助手。当前步骤执行失败，请分析原因并给出恢复操作。\n\n"
            f"## 失败的步骤\n{_describe_step(step)}\n\n"
            f"## 错误信息\n{error}\n\n"
            f"## 屏幕状态\n{screen_summary}\n\n"
            "返回 JSON:\n"
            '{"reason": "失败原因分析", "should_retry": true, '
            f'"action": {{}} 或 null（可选动作：{CUSTOM_ACTION_DOC}）, "suggestion": "给用户的建议"}}'
        )
        try:
            data = await self._ask(prompt)
        except Exception as e:
            logger.warning("⚠ 恢复建议调用失败: %s", e)
            return RecoverySuggestion(False, f"恢复建议不可用: {e}")
        return RecoverySuggestion(
            should_retry=bool(data.get("should_retry", data.get("shouldRetry", False))),
            reason=str(data.get("reason") or ""),
            action=parse_custom_action(data.get("action")),
            suggestion=str(data.get("suggestion") or ""),
        )

    async def decide_agent_action(self, goal: str, steps: Sequence[Step], cursor: int,
                                  screen_summary: str, history: str) -> AgentDecision:
        """代理模式：每轮决定执行哪一步 / 自定义动作 / 等待 / 结束"""
        planned = steps[cursor] if 0 <= cursor < len(steps) else None
        planned_desc = f"步骤 {cursor}: {planned.description}" if planned else "(计划步骤已全部执行)"
        prompt = (
            "你是手机自动化 AI 代理。根据当前状态决定下一步操作。\n\n"
            f"## 任务目标\n{goal}\n\n"
            "## 参考步骤（仅供参考，可以跳过或调整顺序）\n"
            + "\n".join(step_summaries(list(steps))) + "\n\n"
            f"## 计划的下一步\n{planned_desc}\n\n"
            f"## 当前屏幕\n{screen_summary}\n\n"
            f"## 历史动作\n{history}\n\n"
            "请决定:\n"
            "1. EXECUTE_STEP - 执行某个参考步骤（给出 step_index，从 0 开始）\n"
            f"2. CUSTOM_ACTION - 执行自定义操作（action 取值：{CUSTOM_ACTION_DOC}）\n"
            "3. WAIT - 等待页面变化（给出 ms）\n"
            "4. GOAL_ACHIEVED - 目标已达成\n"
            "5. GOAL_IMPOSSIBLE - 目标无法达成\n\n"
            "返回 JSON:\n"
            '{"decision": "EXECUTE_STEP|CUSTOM_ACTION|WAIT|GOAL_ACHIEVED|GOAL_IMPOSSIBLE", '
            '"reason": "决策理由", "step_index": 0, "action": {}, "ms": 1000}'
        )
        fallback = AgentDecision(AgentChoice.EXECUTE_STEP, "按计划执行", step_index=cursor)
        if planned is None:
            fallback = AgentDecision(AgentChoice.GOAL_ACHIEVED, "计划步骤已全部执行")
        try:
            data = await self._ask(prompt)
        except Exception as e:
            logger.warning("⚠ 代理决策调用失败，按计划执行: %s", e)
            return fallback
        raw_choice = str(data.get("decision") or data.get("choice") or "").strip().upper()
        try:
            choice = AgentChoice(raw_choice)
        except ValueError:
            logger.warning("⚠ 无法识别的代理决策 '%s'，按计划执行", raw_choice)
            return fallback
        reason = str(data.get("reason") or "")
        if choice is AgentChoice.EXECUTE_STEP:
            index = _as_int(data.get("step_index"))
            if index is None or not 0 <= index < len(steps):
                index = cursor if planned else None
            if index is None:
                return AgentDecision(AgentChoice.GOAL_ACHIEVED, reason or "计划步骤已全部执行")
            return AgentDecision(choice, reason, step_index=index)
        if choice is AgentChoice.CUSTOM_ACTION:
            action = parse_custom_action(data.get("action"))
            if action is None:
                logger.warning("⚠ 自定义动作无法解析，改为等待")
                return AgentDecision(AgentChoice.WAIT, reason, wait_ms=1000)
            return AgentDecision(choice, reason, action=action)
        if choice is AgentChoice.WAIT:
            return AgentDecision(choice, reason, wait_ms=_as_int(data.get("ms")) or 1000)
        return AgentDecision(choice, reason)

    async def decide_action(self, goal: str, screen_summary: str) -> Optional[CustomAction]:
        """AI_DECIDE 步骤：根据当前元素决定一个动作，失败返回 None"""
        prompt = (
            f"当前屏幕元素:\n{screen_summary}\n\n"
            f"目标: {goal}\n\n"
            "请决定下一步操作，返回 JSON，格式为以下之一:\n"
            f"{CUSTOM_ACTION_DOC}"
        )
        try:
            data = await self._ask(prompt)
        except Exception as e:
            logger.warning("❌ AI 决策调用失败: %s", e)
            return None
        action = parse_custom_action(data)
        if action is None:
            logger.warning("❌ AI 决策输出无法解析: %s", dict(data))
        return action
