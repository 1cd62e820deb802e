"""脚本合成：一次模型调用，把自然语言目标变成类型化脚本"""

import json
import logging
from typing import Any, Mapping, Optional, Tuple

from .config import DEFAULT_APP_PACKAGES
from .errors import SynthesisError
from .llm import ChatModel, extract_json_payload, user_message
from .models import ExecutionResult, Script, Step
from .step_params import step_from_dict
from .storage import ScriptStore, new_script_id, script_to_dict

logger = logging.getLogger(__name__)

STEP_TYPES_DOC = """\
1. LAUNCH_APP - 启动应用并回到首页 {"package": "com.xingin.xhs"}
2. TAP - 点击 {"x": 100, "y": 200} 或 {"text": "搜索"}
3. SWIPE - 滑动 {"direction": "up|down|left|right", "distance": 0.5}
4. WAIT - 等待 {"ms": 1000}
5. FIND_AND_TAP - 查找并点击 {"text": "精确文本"} 或 {"contains": "包含文本"} 或 {"pattern": "正则表达式"}，可加 "excludes": ["排除词"]
6. SCROLL_UNTIL_FIND - 滚动直到找到并**自动点击**
   参数: {"contains": "文本", "max_scrolls": 10, "direction": "up", "excludes": ["排除词1", "排除词2"]}
   ⚠️ 此步骤会自动点击找到的元素，不需要额外的 TAP 或 FIND_AND_TAP 步骤！
7. EXTRACT_DATA - 提取数据 {"field": "comments|likes|texts", "count": 5}
8. INPUT_TEXT - 输入文本 {"value": "要输入的内容", "target": "输入框文字（可选）"}
9. BACK - 返回 {"times": 1}
10. ASSERT - 断言元素存在/不存在 {"contains": "文本", "present": true}
11. SEARCH - 点击搜索框并输入 {"contains": "搜索", "text": "关键词"}
12. AI_DECIDE - AI 动态决策 {"goal": "子目标描述"}"""

RULES_DOC = """\
1. **禁止使用占位符文本**！如"笔记标题"、"目标内容"等。必须使用 contains 或 pattern 匹配真实内容
2. **SCROLL_UNTIL_FIND 会自动点击**：找到后直接进入，不需要再加 FIND_AND_TAP 步骤
3. **数字匹配**：查找"点赞过万"应使用 {"contains": "万"}，可匹配 "1.2万"、"8.5w"、"12345"
4. **直播卡片没有评论区**！要提取评论时必须排除直播：excludes: ["直播", "观看", "连麦"]
5. **步骤要精简**：SCROLL_UNTIL_FIND 找到并点击后，直接 WAIT 然后继续下一步
6. on_fail 取值：RETRY（重试后失败）、SKIP（跳过继续）、ABORT（立即终止）、ESCALATE_TO_AI（交给 AI 接管）"""

EXAMPLE_SCRIPT = """\
{
  "name": "获取小红书点赞过万笔记评论",
  "steps": [
    {"index": 1, "type": "LAUNCH_APP", "description": "打开小红书", "params": {"package": "com.xingin.xhs"}, "on_fail": "RETRY", "max_retries": 3},
    {"index": 2, "type": "WAIT", "description": "等待首页加载", "params": {"ms": 2500}, "on_fail": "SKIP", "max_retries": 1},
    {"index": 3, "type": "SCROLL_UNTIL_FIND", "description": "滚动找到点赞过万的笔记并点击进入（排除直播）", "params": {"contains": "万", "excludes": ["直播", "观看", "连麦", "在线"], "max_scrolls": 15, "direction": "up"}, "on_fail": "RETRY", "max_retries": 2},
    {"index": 4, "type": "WAIT", "description": "等待笔记详情加载", "params": {"ms": 2000}, "on_fail": "SKIP", "max_retries": 1},
    {"index": 5, "type": "SWIPE", "description": "向上滑动查看评论区", "params": {"direction": "up"}, "on_fail": "RETRY", "max_retries": 3},
    {"index": 6, "type": "EXTRACT_DATA", "description": "提取前5条评论", "params": {"field": "comments", "count": 5}, "on_fail": "ESCALATE_TO_AI", "max_retries": 2}
  ],
  "outputs": ["comments"]
}"""


def build_generation_prompt(goal: str) -> str:
    packages = "\n".join(f"- {name}: {pkg}" for name, pkg in DEFAULT_APP_PACKAGES.items())
    return (
        "你是一个自动化脚本生成专家。根据用户目标，生成一个可复用的自动化脚本。\n\n"
        f"## 用户目标\n{goal}\n\n"
        "## 输出格式 (严格 JSON)\n"
        "{\n"
        '  "name": "脚本名称",\n'
        '  "steps": [{"index": 1, "type": "步骤类型", "description": "步骤描述", '
        '"params": {}, "on_fail": "RETRY|SKIP|ABORT|ESCALATE_TO_AI", "max_retries": 3}],\n'
        '  "outputs": ["expected_output"]\n'
        "}\n\n"
        f"## 可用步骤类型\n{STEP_TYPES_DOC}\n\n"
        f"## ⚠️ 关键规则\n{RULES_DOC}\n\n"
        f"## 常见APP包名\n{packages}\n\n"
        f"## 示例：获取小红书热门评论（排除直播）\n{EXAMPLE_SCRIPT}\n\n"
        "请根据用户目标生成脚本，只返回 JSON，不要其他内容。"
    )


def build_improvement_prompt(script: Script, result: ExecutionResult) -> str:
    failed = result.failed_step_index + 1 if result.failed_step_index is not None else "未知"
    logs = "\n".join(result.logs[-30:]) or "(无日志)"
    return (
        "你是脚本优化专家。脚本执行失败，请分析原因并改进。\n\n"
        f"## 原脚本\n{json.dumps(script_to_dict(script), ensure_ascii=False, indent=2)}\n\n"
        "## 执行结果\n"
        f"- 成功步骤: {result.steps_executed}/{result.total_steps}\n"
        f"- 失败步骤: {failed}\n"
        f"- 错误: {result.error}\n"
        f"- 日志:\n{logs}\n\n"
        "## 要求\n"
        "1. 分析失败原因\n"
        "2. 改进失败的步骤（增加重试、调整等待时间、换用 AI_DECIDE 等）\n"
        "3. 返回改进后的完整 steps 数组\n\n"
        "## 改进策略\n"
        "- 如果是元素找不到：增加等待时间、改用 SCROLL_UNTIL_FIND、或使用 AI_DECIDE\n"
        "- 如果是点击失败：改用 FIND_AND_TAP、调整坐标\n"
        "- 如果是落地页不对：增加 excludes 排除词\n"
        "- 如果是超时：增加 max_retries\n\n"
        f"## 可用步骤类型\n{STEP_TYPES_DOC}\n\n"
        '只返回 JSON：{"steps": [...]}，不要其他内容。'
    )


def parse_steps(payload: Any) -> Tuple[Step, ...]:
    """从 {"steps": [...]} 或裸数组中解析步骤，index 按位置重新编号"""
    if isinstance(payload, Mapping):
        payload = payload.get("steps")
    if not isinstance(payload, list):
        raise SynthesisError("模型输出中没有 steps 数组")
    raw_steps = [raw for raw in payload if isinstance(raw, Mapping)]
    if not raw_steps:
        raise SynthesisError("步骤列表为空")
    steps = []
    for position, raw in enumerate(raw_steps, start=1):
        step = step_from_dict(raw, position)
        if step.index != position:
            step = Step(position, step.type, step.description, step.params, step.on_failure, step.max_retries)
        steps.append(step)
    return tuple(steps)


def parse_script(text: str, goal: str, script_id: Optional[str] = None) -> Script:
    """解析模型返回的脚本 JSON，失败抛出 SynthesisError"""
    try:
        payload = extract_json_payload(text)
    except ValueError as e:
        raise SynthesisError(f"无法解析模型输出: {e}") from e
    steps = parse_steps(payload)
    name = goal[:30]
    outputs: Tuple[str, ...] = ()
    if isinstance(payload, Mapping):
        name = str(payload.get("name") or name)
        raw_outputs = payload.get("outputs") or ()
        if isinstance(raw_outputs, (list, tuple)):
            outputs = tuple(str(o) for o in raw_outputs)
    return Script(id=script_id or new_script_id(), name=name, goal=goal, steps=steps, outputs=outputs)


class ScriptSynthesizer:
    """脚本合成器：单次模型调用，解析后立即持久化"""

    def __init__(self, model: ChatModel, store: ScriptStore):
        self.model = model
        self.store = store

    async def synthesize(self, goal: str) -> Script:
        logger.info("🧠 生成脚本: %s", goal)
        try:
            response = await self.model.chat(user_message(build_generation_prompt(goal)))
        except Exception as e:
            raise SynthesisError(f"模型调用失败: {e}") from e
        script = parse_script(response, goal)
        self.store.save(script)
        logger.info("✓ 脚本生成成功: %s (%d 步)", script.name, len(script.steps))
        return script
