"""步骤执行：按步骤类型分派到具体处理函数

处理函数失败时抛出 ScriptAgentError，execute_step 统一转换为 StepOutcome。
"""

import asyncio
import logging
import re
from typing import Dict, List, Optional, Sequence

from .config import ExecutionConfig
from .context import StepContext
from .controller import Controller
from .errors import (
    AppNotInstalled,
    AssertionMismatch,
    ElementNotFound,
    GestureDispatchFailure,
    InvalidLandingPage,
    InvalidStepParams,
    NoActiveWindow,
    ScriptAgentError,
)
from .models import CustomAction, Step, StepOutcome, StepType, UIElement
from .perception import ScreenContextProvider, ScreenSnapshot
from .planner import Planner
from .resolver import (
    collect_texts,
    find_first_editable,
    find_focused_editable,
    resolve,
    subtree_text,
)
from .step_params import MatchCriteria

logger = logging.getLogger(__name__)

HOME_LABELS = ("首页", "Home")
MAX_HOME_BACKS = 3
MAX_INVALID_LANDINGS = 3

# 直播页面特征
LIVE_INDICATORS = ("人观看", "正在直播", "直播中", "连麦", "礼物", "在线", "送礼")
# 笔记 / 视频详情页应有的评论区特征
VALID_PAGE_INDICATORS = ("评论", "赞", "收藏", "分享", "写评论", "回复")
COMMENTABLE_KEYWORDS = ("评论", "留言", "comment")

# 界面固定文字，不作为提取结果
CHROME_LABELS = (
    "展开更多", "查看全部", "回复", "赞", "分享", "收藏",
    "评论", "写评论", "发送", "取消", "确定", "全部评论",
    "相关推荐", "猜你喜欢", "更多精彩", "查看更多",
)

_PURE_NUMBER = re.compile(r"^\d+\.?\d*[万亿wWkK]*$")
_USER_COLON = re.compile(r"^.{2,20}[:：].{5,}$")
_LIKES = re.compile(r"(\d+\.?\d*[万亿wW]?\s*(?:赞|点赞|喜欢))|((?:赞|点赞|喜欢)\s*\d+\.?\d*[万亿wW]?)")


def _is_chrome(text: str) -> bool:
    return any(label in text for label in CHROME_LABELS)


def extract_comments(root: Optional[UIElement], count: int) -> List[str]:
    """评论启发式：长度窗口 + 用户名分隔符，不够时放宽标准补充"""
    texts = collect_texts(root, min_desc_length=5)
    results: List[str] = []
    for text in texts:
        if len(results) >= count:
            break
        if _is_chrome(text) or not 8 <= len(text) <= 500 or _PURE_NUMBER.match(text):
            continue
        looks_like_comment = (
            ":" in text or "：" in text
            or _USER_COLON.match(text) is not None
            or (len(text) > 15 and "\n" not in text)
        )
        if looks_like_comment or len(text) > 20:
            results.append(text)
    if len(results) < count:
        for text in texts:
            if len(results) >= count:
                break
            if text in results or _is_chrome(text):
                continue
            if 10 <= len(text) <= 200:
                results.append(text)
    return results


def extract_likes(root: Optional[UIElement], count: int) -> List[str]:
    return [t for t in collect_texts(root) if _LIKES.search(t)][:count]


def extract_texts(root: Optional[UIElement], count: int) -> List[str]:
    results: List[str] = []
    for text in collect_texts(root, min_desc_length=5):
        if len(results) >= count:
            break
        if 2 <= len(text) <= 200 and not _is_chrome(text) and text not in results:
            results.append(text)
    return results


def validate_landing(snapshot: ScreenSnapshot):
    """检查点击后的页面是否为有效内容页（非直播且有评论区特征），返回 (有效, 原因)"""
    if snapshot.root is None:
        return False, "无法获取页面"
    content = " ".join(collect_texts(snapshot.root, limit=50))
    for indicator in LIVE_INDICATORS:
        if indicator in content:
            return False, f"这是直播页面 (包含 '{indicator}')"
    if not any(indicator in content for indicator in VALID_PAGE_INDICATORS):
        return False, "页面缺少评论区特征"
    return True, "有效的笔记/视频页面"


def implies_commentable(goal: str, step: Step, upcoming: Sequence[Step]) -> bool:
    """目标或后续步骤涉及评论时，才对落地页做直播校验"""
    texts = [goal, step.description] + [s.description for s in upcoming]
    for s in upcoming:
        if s.type is StepType.EXTRACT_DATA:
            texts.append(getattr(s.params, "field", ""))
    joined = " ".join(texts).lower()
    return any(keyword in joined for keyword in COMMENTABLE_KEYWORDS)


class StepExecutor:
    """步骤执行器：一次执行一个步骤，局部重试不影响脚本计数"""

    def __init__(self, screen: ScreenContextProvider, controller: Controller,
                 planner: Optional[Planner] = None, config: Optional[ExecutionConfig] = None):
        self.screen = screen
        self.controller = controller
        self.planner = planner
        self.config = config or ExecutionConfig()

    async def _pause(self, seconds: float):
        if seconds > 0:
            await asyncio.sleep(seconds)

    async def _root(self) -> UIElement:
        snap = await self.screen.snapshot()
        if snap.root is None:
            raise NoActiveWindow()
        return snap.root

    async def _tap_node(self, node: UIElement):
        x, y = node.center()
        if not await self.controller.tap_element(node):
            raise GestureDispatchFailure("tap", x, y)

    async def execute_step(self, step: Step, ctx: StepContext, upcoming: Sequence[Step] = ()) -> StepOutcome:
        """执行单个步骤，异常转换为失败结果"""
        ctx.step_executions += 1
        try:
            data = await self._dispatch(step, ctx, upcoming)
        except ScriptAgentError as e:
            return StepOutcome.fail(str(e), e.kind)
        return StepOutcome.ok(data)

    async def execute_with_retries(self, step: Step, ctx: StepContext,
                                   upcoming: Sequence[Step] = ()) -> StepOutcome:
        """执行步骤，失败时按 max_retries 以固定间隔重试"""
        outcome = StepOutcome.fail("未执行")
        for attempt in range(step.max_retries + 1):
            if attempt > 0:
                ctx.log.add(f"🔄 重试步骤 {step.index} ({attempt}/{step.max_retries})")
                await self._pause(self.config.retry_delay_s)
            outcome = await self.execute_step(step, ctx, upcoming)
            if outcome.success:
                return outcome
            ctx.log.warn(f"❌ 步骤 {step.index} 失败: {outcome.error}")
            if ctx.control.stop_requested:
                break
        return outcome

    async def _dispatch(self, step: Step, ctx: StepContext, upcoming: Sequence[Step]) -> Optional[Dict]:
        handler = {
            StepType.LAUNCH_APP: self._launch_app,
            StepType.TAP: self._tap,
            StepType.SWIPE: self._swipe,
            StepType.WAIT: self._wait,
            StepType.FIND_AND_TAP: self._find_and_tap,
            StepType.EXTRACT_DATA: self._extract_data,
            StepType.INPUT_TEXT: self._input_text,
            StepType.BACK: self._back,
            StepType.ASSERT: self._assert,
            StepType.AI_DECIDE: self._ai_decide,
            StepType.SEARCH: self._search,
        }.get(step.type)
        if step.type is StepType.SCROLL_UNTIL_FIND:
            return await self._scroll_until_find(step, ctx, upcoming)
        if handler is None:
            raise InvalidStepParams(f"不支持的步骤类型: {step.type}")
        return await handler(step, ctx)

    async def _launch_app(self, step: Step, ctx: StepContext):
        params = step.params
        if not params.package:
            raise InvalidStepParams("LAUNCH_APP 缺少 package")
        ctx.log.add(f"🚀 启动应用: {params.package}")
        if not await self.controller.launch(params.package):
            raise AppNotInstalled(params.package)
        if params.go_home:
            await self._ensure_home(ctx, params.package, params.home_label)
        return None

    async def _ensure_home(self, ctx: StepContext, package: str, home_label: Optional[str]):
        """点击底部导航的首页，找不到时最多返回 3 次寻找；离开目标应用即停止"""
        labels = (home_label,) if home_label else HOME_LABELS
        for attempt in range(MAX_HOME_BACKS + 1):
            snap = await self.screen.snapshot()
            if attempt > 0 and snap.package and snap.package != package:
                ctx.log.warn("⚠ 返回时已离开目标应用，停止寻找首页")
                return
            for label in labels:
                home = resolve(MatchCriteria(text=label), snap.root)
                if home is not None:
                    ctx.log.add("🏠 找到首页按钮，点击回到首页")
                    await self.controller.tap_element(home)
                    return
            if attempt < MAX_HOME_BACKS:
                await self.controller.back()
        ctx.log.warn("⚠ 未能确保回到首页，可能已经在首页")

    async def _tap(self, step: Step, ctx: StepContext):
        params = step.params
        if params.x is not None and params.y is not None:
            if not await self.controller.tap(params.x, params.y):
                raise GestureDispatchFailure("tap", params.x, params.y)
            return None
        if params.criteria.is_empty():
            raise InvalidStepParams("TAP 需要坐标或匹配条件")
        target = resolve(params.criteria, await self._root())
        if target is None:
            raise ElementNotFound(f"未找到元素: {params.criteria.describe()}")
        await self._tap_node(target)
        return None

    async def _swipe(self, step: Step, ctx: StepContext):
        params = step.params
        if not await self.controller.swipe(params.direction, params.distance):
            raise GestureDispatchFailure(f"swipe {params.direction}")
        return None

    async def _wait(self, step: Step, ctx: StepContext):
        await self.controller.wait(step.params.ms)
        return None

    async def _find_and_tap(self, step: Step, ctx: StepContext):
        params = step.params
        if params.criteria.is_empty():
            raise InvalidStepParams("FIND_AND_TAP 缺少匹配条件")
        target = resolve(params.criteria, await self._root(), params.excludes)
        if target is None:
            raise ElementNotFound(f"未找到元素: {params.criteria.describe()}")
        ctx.log.add(f"🎯 找到元素: {target.label[:40]}")
        await self._tap_node(target)
        return None

    async def _scroll_until_find(self, step: Step, ctx: StepContext, upcoming: Sequence[Step]):
        params = step.params
        if params.criteria.is_empty():
            raise InvalidStepParams("SCROLL_UNTIL_FIND 缺少匹配条件")
        should_validate = params.validate_landing
        if should_validate is None:
            should_validate = implies_commentable(ctx.goal, step, upcoming)
        ctx.log.add(f"🔍 SCROLL_UNTIL_FIND: {params.criteria.describe()}")
        if params.excludes:
            ctx.log.add(f"🚫 排除关键词: {', '.join(params.excludes)}")
        rejected: List[str] = []
        invalid_landings = 0
        for i in range(params.max_scrolls):
            root = await self._root()
            target = resolve(params.criteria, root, tuple(params.excludes) + tuple(rejected))
            if target is not None:
                ctx.log.add(f"✓ 找到匹配元素: {subtree_text(target)[:50]}")
                if not params.tap:
                    return None
                await self._tap_node(target)
                if not should_validate:
                    return None
                await self._pause(self.config.landing_delay_s)
                valid, reason = validate_landing(await self.screen.snapshot())
                if valid:
                    return None
                ctx.log.warn(f"⚠ 进入了无效页面: {reason}，返回重试...")
                invalid_landings += 1
                await self.controller.back()
                if invalid_landings >= MAX_INVALID_LANDINGS:
                    raise InvalidLandingPage(f"尝试 {MAX_INVALID_LANDINGS} 次都进入无效页面")
                rejected_text = subtree_text(target)
                if rejected_text:
                    rejected.append(rejected_text)
            if i + 1 >= params.max_scrolls:
                break
            ctx.log.add(f"📜 滚动 {i + 1}/{params.max_scrolls}...")
            await self.controller.swipe(params.direction)
        raise ElementNotFound(f"滚动 {params.max_scrolls} 次后仍未找到元素")

    async def _extract_data(self, step: Step, ctx: StepContext):
        params = step.params
        root = await self._root()
        field_name = params.field.lower()
        if "comment" in field_name or "评论" in field_name:
            values = extract_comments(root, params.count)
        elif "like" in field_name or "赞" in field_name:
            values = extract_likes(root, params.count)
        else:
            values = extract_texts(root, params.count)
        if not values:
            raise ElementNotFound(f"未提取到数据: {params.field}")
        for value in values:
            ctx.log.add(f"📝 提取 {params.field}: {value[:50]}")
        ctx.extracted_data[params.field] = values
        return {params.field: values}

    async def _input_text(self, step: Step, ctx: StepContext):
        params = step.params
        await self._type_into(params.text, params.criteria)
        return None

    async def _type_into(self, text: str, criteria: MatchCriteria):
        """优先填充已聚焦的输入框，否则点击目标（或第一个输入框）后填充"""
        root = await self._root()
        node = find_focused_editable(root)
        if node is None:
            target = resolve(criteria, root) if not criteria.is_empty() else find_first_editable(root)
            if target is None:
                raise ElementNotFound("未找到输入框")
            await self._tap_node(target)
            root = await self._root()
            node = find_focused_editable(root) or (target if target.editable else find_first_editable(root))
            if node is None:
                raise ElementNotFound("点击后仍未找到可输入的节点")
        if not await self.controller.set_text(node, text):
            raise GestureDispatchFailure("set_text", *node.center())

    async def _back(self, step: Step, ctx: StepContext):
        for _ in range(step.params.times):
            if not await self.controller.back():
                raise GestureDispatchFailure("back")
        return None

    async def _assert(self, step: Step, ctx: StepContext):
        params = step.params
        found = resolve(params.criteria, await self._root()) is not None
        if found != params.present:
            expected = "存在" if params.present else "不存在"
            raise AssertionMismatch(f"断言失败: 期望元素{expected} ({params.criteria.describe()})")
        return None

    async def _search(self, step: Step, ctx: StepContext):
        params = step.params
        criteria = params.criteria
        if criteria.is_empty():
            criteria = MatchCriteria(contains="搜索")
        root = await self._root()
        target = resolve(criteria, root)
        if target is None:
            raise ElementNotFound(f"未找到搜索入口: {criteria.describe()}")
        if params.text:
            if target.editable:
                if not await self.controller.set_text(target, params.text):
                    raise GestureDispatchFailure("set_text", *target.center())
                return None
            await self._tap_node(target)
            await self._type_into(params.text, MatchCriteria())
            return None
        await self._tap_node(target)
        return None

    async def _ai_decide(self, step: Step, ctx: StepContext):
        goal = step.params.goal or step.description
        ctx.log.add(f"🤖 AI 决策: {goal}")
        if self.planner is None:
            raise InvalidStepParams("AI_DECIDE 需要模型")
        root = await self._root()
        action = await self.planner.decide_action(goal, self.screen.summarize(root))
        if action is None:
            raise ElementNotFound("AI 未给出可执行的动作")
        ctx.log.add(f"🤖 AI 动作: {action.describe()}")
        if not await self.perform_action(action):
            raise GestureDispatchFailure(action.action, action.x, action.y)
        return None

    async def perform_action(self, action: CustomAction) -> bool:
        """执行模型给出的一次性动作"""
        if action.action == "tap" and action.x is not None and action.y is not None:
            return await self.controller.tap(action.x, action.y)
        if action.action == "tap_text" and action.text:
            snap = await self.screen.snapshot()
            target = resolve(MatchCriteria(contains=action.text), snap.root)
            if target is None:
                logger.warning("❌ 未找到文字为 '%s' 的元素", action.text)
                return False
            return await self.controller.tap_element(target)
        if action.action == "swipe":
            return await self.controller.swipe(action.direction or "up")
        if action.action == "back":
            return await self.controller.back()
        if action.action == "wait":
            return await self.controller.wait(action.ms or 1000)
        if action.action == "input" and action.text:
            try:
                await self._type_into(action.text, MatchCriteria())
            except ScriptAgentError as e:
                logger.warning("❌ 输入失败: %s", e)
                return False
            return True
        if action.action == "launch" and action.package:
            return await self.controller.launch(action.package)
        if action.action == "done":
            return True
        logger.warning("⚠ 无法执行的动作: %s", action.describe())
        return False
