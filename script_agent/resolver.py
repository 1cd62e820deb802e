"""元素定位：在 UI 树快照中按精确 / 语义包含 / 正则条件查找元素

遍历为深度优先前序，首个命中即返回；命中节点本身不可点击时，
返回遍历路径上最近的可点击祖先。遍历深度与节点数都有上限。
"""

import logging
import re
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from .models import UIElement
from .step_params import MatchCriteria

logger = logging.getLogger(__name__)

MAX_TREE_DEPTH = 64
MAX_TREE_NODES = 5000

# 大数字：1万、1.2万、8.5w、12345、10k+
LARGE_NUMBER_PATTERN = re.compile(r"\d+(?:\.\d+)?(?:万|[wW](?![A-Za-z]))|[1-9]\d{4,}|\d{2,}(?:\.\d+)?[kK](?![A-Za-z])")

_NUMERAL_QUERIES = ("万", "w", "10k", "1w", "10000", "ten thousand", "ten-thousand", "过万", "上万")

# 语义等价的词组：查询命中其中任一词即视为整组等价
_SYNONYM_GROUPS = (
    ("赞", "点赞", "喜欢", "like", "likes", "favorite", "favourite"),
    ("评论", "留言", "comment", "comments", "reply"),
    ("收藏", "collect", "save", "bookmark"),
    ("分享", "转发", "share"),
    ("搜索", "search"),
)


def iter_nodes(root: Optional[UIElement], max_depth: int = MAX_TREE_DEPTH,
               max_nodes: int = MAX_TREE_NODES) -> Iterator[Tuple[UIElement, int]]:
    """前序遍历 (节点, 深度)，超过深度或节点上限即停止"""
    if root is None:
        return
    stack: List[Tuple[UIElement, int]] = [(root, 0)]
    visited = 0
    while stack and visited < max_nodes:
        node, depth = stack.pop()
        visited += 1
        yield node, depth
        if depth >= max_depth:
            continue
        for child in reversed(node.children):
            stack.append((child, depth + 1))


def collect_texts(root: Optional[UIElement], limit: int = MAX_TREE_NODES,
                  min_desc_length: int = 0) -> List[str]:
    """收集可见文本；无 text 时使用长度足够的无障碍标签"""
    texts: List[str] = []
    for node, _ in iter_nodes(root):
        if len(texts) >= limit:
            break
        text = (node.text or "").strip()
        desc = (node.content_desc or "").strip()
        if text:
            texts.append(text)
        elif desc and len(desc) > min_desc_length:
            texts.append(desc)
    return texts


def subtree_text(node: UIElement) -> str:
    return " ".join(n.combined_text.strip() for n, _ in iter_nodes(node) if n.combined_text.strip())


def find_all(root: Optional[UIElement], predicate: Callable[[UIElement], bool]) -> List[UIElement]:
    return [node for node, _ in iter_nodes(root) if predicate(node)]


def find_focused_editable(root: Optional[UIElement]) -> Optional[UIElement]:
    for node, _ in iter_nodes(root):
        if node.editable and node.focused:
            return node
    return None


def find_first_editable(root: Optional[UIElement]) -> Optional[UIElement]:
    for node, _ in iter_nodes(root):
        if node.editable and node.enabled:
            return node
    return None


def has_large_number(text: str) -> bool:
    return LARGE_NUMBER_PATTERN.search(text) is not None


def smart_contains(text: str, query: str) -> bool:
    """包含匹配，附带数字习惯写法与近义词的语义等价"""
    haystack = text.lower()
    needle = query.strip().lower()
    if not needle:
        return False
    if needle in haystack:
        return True
    if needle in _NUMERAL_QUERIES:
        return has_large_number(text)
    for group in _SYNONYM_GROUPS:
        if needle in group:
            return any(term in haystack for term in group)
    return False


def _clean_pattern(pattern: str) -> str:
    # 模型输出的正则常被过度转义
    return pattern.replace("\\\\\\\\", "\\").replace("\\\\", "\\")


def compile_pattern(pattern: str) -> Callable[[str], bool]:
    """编译正则；非法正则不抛出，退化为大数字启发式"""
    try:
        regex = re.compile(_clean_pattern(pattern))
    except re.error as exc:
        logger.warning("⚠ 正则匹配错误: %s, pattern=%s，降级为数字启发式匹配", exc, pattern)
        return has_large_number
    return lambda text: regex.search(text) is not None


def build_matcher(criteria: MatchCriteria) -> Callable[[UIElement], bool]:
    if criteria.text is not None:
        exact = criteria.text
        return lambda node: node.text == exact or node.content_desc == exact
    if criteria.contains is not None:
        query = criteria.contains
        return lambda node: smart_contains(node.combined_text, query)
    if criteria.pattern is not None:
        matches = compile_pattern(criteria.pattern)
        return lambda node: matches(node.combined_text)
    return lambda node: False


def node_matches(node: UIElement, criteria: MatchCriteria) -> bool:
    return build_matcher(criteria)(node)


def is_excluded(node: UIElement, excludes: Sequence[str]) -> bool:
    if not excludes:
        return False
    content = subtree_text(node).lower()
    return any(exclude.lower() in content for exclude in excludes if exclude)


def resolve(criteria: MatchCriteria, root: Optional[UIElement],
            excludes: Sequence[str] = ()) -> Optional[UIElement]:
    """返回首个命中元素（优先其可点击祖先），找不到返回 None

    排除词针对可点击目标的整棵子树文本判断；被排除的候选跳过，遍历继续。
    """
    if root is None or criteria.is_empty():
        return None
    matches = build_matcher(criteria)
    # 栈中保存 (节点, 深度, 最近可点击祖先)
    stack: List[Tuple[UIElement, int, Optional[UIElement]]] = [(root, 0, None)]
    visited = 0
    while stack and visited < MAX_TREE_NODES:
        node, depth, clickable_parent = stack.pop()
        visited += 1
        current_clickable = node if node.clickable else clickable_parent
        if matches(node):
            target = current_clickable or node
            if is_excluded(target, excludes):
                logger.debug("🚫 排除: '%s'", target.label or node.label)
            else:
                logger.debug("🎯 匹配: '%s'", node.combined_text.strip())
                return target
        if depth >= MAX_TREE_DEPTH:
            continue
        for child in reversed(node.children):
            stack.append((child, depth + 1, current_clickable))
    return None
