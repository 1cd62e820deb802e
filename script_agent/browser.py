"""浏览器屏幕绑定：用 Playwright 页面充当被操作的 UI

页面 DOM 被提取为 UIElement 树；"应用" 通过包名 -> URL 映射打开。
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlparse

from playwright.async_api import Page, async_playwright

from .models import Bounds, UIElement

logger = logging.getLogger(__name__)

# 提取可见 DOM 树，可交互元素写入 data-agent-id
DOM_TREE_JS = """
(args) => {
    const [startId, maxDepth] = args;
    let currentId = startId;

    const isVisible = (el) => {
        const style = window.getComputedStyle(el);
        const rect = el.getBoundingClientRect();
        if (style.display === 'none') return false;
        if (style.visibility === 'hidden') return false;
        if (parseFloat(style.opacity) === 0) return false;
        if (rect.width <= 0 || rect.height <= 0) return false;
        return true;
    };

    const isInteractive = (el) => {
        const tag = el.tagName;
        if (tag === 'INPUT') {
            return (el.getAttribute('type') || '').toLowerCase() !== 'hidden';
        }
        if (tag === 'A') {
            return el.hasAttribute('href') || el.getAttribute('role') === 'button';
        }
        if (['BUTTON', 'TEXTAREA', 'SELECT'].includes(tag)) return true;
        const role = el.getAttribute('role');
        if (role === 'button' || role === 'link' || role === 'tab') return true;
        return el.hasAttribute('onclick') || el.isContentEditable;
    };

    // 只取元素自身的直接文本，子元素文本由子节点承载
    const ownText = (el) => {
        let text = '';
        for (const child of el.childNodes) {
            if (child.nodeType === Node.TEXT_NODE) text += child.textContent;
        }
        text = text.trim();
        if (!text && (el.tagName === 'INPUT' || el.tagName === 'TEXTAREA')) {
            text = (el.value || '').trim();
        }
        return text;
    };

    const getLabel = (el) => {
        const candidates = [
            el.getAttribute('aria-label') || '',
            el.getAttribute('placeholder') || '',
            el.getAttribute('title') || '',
            el.getAttribute('alt') || '',
        ];
        return candidates.find(c => c.trim().length > 0) || '';
    };

    const walk = (el, depth) => {
        if (!isVisible(el) || depth > maxDepth) return null;
        const interactive = isInteractive(el);
        let agentId = null;
        if (interactive) {
            currentId += 1;
            agentId = String(currentId);
            el.setAttribute('data-agent-id', agentId);
        }
        const tag = el.tagName.toLowerCase();
        const rect = el.getBoundingClientRect();
        const editable = tag === 'textarea' || el.isContentEditable ||
            (tag === 'input' && !['button', 'submit', 'checkbox', 'radio'].includes((el.getAttribute('type') || 'text').toLowerCase()));
        const children = [];
        for (const child of el.children) {
            const node = walk(child, depth + 1);
            if (node) children.push(node);
        }
        return {
            tag,
            text: ownText(el),
            label: getLabel(el),
            agent_id: agentId,
            clickable: interactive,
            enabled: !(el.disabled || el.getAttribute('aria-disabled') === 'true'),
            editable,
            focused: document.activeElement === el,
            dialog: el.getAttribute('role') === 'dialog' || tag === 'dialog',
            bbox: { x: rect.x, y: rect.y, width: rect.width, height: rect.height },
            children,
        };
    };

    const tree = walk(document.body, 0);
    return { tree, lastId: currentId };
}
"""

MAX_DOM_DEPTH = 40


def element_from_dom(item: Mapping[str, Any], package: str) -> UIElement:
    """把 JS 返回的节点字典转换为 UIElement"""
    bbox = item.get("bbox") or {}
    x, y = int(bbox.get("x", 0)), int(bbox.get("y", 0))
    class_name = f"html.{item.get('tag', 'div')}"
    if item.get("dialog"):
        class_name = "html.Dialog"
    return UIElement(
        class_name=class_name,
        text=item.get("text") or None,
        content_desc=item.get("label") or None,
        resource_id=item.get("agent_id"),
        bounds=Bounds(x, y, x + int(bbox.get("width", 0)), y + int(bbox.get("height", 0))),
        clickable=bool(item.get("clickable")),
        enabled=bool(item.get("enabled", True)),
        editable=bool(item.get("editable")),
        focused=bool(item.get("focused")),
        package=package,
        children=tuple(element_from_dom(child, package) for child in item.get("children") or ()),
    )


class BrowserScreen:
    """基于 Playwright Page 的屏幕绑定"""

    def __init__(self, page: Page, app_urls: Optional[Dict[str, str]] = None):
        self.page = page
        self.app_urls = dict(app_urls or {})
        self.last_element_id = 0

    def _current_package(self) -> str:
        url = self.page.url or ""
        for package, app_url in self.app_urls.items():
            if url.startswith(app_url.rstrip("/")):
                return package
        return urlparse(url).netloc

    async def read(self) -> Optional[UIElement]:
        try:
            result = await self.page.evaluate(DOM_TREE_JS, [self.last_element_id, MAX_DOM_DEPTH])
        except Exception as e:
            logger.warning("❌ 读取页面失败: %s", e)
            return None
        self.last_element_id = result["lastId"]
        if not result.get("tree"):
            return None
        return element_from_dom(result["tree"], self._current_package())

    async def screenshot(self) -> Optional[bytes]:
        try:
            return await self.page.screenshot()
        except Exception as e:
            logger.warning("❌ 截图失败: %s", e)
            return None

    async def tap(self, x: int, y: int) -> bool:
        await self.page.mouse.click(x, y)
        return True

    async def swipe(self, path: Sequence[Tuple[int, int]], duration_ms: int = 300) -> bool:
        if len(path) < 2:
            return False
        (x0, y0), (x1, y1) = path[0], path[-1]
        # 手指上滑对应页面向下滚动
        await self.page.mouse.move(x0, y0)
        await self.page.mouse.wheel(x0 - x1, y0 - y1)
        return True

    async def set_text(self, node: UIElement, text: str) -> bool:
        if node.resource_id:
            locator = self.page.locator(f"[data-agent-id=\"{node.resource_id}\"]")
            await locator.fill(text)
            return True
        await self.page.keyboard.type(text)
        return True

    async def back(self) -> bool:
        response = await self.page.go_back()
        return response is not None

    async def home(self) -> bool:
        await self.page.goto("about:blank")
        return True

    async def launch_app(self, package: str) -> bool:
        url = self.app_urls.get(package)
        if url is None:
            logger.warning("❌ 未配置应用 %s 的 URL", package)
            return False
        await self.page.goto(url)
        return True

    def screen_size(self) -> Tuple[int, int]:
        size = self.page.viewport_size or {"width": 1280, "height": 720}
        return size["width"], size["height"]


@asynccontextmanager
async def open_browser(app_urls: Optional[Dict[str, str]] = None, headless: bool = False):
    """启动 Chromium 并返回 BrowserScreen，退出时关闭浏览器"""
    async with async_playwright() as p:
        browser = await p.chromium.launch(headless=headless)
        page = await browser.new_page()
        try:
            yield BrowserScreen(page, app_urls)
        finally:
            await browser.close()
