"""
Playwright-backed PageDriver.

Each open page in the workflow context is an execution context with an
integer id. DOM-change watchers are injected as MutationObservers that
report back through an exposed binding.
"""

import base64
import functools
import itertools
from typing import Any, Awaitable, Callable, Optional

import structlog
from playwright.async_api import (
    Error as PlaywrightError,
    Locator,
    Page,
    TimeoutError as PlaywrightTimeoutError,
)

from .driver import ContextInfo, DomWatcherConfig, DriverResult
from .manager import BrowserManager


logger = structlog.get_logger()

DOM_BINDING = "__autopilotDomChange"

# (job_id, context_id, url, reason)
DomEventHandler = Callable[[str, int, str, str], Awaitable[Any]]
ContextClosedHandler = Callable[[int], Any]
# (reason) on page load and activation
NavigationHandler = Callable[[str], Awaitable[Any]]

_WATCHER_SCRIPT = """
(configs) => {
    const state = window.__autopilotWatchers || (window.__autopilotWatchers = []);
    for (const w of state) {
        if (w.observer) w.observer.disconnect();
        if (w.onScroll) window.removeEventListener('scroll', w.onScroll);
        clearTimeout(w.timer);
    }
    state.length = 0;

    for (const cfg of configs) {
        const w = { added: 0, timer: null };
        const fire = (reason) => {
            w.added = 0;
            window.__autopilotDomChange(cfg.id, location.href, reason);
        };
        const schedule = (reason) => {
            clearTimeout(w.timer);
            w.timer = setTimeout(() => fire(reason), cfg.domDebounceMs);
        };
        const root = document.querySelector(cfg.domSelector) || document.body;
        if (root) {
            w.observer = new MutationObserver((mutations) => {
                for (const m of mutations) w.added += m.addedNodes.length;
                if (w.added >= cfg.minAddedNodes) schedule('dom-mutation');
            });
            w.observer.observe(root, { childList: true, subtree: true });
        }
        if (cfg.runOnScroll) {
            w.onScroll = () => schedule('scroll');
            window.addEventListener('scroll', w.onScroll, { passive: true });
        }
        if (cfg.runOnPageLoad) schedule('page-load');
        state.push(w);
    }
    return state.length;
}
"""

_TEXT_SCRIPT = "(max) => (document.body ? document.body.innerText : '').slice(0, max)"

_SELECTION_SCRIPT = """
() => {
    const selected = window.getSelection ? window.getSelection().toString() : '';
    if (selected) return selected;
    const el = document.activeElement;
    if (el && typeof el.value === 'string') return el.value;
    return '';
}
"""

_ATTRIBUTE_SCRIPT = """
(el, name) => (name in el && typeof el[name] === 'string') ? el[name] : el.getAttribute(name)
"""

_SCROLL_ELEMENT_SCRIPT = "(el, dy) => el.scrollBy(0, dy)"


class PlaywrightPageDriver:
    """PageDriver over the pages of a BrowserManager's workflow context."""

    def __init__(
        self,
        manager: BrowserManager,
        action_timeout_ms: int = 10000,
        dom_event_handler: Optional[DomEventHandler] = None,
        context_closed_handler: Optional[ContextClosedHandler] = None,
        navigation_handler: Optional[NavigationHandler] = None,
    ):
        self.manager = manager
        self.action_timeout_ms = action_timeout_ms
        self.dom_event_handler = dom_event_handler
        self.context_closed_handler = context_closed_handler
        self.navigation_handler = navigation_handler

        self._ids = itertools.count(1)
        self._pages: dict[int, Page] = {}
        self._page_ids: dict[Page, int] = {}
        self._watchers: dict[int, list[DomWatcherConfig]] = {}
        self._active_id: Optional[int] = None

    async def start(self) -> None:
        """Attach to the browser context and register existing pages."""
        await self.manager.initialize()
        context = self.manager.context
        await context.expose_binding(DOM_BINDING, self._on_dom_binding)
        context.on("page", self._register)
        for page in context.pages:
            self._register(page)
        logger.info("page_driver_started", contexts=len(self._pages))

    def _register(self, page: Page) -> int:
        if page in self._page_ids:
            return self._page_ids[page]

        context_id = next(self._ids)
        self._pages[context_id] = page
        self._page_ids[page] = context_id
        self._active_id = context_id
        page.on("close", lambda _page: self._on_close(context_id))
        page.on("load", functools.partial(self._on_load, context_id))
        return context_id

    def _on_close(self, context_id: int) -> None:
        page = self._pages.pop(context_id, None)
        if page is not None:
            self._page_ids.pop(page, None)
        self._watchers.pop(context_id, None)
        if self._active_id == context_id:
            self._active_id = next(reversed(self._pages), None) if self._pages else None
        logger.debug("context_closed", context_id=context_id)
        if self.context_closed_handler is not None:
            self.context_closed_handler(context_id)

    async def _on_load(self, context_id: int, _page: Page) -> None:
        watchers = self._watchers.get(context_id)
        if watchers:
            await self._install_watchers(context_id, watchers)
        if self.navigation_handler is not None and context_id == self._active_id:
            await self.navigation_handler("tab-updated")

    async def _on_dom_binding(self, source: dict, job_id: str, url: str, reason: str) -> None:
        context_id = self._page_ids.get(source.get("page"))
        if context_id is None or self.dom_event_handler is None:
            return
        await self.dom_event_handler(job_id, context_id, url, reason)

    def _page(self, context_id: int) -> Optional[Page]:
        page = self._pages.get(context_id)
        if page is None or page.is_closed():
            return None
        return page

    @staticmethod
    def _locator(page: Page, selector: str, index: Optional[int] = None, scope: Optional[str] = None) -> Locator:
        if scope:
            return page.locator(scope).nth(index or 0).locator(selector).first
        if index is not None:
            return page.locator(selector).nth(index)
        return page.locator(selector).first

    async def _act(self, context_id: int, action: Callable[[Page], Awaitable[Any]]) -> DriverResult:
        page = self._page(context_id)
        if page is None:
            return DriverResult.fail(f"Context {context_id} is not open")
        try:
            return DriverResult.ok(await action(page))
        except PlaywrightError as e:
            return DriverResult.fail(str(e).splitlines()[0] if str(e) else type(e).__name__)

    # ==================== Actions ====================

    async def navigate(self, context_id: int, url: str, timeout_ms: int) -> DriverResult:
        return await self._act(
            context_id,
            lambda page: page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms),
        )

    async def click(self, context_id: int, selector: str, index: Optional[int] = None) -> DriverResult:
        return await self._act(
            context_id,
            lambda page: self._locator(page, selector, index).click(timeout=self.action_timeout_ms),
        )

    async def click_at(self, context_id: int, x: float, y: float) -> DriverResult:
        return await self._act(context_id, lambda page: page.mouse.click(x, y))

    async def type(
        self,
        context_id: int,
        selector: Optional[str],
        text: str,
        index: Optional[int] = None,
    ) -> DriverResult:
        if not selector:
            return await self._act(context_id, lambda page: page.keyboard.type(text))
        return await self._act(
            context_id,
            lambda page: self._locator(page, selector, index).fill(text, timeout=self.action_timeout_ms),
        )

    async def press_key(
        self,
        context_id: int,
        key: str,
        selector: Optional[str] = None,
        index: Optional[int] = None,
    ) -> DriverResult:
        if not selector:
            return await self._act(context_id, lambda page: page.keyboard.press(key))
        return await self._act(
            context_id,
            lambda page: self._locator(page, selector, index).press(key, timeout=self.action_timeout_ms),
        )

    async def scroll(
        self,
        context_id: int,
        selector: Optional[str] = None,
        amount: int = 300,
        direction: str = "down",
    ) -> DriverResult:
        delta = amount if direction == "down" else -amount
        if not selector:
            return await self._act(context_id, lambda page: page.mouse.wheel(0, delta))
        return await self._act(
            context_id,
            lambda page: self._locator(page, selector).evaluate(_SCROLL_ELEMENT_SCRIPT, delta),
        )

    async def hover(self, context_id: int, selector: str) -> DriverResult:
        return await self._act(
            context_id,
            lambda page: self._locator(page, selector).hover(timeout=self.action_timeout_ms),
        )

    async def wait_for_selector(self, context_id: int, selector: str, timeout_ms: int) -> bool:
        page = self._page(context_id)
        if page is None:
            return False
        try:
            await page.wait_for_selector(selector, state="attached", timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False
        except PlaywrightError as e:
            logger.debug("wait_for_selector_failed", selector=selector, error=str(e))
            return False

    # ==================== Reading ====================

    async def _read(self, context_id: int, locator_for, read) -> Optional[Any]:
        page = self._page(context_id)
        if page is None:
            return None
        try:
            locator = locator_for(page)
            if await locator.count() == 0:
                return None
            return await read(locator)
        except PlaywrightError as e:
            logger.debug("element_read_failed", context_id=context_id, error=str(e))
            return None

    async def extract(
        self,
        context_id: int,
        selector: str,
        index: Optional[int] = None,
        scope: Optional[str] = None,
    ) -> Optional[str]:
        text = await self._read(
            context_id,
            lambda page: self._locator(page, selector, index, scope),
            lambda locator: locator.inner_text(timeout=self.action_timeout_ms),
        )
        return text.strip() if isinstance(text, str) else text

    async def extract_attribute(
        self,
        context_id: int,
        selector: str,
        attribute: str,
        index: Optional[int] = None,
        scope: Optional[str] = None,
    ) -> Optional[str]:
        return await self._read(
            context_id,
            lambda page: self._locator(page, selector, index, scope),
            lambda locator: locator.evaluate(_ATTRIBUTE_SCRIPT, attribute),
        )

    async def enumerate(self, context_id: int, selector: str) -> int:
        page = self._page(context_id)
        if page is None:
            return 0
        try:
            return await page.locator(selector).count()
        except PlaywrightError:
            return 0

    async def page_text(self, context_id: int, max_chars: int) -> str:
        page = self._page(context_id)
        if page is None:
            return ""
        try:
            return await page.evaluate(_TEXT_SCRIPT, max_chars) or ""
        except PlaywrightError:
            return ""

    async def selected_text(self, context_id: int) -> str:
        page = self._page(context_id)
        if page is None:
            return ""
        try:
            return await page.evaluate(_SELECTION_SCRIPT) or ""
        except PlaywrightError:
            return ""

    async def screenshot(self, context_id: int) -> Optional[str]:
        page = self._page(context_id)
        if page is None:
            return None
        try:
            raw = await page.screenshot(type="png")
        except PlaywrightError as e:
            logger.warning("screenshot_failed", context_id=context_id, error=str(e))
            return None
        return "data:image/png;base64," + base64.b64encode(raw).decode("ascii")

    # ==================== Contexts ====================

    async def _info(self, context_id: int, page: Page) -> ContextInfo:
        try:
            title = await page.title()
        except PlaywrightError:
            title = ""
        return ContextInfo(
            id=context_id,
            url=page.url,
            title=title,
            active=context_id == self._active_id,
        )

    async def get_context(self, context_id: int) -> Optional[ContextInfo]:
        page = self._page(context_id)
        if page is None:
            return None
        return await self._info(context_id, page)

    async def active_context(self) -> Optional[ContextInfo]:
        if self._active_id is None:
            return None
        return await self.get_context(self._active_id)

    async def list_contexts(self) -> list[ContextInfo]:
        return [
            await self._info(context_id, page)
            for context_id, page in list(self._pages.items())
            if not page.is_closed()
        ]

    async def create_context(self, url: str) -> ContextInfo:
        page = await self.manager.new_page()
        context_id = self._register(page)
        self._active_id = context_id
        if url and url != "about:blank":
            await page.goto(url, wait_until="domcontentloaded")
        logger.info("context_created", context_id=context_id, url=url)
        return await self._info(context_id, page)

    async def activate_context(self, context_id: int) -> DriverResult:
        result = await self._act(context_id, lambda page: page.bring_to_front())
        if result.success:
            changed = self._active_id != context_id
            self._active_id = context_id
            if changed and self.navigation_handler is not None:
                await self.navigation_handler("tab-activated")
        return result

    async def watch_dom_changes(self, context_id: int, watchers: list[DomWatcherConfig]) -> DriverResult:
        self._watchers[context_id] = list(watchers)
        return await self._install_watchers(context_id, watchers)

    async def _install_watchers(self, context_id: int, watchers: list[DomWatcherConfig]) -> DriverResult:
        configs = [w.to_dict() for w in watchers]
        return await self._act(context_id, lambda page: page.evaluate(_WATCHER_SCRIPT, configs))
