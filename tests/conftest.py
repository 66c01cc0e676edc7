"""Shared fixtures: an in-memory page driver and a wired autopilot stack."""

import os
import tempfile
from typing import Any, Optional

import pytest
from respx import MockRouter

from autopilot.browser.driver import ContextInfo, DomWatcherConfig, DriverResult
from autopilot.core.config import RunnerConfig, SchedulerConfig
from autopilot.core.state import StateManager
from autopilot.library.functions import WorkflowStore
from autopilot.library.notepad import ScratchStore
from autopilot.orchestrator.interpreter import StepInterpreter
from autopilot.orchestrator.runner import WorkflowRunner
from autopilot.orchestrator.scheduler import TriggerScheduler
from autopilot.tools.registry import CapabilityRegistry, register_builtin_capabilities


class FakePageDriver:
    """
    PageDriver double that records every primitive.

    Every selector is present unless listed in ``missing``; actions on
    selectors listed in ``failing`` report failure.
    """

    def __init__(self):
        self.calls: list[tuple] = []
        self.contexts: dict[int, dict[str, str]] = {}
        self.active_id: Optional[int] = None
        self.missing: set[str] = set()
        self.failing: set[str] = set()
        self.texts: dict[int, Any] = {}
        self.extracts: dict[str, str] = {}
        self.attributes: dict[tuple[str, str], str] = {}
        self.element_counts: dict[str, int] = {}
        self.selection = ""
        self.navigations = 0
        self.watchers: dict[int, list[DomWatcherConfig]] = {}
        self._next_id = 100

    # ==================== Test helpers ====================

    def add_context(self, context_id: int, url: str, title: str = "", active: bool = False) -> None:
        self.contexts[context_id] = {"url": url, "title": title}
        if active:
            self.active_id = context_id

    def close_context(self, context_id: int) -> None:
        self.contexts.pop(context_id, None)
        if self.active_id == context_id:
            self.active_id = None

    def calls_of(self, name: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == name]

    def _info(self, context_id: int) -> ContextInfo:
        entry = self.contexts[context_id]
        return ContextInfo(
            id=context_id,
            url=entry["url"],
            title=entry["title"],
            active=context_id == self.active_id,
        )

    def _outcome(self, selector: Optional[str]) -> DriverResult:
        if selector and selector in self.failing:
            return DriverResult.fail(f"Element not found: {selector}")
        return DriverResult.ok()

    # ==================== PageDriver ====================

    async def navigate(self, context_id, url, timeout_ms):
        self.calls.append(("navigate", context_id, url))
        self.navigations += 1
        self.contexts[context_id]["url"] = url
        return DriverResult.ok()

    async def click(self, context_id, selector, index=None):
        self.calls.append(("click", context_id, selector, index))
        return self._outcome(selector)

    async def click_at(self, context_id, x, y):
        self.calls.append(("click_at", context_id, x, y))
        return DriverResult.ok()

    async def type(self, context_id, selector, text, index=None):
        self.calls.append(("type", context_id, selector, text))
        return self._outcome(selector)

    async def press_key(self, context_id, key, selector=None, index=None):
        self.calls.append(("pressKey", context_id, key, selector))
        return self._outcome(selector)

    async def scroll(self, context_id, selector=None, amount=300, direction="down"):
        self.calls.append(("scroll", context_id, selector, amount, direction))
        return DriverResult.ok()

    async def hover(self, context_id, selector):
        self.calls.append(("hover", context_id, selector))
        return self._outcome(selector)

    async def wait_for_selector(self, context_id, selector, timeout_ms):
        return selector not in self.missing

    async def extract(self, context_id, selector, index=None, scope=None):
        self.calls.append(("extract", context_id, selector, index))
        return self.extracts.get(selector)

    async def extract_attribute(self, context_id, selector, attribute, index=None, scope=None):
        self.calls.append(("extractAttribute", context_id, selector, attribute))
        return self.attributes.get((selector, attribute))

    async def enumerate(self, context_id, selector):
        return self.element_counts.get(selector, 0)

    async def page_text(self, context_id, max_chars):
        text = self.texts.get(context_id, "")
        if isinstance(text, list):
            # Successive reads walk the list and stay on the last entry
            text = text.pop(0) if len(text) > 1 else text[0]
        return text[:max_chars]

    async def selected_text(self, context_id):
        return self.selection

    async def screenshot(self, context_id):
        self.calls.append(("screenshot", context_id))
        return "data:image/png;base64,iVBORw0KGgo="

    async def get_context(self, context_id):
        if context_id not in self.contexts:
            return None
        return self._info(context_id)

    async def active_context(self):
        if self.active_id is None or self.active_id not in self.contexts:
            return None
        return self._info(self.active_id)

    async def list_contexts(self):
        return [self._info(context_id) for context_id in self.contexts]

    async def create_context(self, url):
        context_id = self._next_id
        self._next_id += 1
        self.calls.append(("create_context", url))
        self.contexts[context_id] = {"url": url, "title": ""}
        return self._info(context_id)

    async def activate_context(self, context_id):
        if context_id not in self.contexts:
            return DriverResult.fail(f"Context {context_id} not found")
        self.calls.append(("activate", context_id))
        self.active_id = context_id
        return DriverResult.ok()

    async def watch_dom_changes(self, context_id, watchers):
        self.watchers[context_id] = list(watchers)
        return DriverResult.ok()


SHOP_URL = "https://shop.example.com/item/42"


@pytest.fixture
def driver():
    """Fake driver with one active shop page as context 1."""
    fake = FakePageDriver()
    fake.add_context(1, SHOP_URL, title="Item 42", active=True)
    return fake


@pytest.fixture
def runner_config():
    return RunnerConfig(
        default_step_timeout_ms=200,
        wait_poll_interval_ms=10,
        stable_content_timeout_ms=1000,
        stable_content_period_ms=100,
        stable_content_check_ms=50,
    )


@pytest.fixture
async def state():
    """Temporary SQLite-backed state manager."""
    with tempfile.TemporaryDirectory() as tmpdir:
        manager = StateManager(os.path.join(tmpdir, "autopilot.db"))
        await manager.initialize()
        yield manager
        await manager.close()


@pytest.fixture
def store(state):
    return WorkflowStore(state)


@pytest.fixture
def scratch(state):
    return ScratchStore(state)


@pytest.fixture
def registry(scratch):
    capabilities = CapabilityRegistry()
    register_builtin_capabilities(capabilities, scratch)
    return capabilities


@pytest.fixture
def interpreter(driver, runner_config, registry, scratch):
    return StepInterpreter(driver, runner_config, registry=registry, scratch=scratch)


@pytest.fixture
def runner(driver, store, interpreter, runner_config):
    return WorkflowRunner(driver, store, interpreter, runner_config)


@pytest.fixture
async def scheduler(driver, state, store, runner):
    """Initialized scheduler; timers are cancelled on teardown."""
    instance = TriggerScheduler(SchedulerConfig(), state, store, runner, driver)
    await instance.initialize()
    yield instance
    await instance.shutdown()


@pytest.fixture
def respx_router() -> MockRouter:
    """Router for mocking the function backend."""
    return MockRouter(assert_all_called=False)
