"""
Page driver contract.

The autopilot never touches a page directly. Every primitive goes through
a ``PageDriver``: navigation, element actions, page text, context
(tab) management and DOM-change watcher installation. Contexts are
addressed by integer ids owned by the driver.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable


@dataclass
class DriverResult:
    """Result of a driver action."""
    success: bool
    error: Optional[str] = None
    data: Optional[Any] = None

    @classmethod
    def ok(cls, data: Any = None) -> "DriverResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "DriverResult":
        return cls(success=False, error=error)


@dataclass
class ContextInfo:
    """An execution context (browser tab)."""
    id: int
    url: str = ""
    title: str = ""
    active: bool = False


@dataclass
class DomWatcherConfig:
    """Content-side DOM mutation watcher for one domChange job."""
    job_id: str
    selector: str = "body"
    debounce_ms: int = 1200
    min_added_nodes: int = 1
    run_on_page_load: bool = True
    run_on_scroll: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.job_id,
            "domSelector": self.selector,
            "domDebounceMs": self.debounce_ms,
            "minAddedNodes": self.min_added_nodes,
            "runOnPageLoad": self.run_on_page_load,
            "runOnScroll": self.run_on_scroll,
        }


@runtime_checkable
class PageDriver(Protocol):
    """Primitive page actions against a target context."""

    async def navigate(self, context_id: int, url: str, timeout_ms: int) -> DriverResult: ...

    async def click(
        self, context_id: int, selector: str, index: Optional[int] = None
    ) -> DriverResult: ...

    async def click_at(self, context_id: int, x: float, y: float) -> DriverResult: ...

    async def type(
        self,
        context_id: int,
        selector: Optional[str],
        text: str,
        index: Optional[int] = None,
    ) -> DriverResult: ...

    async def press_key(
        self,
        context_id: int,
        key: str,
        selector: Optional[str] = None,
        index: Optional[int] = None,
    ) -> DriverResult: ...

    async def scroll(
        self,
        context_id: int,
        selector: Optional[str] = None,
        amount: int = 300,
        direction: str = "down",
    ) -> DriverResult: ...

    async def hover(self, context_id: int, selector: str) -> DriverResult: ...

    async def wait_for_selector(self, context_id: int, selector: str, timeout_ms: int) -> bool: ...

    async def extract(
        self,
        context_id: int,
        selector: str,
        index: Optional[int] = None,
        scope: Optional[str] = None,
    ) -> Optional[str]: ...

    async def extract_attribute(
        self,
        context_id: int,
        selector: str,
        attribute: str,
        index: Optional[int] = None,
        scope: Optional[str] = None,
    ) -> Optional[str]: ...

    async def enumerate(self, context_id: int, selector: str) -> int: ...

    async def page_text(self, context_id: int, max_chars: int) -> str: ...

    async def selected_text(self, context_id: int) -> str: ...

    async def screenshot(self, context_id: int) -> Optional[str]: ...

    async def get_context(self, context_id: int) -> Optional[ContextInfo]: ...

    async def active_context(self) -> Optional[ContextInfo]: ...

    async def list_contexts(self) -> list[ContextInfo]: ...

    async def create_context(self, url: str) -> ContextInfo: ...

    async def activate_context(self, context_id: int) -> DriverResult: ...

    async def watch_dom_changes(
        self, context_id: int, watchers: list[DomWatcherConfig]
    ) -> DriverResult: ...
