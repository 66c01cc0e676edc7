"""
Indexed selector addressing.

Element enumeration only reports a count per selector, so the i-th match
is addressed with the wire form ``::INDEX::i::selector``. Inside the
autopilot the wire form is parsed once into an ``IndexedSelector``.
"""

from dataclasses import dataclass
from typing import Optional


INDEX_PREFIX = "::INDEX::"


@dataclass(frozen=True)
class IndexedSelector:
    """A CSS selector, optionally pinned to the i-th match."""
    selector: str
    index: Optional[int] = None

    @property
    def container(self) -> Optional[str]:
        """Container part when an indexed selector also names a child."""
        if self.index is None or " " not in self.selector:
            return None
        return self.selector.split(" ", 1)[0]

    @property
    def child(self) -> str:
        """Child selector resolved inside the container, else the whole selector."""
        if self.container is None:
            return self.selector
        return self.selector.split(" ", 1)[1]

    def __str__(self) -> str:
        if self.index is None:
            return self.selector
        return format_indexed(self.index, self.selector)


def parse_selector(raw: Optional[str]) -> IndexedSelector:
    """Parse the wire form; plain selectors pass through unchanged."""
    raw = raw or ""
    if raw.startswith(INDEX_PREFIX):
        parts = raw.split("::")
        # ['', 'INDEX', '<i>', '<selector...>']
        if len(parts) >= 4:
            try:
                index = int(parts[2])
            except ValueError:
                return IndexedSelector(selector=raw)
            return IndexedSelector(selector="::".join(parts[3:]), index=index)
    return IndexedSelector(selector=raw)


def format_indexed(index: int, selector: str) -> str:
    return f"{INDEX_PREFIX}{index}::{selector}"
