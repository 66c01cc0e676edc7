"""Static safety scan for sandboxed workflow scripts."""

import re
from typing import Optional

import structlog

from ..core.errors import SafetyViolation


logger = structlog.get_logger()


# Rule label -> pattern. Scripts must reach the page through the driver API.
DEFAULT_BLOCKED_PATTERNS: dict[str, str] = {
    "eval()": r"(^|[^\w$])eval\s*\(",
    "new Function()": r"\bnew\s+Function\s*\(",
    "Function()": r"(^|[^\w$])Function\s*\(",
    "page.evaluate()": r"\bpage\s*\.\s*evaluate\s*\(",
    "page.goto()": r"\bpage\s*\.\s*goto\s*\(",
    "page.extract({...})": r"\bpage\s*\.\s*extract\s*\(\s*\{",
    "XMLHttpRequest": r"\bXMLHttpRequest\b",
    "fetch()": r"(^|[^\w$.])fetch\s*\(",
    "WebSocket": r"\bWebSocket\b",
    "document.cookie": r"\bdocument\s*\.\s*cookie\b",
    "localStorage": r"\blocalStorage\b",
    "sessionStorage": r"\bsessionStorage\b",
    "indexedDB": r"\bindexedDB\b",
    "setInterval()": r"\bsetInterval\s*\(",
    "page.waitForSelector()": r"\bpage\s*\.\s*waitForSelector\s*\(",
}


class ScriptGuard:
    """Rejects scripts that use operations outside the driver API."""

    def __init__(self, extra_patterns: Optional[dict[str, str]] = None):
        patterns = dict(DEFAULT_BLOCKED_PATTERNS)
        patterns.update(extra_patterns or {})
        self._rules = [
            (label, re.compile(pattern, re.IGNORECASE))
            for label, pattern in patterns.items()
        ]

    def find_violation(self, code: str) -> Optional[str]:
        """Label of the first matching rule, or None."""
        text = code or ""
        for label, regex in self._rules:
            if regex.search(text):
                return label
        return None

    def check(self, code: str) -> None:
        """Raise SafetyViolation naming the first matching rule."""
        label = self.find_violation(code)
        if label:
            logger.warning("script_rejected", rule=label)
            raise SafetyViolation(
                f"Script contains disallowed operation: {label}",
                rule=label,
            )
