"""URL, keyword and at-time matching helpers shared by the scheduler and runner."""

import math
import re
import time
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional
from urllib.parse import urlsplit


INTERNAL_URL_PREFIXES = ("chrome://", "edge://", "about:", "chrome-extension://")

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")


def now_ms() -> int:
    """Wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


def is_internal_url(url: Optional[str]) -> bool:
    """True for empty URLs and browser-internal pages that cannot be scripted."""
    return not url or url.startswith(INTERNAL_URL_PREFIXES)


def url_matches_pattern(url: str, pattern: str) -> bool:
    """Match a URL against a ``*`` wildcard pattern, anchored at both ends."""
    if not url or not pattern:
        return False
    regex = "^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$"
    return re.match(regex, url) is not None


def matches_url_filter(patterns: Iterable[str], url: Optional[str]) -> bool:
    """An empty filter matches every URL; a missing URL matches nothing."""
    if not url:
        return False
    patterns = [p for p in patterns if p]
    if not patterns:
        return True
    return any(url_matches_pattern(url, p) for p in patterns)


def keyword_matches(
    text: str,
    keyword: str,
    case_sensitive: bool = False,
    whole_word: bool = False,
) -> bool:
    """Test keyword containment with optional case sensitivity and word boundaries."""
    if not keyword or not keyword.strip():
        return False

    if whole_word:
        flags = 0 if case_sensitive else re.IGNORECASE
        return re.search(rf"\b{re.escape(keyword.strip())}\b", text, flags) is not None

    if case_sensitive:
        return keyword in text
    return keyword.lower() in text.lower()


def parse_at_time(value: Any, now: Optional[datetime] = None) -> Optional[int]:
    """
    Parse an at-time value into epoch milliseconds.

    Accepts epoch milliseconds (number or digit string), ``HH:MM`` meaning
    the next occurrence of that local time, or an ISO-8601 datetime
    (naive values are local time). Returns None when unparseable.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    if text.isdigit():
        return int(text)

    match = _HHMM.match(text)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            return None
        now = now or datetime.now()
        candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return int(candidate.timestamp() * 1000)

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return int(parsed.timestamp() * 1000)


def normalize_url(url: str) -> str:
    """Normalization used for navigation idempotency."""
    url = url or ""
    if url.endswith("/"):
        url = url[:-1]
    return url.lower()


def url_origin(url: str) -> Optional[str]:
    """``scheme://host[:port]`` of an absolute URL, or None."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


def is_http_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)
