"""Safety gates: script scanning and DOM-trigger throttling."""

from .script_guard import ScriptGuard
from .throttle import DomTriggerGuard, GuardRejection

__all__ = ["ScriptGuard", "DomTriggerGuard", "GuardRejection"]
