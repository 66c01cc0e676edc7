"""DOM-change trigger throttling: in-flight lock, suppression window and debounce."""

import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog


logger = structlog.get_logger()

GuardKey = tuple[str, int]


def _wall_ms() -> float:
    return time.time() * 1000


@dataclass(frozen=True)
class GuardRejection:
    """Why a DOM-change trigger was not allowed to run."""
    reason: str         # in-flight | suppressed | debounced
    message: str


class DomTriggerGuard:
    """
    Three independent guards keyed by (job id, context id).

    A trigger is allowed only when no run is in flight for the key, the
    post-run suppression window has elapsed, and the previous trigger is
    older than the job's debounce. ``try_begin`` checks and marks without
    awaiting, so it is atomic on the event loop.
    """

    def __init__(
        self,
        min_suppression_ms: int = 1000,
        max_suppression_ms: int = 30000,
        clock: Callable[[], float] = _wall_ms,
    ):
        self.min_suppression_ms = min_suppression_ms
        self.max_suppression_ms = max_suppression_ms
        self._clock = clock

        self._in_flight: set[GuardKey] = set()
        self._suppress_until: dict[GuardKey, float] = {}
        self._last_trigger_at: dict[GuardKey, float] = {}

    def suppression_ms(self, debounce_ms: int) -> int:
        """Post-run suppression: 2x debounce, clamped."""
        return max(self.min_suppression_ms, min(self.max_suppression_ms, debounce_ms * 2))

    def check(self, job_id: str, context_id: int, debounce_ms: int) -> Optional[GuardRejection]:
        """Return the first guard that blocks, or None."""
        key = (job_id, context_id)
        if key in self._in_flight:
            return GuardRejection("in-flight", "Job is already running for this context")

        now = self._clock()
        if now < self._suppress_until.get(key, 0):
            return GuardRejection("suppressed", "DOM-change trigger is in suppression window")

        if now - self._last_trigger_at.get(key, 0) < debounce_ms:
            return GuardRejection("debounced", "DOM-change trigger debounced")

        return None

    def begin(self, job_id: str, context_id: int) -> None:
        """Mark a run as in flight and stamp the trigger time."""
        key = (job_id, context_id)
        self._in_flight.add(key)
        self._last_trigger_at[key] = self._clock()

    def try_begin(self, job_id: str, context_id: int, debounce_ms: int) -> Optional[GuardRejection]:
        """Check all guards and, if they agree, mark the run as started."""
        rejection = self.check(job_id, context_id, debounce_ms)
        if rejection is None:
            self.begin(job_id, context_id)
        return rejection

    def finish(self, job_id: str, context_id: int, debounce_ms: int) -> None:
        """Open the suppression window and release the in-flight lock."""
        key = (job_id, context_id)
        self._suppress_until[key] = self._clock() + self.suppression_ms(debounce_ms)
        self._in_flight.discard(key)

    def is_in_flight(self, job_id: str, context_id: int) -> bool:
        return (job_id, context_id) in self._in_flight

    def clear_job(self, job_id: str) -> None:
        """Drop all bookkeeping for a job."""
        self._purge(lambda key: key[0] == job_id)

    def clear_context(self, context_id: int) -> None:
        """Drop all bookkeeping for a closed context."""
        self._purge(lambda key: key[1] == context_id)

    def clear(self) -> None:
        self._in_flight.clear()
        self._suppress_until.clear()
        self._last_trigger_at.clear()

    def _purge(self, predicate: Callable[[GuardKey], bool]) -> None:
        self._in_flight = {key for key in self._in_flight if not predicate(key)}
        for table in (self._suppress_until, self._last_trigger_at):
            for key in [k for k in table if predicate(k)]:
                del table[key]

    def stats(self) -> dict:
        """Bookkeeping sizes for diagnostics."""
        return {
            "in_flight": len(self._in_flight),
            "suppressed": len(self._suppress_until),
            "tracked": len(self._last_trigger_at),
        }
