"""Cooperative cancellation."""

import asyncio
from typing import Optional

from ..core.errors import AbortError


class CancellationToken:
    """
    Stop-requested flag passed explicitly through a run.

    The runner polls it before each step and before entering a
    sub-workflow. Driver calls already in progress are allowed to finish.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "Stopped by user") -> None:
        """Request a stop."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        """Raise AbortError if a stop was requested."""
        if self._event.is_set():
            raise AbortError(self._reason or "Stopped by user")

    async def wait(self) -> None:
        """Block until a stop is requested."""
        await self._event.wait()
