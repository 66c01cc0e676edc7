"""
Sandboxed script execution.

Scripts run in an isolated host that cannot touch pages itself. The bridge
correlates each dispatched script with its reply by id, enforces a ceiling
on the round trip, and routes the script's driver-action requests back to
the interpreter against the context of the step that started the script.
"""

import asyncio
import random
import string
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

import structlog

from ..core.errors import AutopilotError, StepExecutionError
from ..core.models import ExecutionResult
from ..safety.script_guard import ScriptGuard


logger = structlog.get_logger()

TIMEOUT_MESSAGE = "Sandbox script execution timed out"

# (action, data, scope) -> reply dict
DriverActionHandler = Callable[[str, dict[str, Any], Any], Awaitable[dict[str, Any]]]


class SandboxTransport(Protocol):
    """Delivers a script to the isolated host."""

    async def dispatch(self, correlation_id: str, code: str, inputs: dict[str, Any]) -> None: ...


@dataclass
class _PendingScript:
    future: asyncio.Future
    timer: asyncio.TimerHandle
    scope: Any
    started_at: float


def _correlation_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{int(time.time() * 1000)}_{suffix}"


class SandboxBridge:
    """Correlates sandboxed script executions with their replies."""

    def __init__(
        self,
        guard: Optional[ScriptGuard] = None,
        timeout_seconds: float = 300.0,
        transport: Optional[SandboxTransport] = None,
    ):
        self.guard = guard or ScriptGuard()
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._action_handler: Optional[DriverActionHandler] = None
        self._pending: dict[str, _PendingScript] = {}

    def attach_transport(self, transport: SandboxTransport) -> None:
        self._transport = transport

    def set_action_handler(self, handler: DriverActionHandler) -> None:
        """Handler for driver actions requested by running scripts."""
        self._action_handler = handler

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def run(self, code: str, inputs: dict[str, Any], scope: Any) -> ExecutionResult:
        """
        Execute a script and wait for its reply.

        Raises:
            SafetyViolation: the script failed the static scan
            StepExecutionError: no transport, or dispatch failed
        """
        self.guard.check(code)

        if self._transport is None:
            raise StepExecutionError("Sandbox is not available")

        loop = asyncio.get_running_loop()
        correlation_id = _correlation_id()
        future = loop.create_future()
        timer = loop.call_later(self.timeout_seconds, self._expire, correlation_id)
        self._pending[correlation_id] = _PendingScript(
            future=future,
            timer=timer,
            scope=scope,
            started_at=time.monotonic(),
        )

        logger.debug("sandbox_script_dispatched", correlation_id=correlation_id)

        try:
            try:
                await self._transport.dispatch(correlation_id, code, inputs)
            except AutopilotError:
                raise
            except Exception as e:
                raise StepExecutionError(f"Failed to dispatch sandbox script: {e}")
            return await future
        finally:
            self._discard(correlation_id)

    def deliver(
        self,
        correlation_id: str,
        success: bool,
        result: Any = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Complete a pending script. Returns False for unknown or late replies.
        """
        pending = self._pending.get(correlation_id)
        if pending is None or pending.future.done():
            logger.debug("sandbox_late_reply_dropped", correlation_id=correlation_id)
            return False

        if success:
            outcome = ExecutionResult(success=True, data=result)
        else:
            outcome = ExecutionResult.fail(error or "Script execution failed")

        pending.future.set_result(outcome)
        logger.debug(
            "sandbox_script_completed",
            correlation_id=correlation_id,
            success=success,
            duration_ms=round((time.monotonic() - pending.started_at) * 1000),
        )
        return True

    async def handle_driver_action(
        self,
        correlation_id: str,
        action: str,
        data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Route a driver action from a running script to the action handler."""
        pending = self._pending.get(correlation_id)
        if pending is None or pending.future.done():
            return {"success": False, "error": "No active script execution"}
        if self._action_handler is None:
            return {"success": False, "error": "No driver action handler"}

        try:
            return await self._action_handler(action, dict(data or {}), pending.scope)
        except AutopilotError as e:
            logger.debug("sandbox_driver_action_failed", action=action, error=e.message)
            return {"success": False, "error": e.message}

    def cancel_all(self, reason: str = "Sandbox shutting down") -> int:
        """Fail every pending script."""
        count = 0
        for correlation_id in list(self._pending):
            pending = self._pending[correlation_id]
            if not pending.future.done():
                pending.future.set_result(ExecutionResult.fail(reason))
                count += 1
        return count

    def _expire(self, correlation_id: str) -> None:
        pending = self._pending.get(correlation_id)
        if pending is None or pending.future.done():
            return
        logger.warning("sandbox_script_timeout", correlation_id=correlation_id, timeout_s=self.timeout_seconds)
        pending.future.set_result(ExecutionResult.fail(TIMEOUT_MESSAGE, error_type="StepTimeoutError"))

    def _discard(self, correlation_id: str) -> None:
        pending = self._pending.pop(correlation_id, None)
        if pending is not None:
            pending.timer.cancel()
