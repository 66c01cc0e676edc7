"""Tests for sandboxed script execution."""

import asyncio

import pytest

from autopilot.core.errors import StepExecutionError
from autopilot.core.models import parse_step
from autopilot.orchestrator.interpreter import StepInterpreter, StepScope
from autopilot.orchestrator.sandbox import TIMEOUT_MESSAGE, SandboxBridge


class ScriptedTransport:
    """
    Transport double. ``behaviour`` runs as a background task per script and
    receives the bridge and the correlation id.
    """

    def __init__(self, bridge, behaviour=None):
        self.bridge = bridge
        self.behaviour = behaviour
        self.dispatched: list[tuple[str, str, dict]] = []
        self._tasks: set[asyncio.Task] = set()
        bridge.attach_transport(self)

    async def dispatch(self, correlation_id, code, inputs):
        self.dispatched.append((correlation_id, code, inputs))
        if self.behaviour is not None:
            task = asyncio.create_task(self.behaviour(self.bridge, correlation_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)


class BrokenTransport:
    async def dispatch(self, correlation_id, code, inputs):
        raise ConnectionError("host page crashed")


@pytest.fixture
def bridge():
    return SandboxBridge(timeout_seconds=0.2)


@pytest.fixture
def sandboxed(driver, runner_config, registry, scratch, bridge):
    """Interpreter wired to the bridge."""
    return StepInterpreter(driver, runner_config, sandbox=bridge, registry=registry, scratch=scratch)


@pytest.fixture
def scope():
    return StepScope(context_id=1, inputs={"query": "lamp"}, function_name="Scripted")


async def _script(interpreter, scope, code):
    return await interpreter.execute(parse_step({"type": "script", "code": code}), scope)


class TestSandboxBridge:
    """Test script correlation."""

    @pytest.mark.asyncio
    async def test_round_trip(self, sandboxed, bridge, scope):
        async def reply(bridge, cid):
            bridge.deliver(cid, True, result={"total": 3})

        transport = ScriptedTransport(bridge, reply)

        result = await _script(sandboxed, scope, "return { total: 3 };")

        assert result.success
        assert result.data == {"total": 3}
        assert transport.dispatched[0][2] == {"query": "lamp"}
        assert bridge.pending_count == 0

    @pytest.mark.asyncio
    async def test_script_error(self, sandboxed, bridge, scope):
        async def reply(bridge, cid):
            bridge.deliver(cid, False, error="x is not defined")

        ScriptedTransport(bridge, reply)

        result = await _script(sandboxed, scope, "return x;")

        assert result.error == "x is not defined"

    @pytest.mark.asyncio
    async def test_blocked_script_never_dispatched(self, sandboxed, bridge, scope):
        transport = ScriptedTransport(bridge)

        result = await _script(sandboxed, scope, "return eval('2+2');")

        assert result.error == "Script contains disallowed operation: eval()"
        assert result.error_type == "SafetyViolation"
        assert transport.dispatched == []

    @pytest.mark.asyncio
    async def test_timeout_and_late_reply(self, sandboxed, bridge, scope):
        transport = ScriptedTransport(bridge)

        result = await _script(sandboxed, scope, "while (true) {}")

        assert result.error == TIMEOUT_MESSAGE
        assert result.error_type == "StepTimeoutError"
        assert bridge.pending_count == 0

        late_id = transport.dispatched[0][0]
        assert bridge.deliver(late_id, True, result=1) is False

    @pytest.mark.asyncio
    async def test_not_available(self, sandboxed, scope):
        result = await _script(sandboxed, scope, "return 1;")

        assert result.error == "Sandbox is not available"

    @pytest.mark.asyncio
    async def test_dispatch_failure(self, bridge, scope):
        bridge.attach_transport(BrokenTransport())

        with pytest.raises(StepExecutionError) as exc:
            await bridge.run("return 1;", {}, scope)

        assert "host page crashed" in exc.value.message
        assert bridge.pending_count == 0

    @pytest.mark.asyncio
    async def test_cancel_all(self, bridge, scope):
        ScriptedTransport(bridge)
        task = asyncio.create_task(bridge.run("return 1;", {}, scope))
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert bridge.cancel_all("Sandbox host stopped") == 1
        result = await task

        assert result.error == "Sandbox host stopped"


class TestDriverActionRouting:
    """Test driver actions requested while a script runs."""

    @pytest.mark.asyncio
    async def test_actions_use_step_context(self, sandboxed, bridge, driver, scope):
        driver.add_context(2, "https://other.example.com/")
        driver.extracts["h1"] = "Welcome"

        async def behaviour(bridge, cid):
            await bridge.handle_driver_action(cid, "type", {"selector": "#q", "text": "lamp"})
            reply = await bridge.handle_driver_action(cid, "extract", {"selector": "h1"})
            bridge.deliver(cid, True, result=reply["result"])

        ScriptedTransport(bridge, behaviour)

        result = await _script(sandboxed, scope, "await page.type('#q', inputs.query); return await page.extract('h1');")

        assert result.data == "Welcome"
        assert driver.calls == [("type", 1, "#q", "lamp"), ("extract", 1, "h1", None)]

    @pytest.mark.asyncio
    async def test_action_errors_become_replies(self, sandboxed, bridge, scope):
        replies = []

        async def behaviour(bridge, cid):
            replies.append(await bridge.handle_driver_action(cid, "formatDisk", {}))
            bridge.deliver(cid, True)

        ScriptedTransport(bridge, behaviour)

        await _script(sandboxed, scope, "await page.formatDisk();")

        assert replies == [{"success": False, "error": "Unknown driver action: formatDisk"}]

    @pytest.mark.asyncio
    async def test_unknown_correlation_id(self, sandboxed, bridge):
        reply = await bridge.handle_driver_action("123_nope", "click", {"selector": "#a"})

        assert reply == {"success": False, "error": "No active script execution"}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
