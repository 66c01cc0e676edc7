"""Step interpreter: maps one typed step onto page driver and capability calls."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from ..browser.driver import DriverResult, PageDriver
from ..core.config import RunnerConfig
from ..core.errors import (
    AbortError,
    AutopilotError,
    StepExecutionError,
    StepTimeoutError,
    ValidationError,
)
from ..core.models import (
    STEP_TYPES,
    ExecutionResult,
    Step,
    ToolStep,
    parse_step,
)
from ..library.notepad import ScratchStore
from ..tools.registry import CapabilityRegistry
from .cancellation import CancellationToken
from .matching import normalize_url
from .sandbox import SandboxBridge
from .selectors import format_indexed, parse_selector


logger = structlog.get_logger()


@dataclass
class StepScope:
    """Where and on whose behalf a step runs."""
    context_id: int
    inputs: dict[str, Any] = field(default_factory=dict)
    cancel_token: Optional[CancellationToken] = None
    depth: int = 0
    function_name: Optional[str] = None

    def check_cancelled(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()


# Step type -> handler method. Checked against STEP_TYPES below.
_STEP_HANDLERS: dict[str, str] = {
    "navigate": "_navigate",
    "click": "_click",
    "type": "_type",
    "pressKey": "_press_key",
    "scroll": "_scroll",
    "wait": "_wait",
    "extract": "_extract",
    "extractAttribute": "_extract_attribute",
    "getElements": "_get_elements",
    "hover": "_hover",
    "switchTab": "_switch_tab",
    "waitForStableContent": "_wait_for_stable_content",
    "returnValue": "_return_value",
    "script": "_script",
    "executeFunction": "_execute_function",
    "note": "_note",
    "notepad": "_notepad",
    "screenshot": "_screenshot",
    "literalClick": "_literal_click",
    "literalType": "_literal_type",
    "literalKeydown": "_literal_keydown",
    "generatePage": "_tool",
    "downloadFile": "_tool",
    "modifySite": "_tool",
    "embedText": "_tool",
    "askOllama": "_tool",
    "useTool": "_tool",
    "scheduler": "_tool",
}

if set(_STEP_HANDLERS) != STEP_TYPES:
    raise RuntimeError(
        f"Step handler table out of sync: {sorted(STEP_TYPES ^ set(_STEP_HANDLERS))}"
    )

# Driver actions a sandboxed script may request that map onto step primitives
_PRIMITIVE_ACTIONS = frozenset({
    "click", "type", "pressKey", "scroll", "wait", "navigate",
    "extract", "extractAttribute", "getElements",
})

_OUTPUT_TOOLS = frozenset({"generatePage", "modifySite", "downloadFile", "embedText", "askOllama"})


def _checked(result: DriverResult, fallback: str) -> DriverResult:
    if not result.success:
        raise StepExecutionError(result.error or fallback)
    return result


class StepInterpreter:
    """
    Executes individual steps against a context.

    Every handler either returns an ExecutionResult or raises an
    AutopilotError, which ``execute`` turns into a failed result.
    AbortError is re-raised so the runner can report the run as aborted.
    """

    def __init__(
        self,
        driver: PageDriver,
        config: Optional[RunnerConfig] = None,
        sandbox: Optional[SandboxBridge] = None,
        registry: Optional[CapabilityRegistry] = None,
        scratch: Optional[ScratchStore] = None,
        snapshot_chars: int = 250000,
    ):
        self.driver = driver
        self.config = config or RunnerConfig()
        self.sandbox = sandbox
        self.registry = registry
        self.scratch = scratch or ScratchStore()
        self.snapshot_chars = snapshot_chars
        self._runner = None

        if sandbox is not None:
            sandbox.set_action_handler(self.execute_driver_action)

    def bind_runner(self, runner) -> None:
        """Runner used for executeFunction sub-workflows."""
        self._runner = runner

    async def execute(self, step: Step, scope: StepScope) -> ExecutionResult:
        """Run one step and normalize its outcome."""
        handler = getattr(self, _STEP_HANDLERS[step.type])
        try:
            return await handler(step, scope)
        except AbortError:
            raise
        except AutopilotError as e:
            logger.info(
                "step_failed",
                step_type=step.type,
                context_id=scope.context_id,
                error=e.message,
            )
            return ExecutionResult.fail(e.message, error_type=type(e).__name__)

    def _timeout_ms(self, step: Step) -> int:
        return step.timeout or self.config.default_step_timeout_ms

    async def _wait_for(self, context_id: int, selector: str, timeout_ms: int) -> None:
        if not await self.driver.wait_for_selector(context_id, selector, timeout_ms):
            raise StepTimeoutError(
                f"Timed out waiting for selector: {selector}",
                timeout_ms=timeout_ms,
            )

    # ==================== Navigation ====================

    async def _navigate(self, step, scope: StepScope) -> ExecutionResult:
        if not step.url:
            raise StepExecutionError("navigate requires a URL", step_type=step.type)

        current = await self.driver.get_context(scope.context_id)
        if current is not None and normalize_url(current.url) == normalize_url(step.url):
            logger.debug("navigate_skipped", context_id=scope.context_id, url=step.url)
            return ExecutionResult(success=True, skipped=True)

        timeout_ms = step.timeout or self.config.navigation_timeout_ms
        _checked(
            await self.driver.navigate(scope.context_id, step.url, timeout_ms),
            f"Navigation to {step.url} failed",
        )
        return ExecutionResult(success=True)

    async def _switch_tab(self, step, scope: StepScope) -> ExecutionResult:
        contexts = await self.driver.list_contexts()
        target = None

        if step.url:
            url = step.url
            target = (
                next((c for c in contexts if c.url == url), None)
                or next((c for c in contexts if c.url.startswith(url)), None)
                or next((c for c in contexts if c.url and url.startswith(c.url)), None)
            )
        if target is None and step.title:
            title = step.title.lower()
            target = next((c for c in contexts if title in (c.title or "").lower()), None)

        if target is None:
            return ExecutionResult(success=True, next_context_id=scope.context_id)

        _checked(await self.driver.activate_context(target.id), "Failed to activate tab")
        logger.debug("context_switched", from_context=scope.context_id, to_context=target.id)
        return ExecutionResult(success=True, next_context_id=target.id)

    # ==================== Element actions ====================

    async def _click(self, step, scope: StepScope) -> ExecutionResult:
        if not step.selector:
            if step.x is not None and step.y is not None:
                _checked(await self.driver.click_at(scope.context_id, step.x, step.y), "Click failed")
                return ExecutionResult(success=True)
            raise StepExecutionError("click requires a selector or coordinates", step_type=step.type)

        sel = parse_selector(step.selector)
        if sel.index is None:
            await self._wait_for(scope.context_id, sel.selector, self._timeout_ms(step))
        _checked(
            await self.driver.click(scope.context_id, sel.selector, sel.index),
            f"Click failed: {step.selector}",
        )
        return ExecutionResult(success=True)

    async def _type(self, step, scope: StepScope) -> ExecutionResult:
        selector, index = None, None
        if step.selector:
            sel = parse_selector(step.selector)
            selector, index = sel.selector, sel.index
            if index is None:
                await self._wait_for(scope.context_id, selector, self._timeout_ms(step))

        _checked(
            await self.driver.type(scope.context_id, selector, str(step.value), index),
            f"Typing failed: {step.selector or 'active element'}",
        )
        return ExecutionResult(success=True)

    async def _press_key(self, step, scope: StepScope) -> ExecutionResult:
        selector, index = None, None
        if step.selector and step.selector.strip() != "body":
            sel = parse_selector(step.selector)
            selector, index = sel.selector, sel.index

        _checked(
            await self.driver.press_key(scope.context_id, step.key or "Enter", selector, index),
            f"Key press failed: {step.key}",
        )
        return ExecutionResult(success=True)

    async def _scroll(self, step, scope: StepScope) -> ExecutionResult:
        _checked(
            await self.driver.scroll(scope.context_id, step.selector, step.amount, step.direction),
            "Scroll failed",
        )
        return ExecutionResult(success=True)

    async def _hover(self, step, scope: StepScope) -> ExecutionResult:
        if not step.selector:
            return ExecutionResult(success=True)
        _checked(await self.driver.hover(scope.context_id, step.selector), f"Hover failed: {step.selector}")
        return ExecutionResult(success=True)

    async def _literal_click(self, step, scope: StepScope) -> ExecutionResult:
        if step.x is not None and step.y is not None:
            _checked(await self.driver.click_at(scope.context_id, step.x, step.y), "Click failed")
        elif step.selector:
            sel = parse_selector(step.selector)
            _checked(await self.driver.click(scope.context_id, sel.selector, sel.index), "Click failed")
        else:
            raise StepExecutionError("literalClick requires coordinates or a selector", step_type=step.type)
        return ExecutionResult(success=True)

    async def _literal_type(self, step, scope: StepScope) -> ExecutionResult:
        selector, index = None, None
        if step.selector:
            sel = parse_selector(step.selector)
            selector, index = sel.selector, sel.index
        _checked(await self.driver.type(scope.context_id, selector, str(step.value), index), "Typing failed")
        return ExecutionResult(success=True)

    async def _literal_keydown(self, step, scope: StepScope) -> ExecutionResult:
        _checked(
            await self.driver.press_key(scope.context_id, step.key, step.selector or None),
            f"Key press failed: {step.key}",
        )
        return ExecutionResult(success=True)

    # ==================== Waiting ====================

    async def _wait(self, step, scope: StepScope) -> ExecutionResult:
        condition = step.condition or ("selector" if step.selector else "time")
        value = step.value if step.value is not None else step.selector

        if condition == "time":
            try:
                delay_ms = int(value)
            except (TypeError, ValueError):
                delay_ms = self.config.default_wait_ms
            await asyncio.sleep(max(0, delay_ms) / 1000)
            return ExecutionResult(success=True)

        if not value:
            raise StepExecutionError(f"wait for {condition} requires a value", step_type=step.type)

        timeout_ms = self._timeout_ms(step)
        if condition == "selector":
            await self._wait_for(scope.context_id, str(value), timeout_ms)
            return ExecutionResult(success=True)

        deadline = time.monotonic() + timeout_ms / 1000
        needle = str(value)
        while True:
            text = await self.driver.page_text(scope.context_id, self.snapshot_chars)
            if needle in text:
                return ExecutionResult(success=True)
            if time.monotonic() >= deadline:
                raise StepTimeoutError(f"Timed out waiting for text: {needle}", timeout_ms=timeout_ms)
            scope.check_cancelled()
            await asyncio.sleep(self.config.wait_poll_interval_ms / 1000)

    async def _wait_for_stable_content(self, step, scope: StepScope) -> ExecutionResult:
        timeout_ms = step.timeout or self.config.stable_content_timeout_ms
        period_ms = step.stability_period or self.config.stable_content_period_ms
        check_ms = step.check_interval or self.config.stable_content_check_ms

        started = time.monotonic()
        last_text = await self.driver.page_text(scope.context_id, self.snapshot_chars)
        stable_since = started

        while True:
            scope.check_cancelled()
            await asyncio.sleep(check_ms / 1000)
            text = await self.driver.page_text(scope.context_id, self.snapshot_chars)
            now = time.monotonic()

            if text != last_text:
                last_text = text
                stable_since = now
            elif (now - stable_since) * 1000 >= period_ms:
                return ExecutionResult(success=True, text=text)

            if (now - started) * 1000 >= timeout_ms:
                raise StepTimeoutError("Page did not stabilize in time", timeout_ms=timeout_ms)

    # ==================== Reading ====================

    async def _extract(self, step, scope: StepScope) -> ExecutionResult:
        raw = step.selector or step.pattern
        if not raw or not raw.strip():
            raise StepExecutionError("extract requires a CSS selector string", step_type=step.type)

        sel = parse_selector(raw)
        value = await self.driver.extract(scope.context_id, sel.child, sel.index, scope=sel.container)
        if value is None:
            raise StepExecutionError(f"Element not found: {raw}", step_type=step.type)
        return ExecutionResult(success=True, extracted=value)

    async def _extract_attribute(self, step, scope: StepScope) -> ExecutionResult:
        sel = parse_selector(step.selector)
        value = await self.driver.extract_attribute(
            scope.context_id, sel.child, step.attribute, sel.index, scope=sel.container
        )
        if value is None:
            raise StepExecutionError(
                f"Attribute '{step.attribute}' not found on {step.selector}",
                step_type=step.type,
            )
        return ExecutionResult(success=True, data=value)

    async def _get_elements(self, step, scope: StepScope) -> ExecutionResult:
        count = await self.driver.enumerate(scope.context_id, step.selector)
        return ExecutionResult(
            success=True,
            data=[format_indexed(i, step.selector) for i in range(count)],
        )

    async def _return_value(self, step, scope: StepScope) -> ExecutionResult:
        value = step.selected_text or step.value
        if value is None:
            value = await self.driver.selected_text(scope.context_id)
        return ExecutionResult(success=True, data=value)

    async def _screenshot(self, step, scope: StepScope) -> ExecutionResult:
        shot = await self.driver.screenshot(scope.context_id)
        if not shot:
            raise StepExecutionError("Screenshot capture failed", step_type=step.type)
        return ExecutionResult(success=True, screenshots=[shot])

    # ==================== Composition ====================

    async def _script(self, step, scope: StepScope) -> ExecutionResult:
        if self.sandbox is None:
            raise StepExecutionError("Sandbox is not available", step_type=step.type)
        return await self.sandbox.run(step.code, scope.inputs, scope)

    async def _execute_function(self, step, scope: StepScope) -> ExecutionResult:
        if self._runner is None:
            raise StepExecutionError("No runner bound for sub-workflows", step_type=step.type)
        data = await self._runner.run_sub_workflow(step.function_name, step.inputs, scope)
        return ExecutionResult(success=True, data=data)

    async def _note(self, step, scope: StepScope) -> ExecutionResult:
        return ExecutionResult(success=True)

    async def _notepad(self, step, scope: StepScope) -> ExecutionResult:
        action = step.action
        if action in ("getAll", "readAll"):
            return ExecutionResult(success=True, data=self.scratch.read_all())
        if action == "clear":
            self.scratch.clear(step.key)
            return ExecutionResult(success=True)

        if not step.key:
            raise ValidationError(f"notepad '{action}' requires a key", field="key")

        if action in ("set", "write"):
            self.scratch.write(step.key, step.value)
            return ExecutionResult(success=True)
        if action == "append":
            return ExecutionResult(success=True, data=self.scratch.append(step.key, step.value))
        return ExecutionResult(success=True, data=self.scratch.read(step.key))

    async def _tool(self, step: ToolStep, scope: StepScope) -> ExecutionResult:
        name = step.capability_name()
        if not name:
            raise ValidationError("useTool requires a toolName", field="toolName")
        result = await self._call_capability(name, step.capability_params(), scope)

        if isinstance(result, dict):
            text = result.get("text") if isinstance(result.get("text"), str) else None
            if "result" in result:
                data = result["result"]
            else:
                data = {k: v for k, v in result.items() if k not in ("success", "text")} or None
            return ExecutionResult(success=True, data=data, text=text)
        return ExecutionResult(success=True, data=result)

    async def _call_capability(self, name: str, params: dict[str, Any], scope: StepScope) -> Any:
        if self.registry is None:
            raise StepExecutionError(f"No capability registry for tool: {name}")

        result = await self.registry.execute(
            name,
            params,
            {"context_id": scope.context_id, "function_name": scope.function_name},
        )
        if isinstance(result, dict) and result.get("success") is False:
            raise StepExecutionError(result.get("error") or f"Tool {name} failed")
        return result

    # ==================== Sandbox driver actions ====================

    async def execute_driver_action(
        self,
        action: str,
        data: dict[str, Any],
        scope: StepScope,
    ) -> dict[str, Any]:
        """
        Serve a driver action requested by a sandboxed script.

        Runs against the context of the step that started the script.
        """
        scope.check_cancelled()

        if action in _PRIMITIVE_ACTIONS:
            raw = dict(data)
            if action == "type" and "value" not in raw and "text" in raw:
                raw["value"] = raw.pop("text")
            raw["type"] = action
            result = await self.execute(parse_step(raw), scope)
            reply = result.extracted if result.extracted is not None else result.data
            return {"success": result.success, "result": reply, "error": result.error}

        if action == "executeFunction":
            if self._runner is None:
                raise StepExecutionError("No runner bound for sub-workflows")
            name = data.get("name") or data.get("functionName")
            if not name:
                raise ValidationError("executeFunction requires a name", field="name")
            data = await self._runner.run_sub_workflow(name, data.get("inputs") or {}, scope)
            return {"success": True, "result": data}

        if action == "log":
            logger.info("sandbox_log", message=data.get("message"), context_id=scope.context_id)
            return {"success": True}

        if action in ("writeNotepad", "readNotepad", "savePersistent", "loadPersistent"):
            key = data.get("key")
            if not key:
                raise ValidationError(f"{action} requires a key", field="key")
            if action == "writeNotepad":
                self.scratch.write(key, data.get("data"))
                return {"success": True}
            if action == "readNotepad":
                return {"success": True, "result": self.scratch.read(key)}
            if action == "savePersistent":
                await self.scratch.save(key, data.get("data"))
                return {"success": True}
            return {"success": True, "result": await self.scratch.load(key)}

        if action == "clearNotepad":
            self.scratch.clear(data.get("key"))
            return {"success": True}

        if action in _OUTPUT_TOOLS or action == "scheduler":
            return self._tool_reply(await self._call_capability(action, data, scope))

        if action == "useTool":
            name = data.get("toolName")
            if not name:
                raise ValidationError("useTool requires a toolName", field="toolName")
            return self._tool_reply(await self._call_capability(name, data.get("params") or {}, scope))

        raise StepExecutionError(f"Unknown driver action: {action}")

    @staticmethod
    def _tool_reply(result: Any) -> dict[str, Any]:
        if isinstance(result, dict) and "success" in result:
            return result
        return {"success": True, "result": result}
