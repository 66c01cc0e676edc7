"""
Playwright sandbox host.

Scripts run in a blank page of an isolated browser context. The page gets
a ``page`` object whose every method is a driver-action request sent back
through an exposed function; the bridge routes it to the interpreter.
"""

from typing import Any, Optional

import structlog
from playwright.async_api import Error as PlaywrightError, Page

from ..core.errors import StepExecutionError
from ..orchestrator.sandbox import SandboxBridge
from .manager import BrowserManager


logger = structlog.get_logger()

_RUNTIME_SCRIPT = """
() => {
    const call = (cid, action, data) =>
        window.__autopilotDriverAction(cid, action, data || {}).then((reply) => {
            if (!reply || reply.success === false) {
                throw new Error((reply && reply.error) || (action + ' failed'));
            }
            return reply.result;
        });

    const makePage = (cid) => ({
        click: (selector) => call(cid, 'click', { selector }),
        type: (selector, text) => call(cid, 'type', { selector, text }),
        pressKey: (key, selector) => call(cid, 'pressKey', { key, selector }),
        scroll: (amount, direction, selector) => call(cid, 'scroll', { amount, direction, selector }),
        wait: (arg) => call(cid, 'wait', typeof arg === 'object' ? arg : { condition: 'time', value: arg }),
        navigate: (url) => call(cid, 'navigate', { url }),
        extract: (selector) => call(cid, 'extract', { selector }),
        extractAttribute: (selector, attribute) => call(cid, 'extractAttribute', { selector, attribute }),
        getElements: (selector) => call(cid, 'getElements', { selector }),
        executeFunction: (name, inputs) => call(cid, 'executeFunction', { name, inputs }),
        log: (message) => call(cid, 'log', { message: String(message) }),
        writeNotepad: (key, data) => call(cid, 'writeNotepad', { key, data }),
        readNotepad: (key) => call(cid, 'readNotepad', { key }),
        clearNotepad: (key) => call(cid, 'clearNotepad', { key }),
        savePersistent: (key, data) => call(cid, 'savePersistent', { key, data }),
        loadPersistent: (key) => call(cid, 'loadPersistent', { key }),
        generatePage: (params) => call(cid, 'generatePage', params),
        modifySite: (params) => call(cid, 'modifySite', params),
        downloadFile: (params) => call(cid, 'downloadFile', params),
        embedText: (params) => call(cid, 'embedText', params),
        askOllama: (params) => call(cid, 'askOllama', params),
        useTool: (toolName, params) => call(cid, 'useTool', { toolName, params }),
        scheduler: (params) => call(cid, 'scheduler', params),
    });

    window.__autopilotRun = async (cid, code, inputs) => {
        try {
            const AsyncFunction = Object.getPrototypeOf(async function () {}).constructor;
            const body = new AsyncFunction('page', 'inputs', code);
            const result = await body(makePage(cid), inputs || {});
            await window.__autopilotScriptResult(cid, true, result === undefined ? null : result, null);
        } catch (e) {
            await window.__autopilotScriptResult(cid, false, null, String((e && e.message) || e));
        }
    };
}
"""


class PlaywrightSandboxHost:
    """SandboxTransport backed by an isolated Playwright page."""

    def __init__(self, manager: BrowserManager, bridge: SandboxBridge):
        self.manager = manager
        self.bridge = bridge
        self._page: Optional[Page] = None

    async def start(self) -> None:
        context = await self.manager.new_isolated_context()
        await context.expose_function("__autopilotDriverAction", self._on_driver_action)
        await context.expose_function("__autopilotScriptResult", self._on_script_result)
        self._page = await context.new_page()
        await self._page.evaluate(_RUNTIME_SCRIPT)
        self.bridge.attach_transport(self)
        logger.info("sandbox_host_started")

    async def dispatch(self, correlation_id: str, code: str, inputs: dict[str, Any]) -> None:
        if self._page is None or self._page.is_closed():
            raise StepExecutionError("Sandbox host is not running")
        try:
            # Fire and forget; the result comes back through __autopilotScriptResult
            await self._page.evaluate(
                "([cid, code, inputs]) => { window.__autopilotRun(cid, code, inputs); }",
                [correlation_id, code, inputs],
            )
        except PlaywrightError as e:
            raise StepExecutionError(f"Sandbox dispatch failed: {e}")

    async def _on_driver_action(self, correlation_id: str, action: str, data: dict) -> dict:
        return await self.bridge.handle_driver_action(correlation_id, action, data)

    async def _on_script_result(
        self,
        correlation_id: str,
        success: bool,
        result: Any,
        error: Optional[str],
    ) -> None:
        self.bridge.deliver(correlation_id, bool(success), result=result, error=error)

    async def stop(self) -> None:
        self.bridge.cancel_all("Sandbox host stopped")
        if self._page is not None and not self._page.is_closed():
            await self._page.close()
        self._page = None
        logger.info("sandbox_host_stopped")
