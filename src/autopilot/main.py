"""
Workflow Autopilot - Main Entry Point

Wires the scheduler, runner and browser adapter together and serves the
HTTP command surface until a shutdown signal arrives.
"""

import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import structlog

from .browser.manager import BrowserManager
from .browser.playwright_driver import PlaywrightPageDriver
from .browser.sandbox_host import PlaywrightSandboxHost
from .core.config import AutopilotConfig, ConfigLoader
from .core.logging import configure_logging
from .core.state import StateManager
from .library.backend import BackendFunctionClient
from .library.functions import WorkflowStore
from .library.notepad import ScratchStore
from .orchestrator.interpreter import StepInterpreter
from .orchestrator.runner import WorkflowRunner
from .orchestrator.sandbox import SandboxBridge
from .orchestrator.scheduler import TriggerScheduler
from .safety.script_guard import ScriptGuard
from .server import CommandServer
from .tools.registry import CapabilityRegistry, register_builtin_capabilities


logger = structlog.get_logger()


def load_config() -> AutopilotConfig:
    """Config file from CONFIG_PATH (if present) with environment overrides."""
    config_path = os.getenv("CONFIG_PATH", "./config/autopilot.yaml")
    if os.path.exists(config_path):
        config = ConfigLoader(str(Path(config_path).parent)).load_autopilot_config(config_path)
    else:
        config = AutopilotConfig()

    if os.getenv("DATA_DIR"):
        config.data_directory = os.environ["DATA_DIR"]
    if os.getenv("SERVER_PORT"):
        config.server.port = int(os.environ["SERVER_PORT"])
    if os.getenv("BROWSER_HEADLESS"):
        config.browser.headless = os.environ["BROWSER_HEADLESS"].lower() == "true"
    return config


class Application:
    """Main application container."""

    def __init__(self, config: AutopilotConfig):
        self.config = config
        self.state: Optional[StateManager] = None
        self.browser_manager: Optional[BrowserManager] = None
        self.driver: Optional[PlaywrightPageDriver] = None
        self.sandbox_host: Optional[PlaywrightSandboxHost] = None
        self.scheduler: Optional[TriggerScheduler] = None
        self.server: Optional[CommandServer] = None
        self._background: set[asyncio.Task] = set()
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start all components."""
        logger.info("application_starting", config_hash=self.config.config_hash())
        config = self.config

        self.state = StateManager(os.path.join(config.data_directory, "autopilot.db"))
        await self.state.initialize()
        pruned = await self.state.cleanup_old_runs(config.scheduler.run_history_hours)
        if pruned:
            logger.info("run_history_pruned", count=pruned)

        store = WorkflowStore(self.state)
        await store.load()
        await self._load_function_files(store)

        scratch = ScratchStore(self.state)
        registry = CapabilityRegistry()
        bridge = SandboxBridge(
            guard=ScriptGuard(config.sandbox.extra_blocked_patterns),
            timeout_seconds=config.sandbox.timeout_seconds,
        )

        self.browser_manager = BrowserManager(
            headless=config.browser.headless,
            user_data_dir=config.browser.user_data_dir,
            viewport_width=config.browser.viewport_width,
            viewport_height=config.browser.viewport_height,
        )
        self.driver = PlaywrightPageDriver(
            self.browser_manager,
            action_timeout_ms=config.runner.default_step_timeout_ms,
        )

        interpreter = StepInterpreter(
            self.driver,
            config.runner,
            sandbox=bridge,
            registry=registry,
            scratch=scratch,
            snapshot_chars=config.scheduler.keyword_snapshot_chars,
        )
        backend = BackendFunctionClient(config.backend.base_url, config.backend.timeout_seconds)
        runner = WorkflowRunner(self.driver, store, interpreter, config.runner, backend=backend)

        self.scheduler = TriggerScheduler(config.scheduler, self.state, store, runner, self.driver)
        register_builtin_capabilities(registry, scratch, self.scheduler)

        self.driver.dom_event_handler = self.scheduler.handle_dom_change
        self.driver.context_closed_handler = self.scheduler.on_context_closed
        self.driver.navigation_handler = self._on_navigation

        await self.driver.start()
        self.sandbox_host = PlaywrightSandboxHost(self.browser_manager, bridge)
        await self.sandbox_host.start()

        await self.scheduler.initialize()

        self.server = CommandServer(
            self.scheduler,
            runner,
            store,
            host=config.server.host,
            port=config.server.port,
        )
        await self.server.start()

        logger.info("application_started")

    async def _load_function_files(self, store: WorkflowStore) -> None:
        loader = ConfigLoader()
        definitions = loader.load_functions(self.config.workflows_directory)
        if definitions:
            await store.upsert_many(definitions, unique=False)
            logger.info("function_files_loaded", count=len(definitions))

    async def _on_navigation(self, reason: str) -> None:
        """Re-sync DOM watchers and evaluate keyword jobs off the calling step."""
        task = asyncio.create_task(self._navigation_triggers(reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _navigation_triggers(self, reason: str) -> None:
        try:
            await self.scheduler.sync_dom_watchers(reason)
            await self.scheduler.evaluate_keyword_jobs(reason)
        except Exception:
            logger.exception("navigation_trigger_failed", reason=reason)

    async def stop(self) -> None:
        """Stop all components."""
        logger.info("application_stopping")

        if self.server:
            await self.server.stop()
        if self.scheduler:
            await self.scheduler.shutdown()
        for task in list(self._background):
            task.cancel()
        if self.sandbox_host:
            await self.sandbox_host.stop()
        if self.browser_manager:
            await self.browser_manager.shutdown()
        if self.state:
            await self.state.close()

        logger.info("application_stopped")

    async def run(self) -> None:
        """Run until shutdown signal."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()


async def main() -> None:
    """Main entry point."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    app = Application(load_config())

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("shutdown_signal_received")
        app.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
        await app.run()
    except Exception:
        logger.exception("application_error")
        sys.exit(1)
    finally:
        await app.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
