"""
Browser Manager - one persistent Playwright browser shared by the autopilot.

Workflow pages live in a single persistent context so cookies and storage
survive restarts. Sandboxed scripts get their own isolated context.
"""

import asyncio
import os
from pathlib import Path
from typing import Optional

import structlog
from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    async_playwright,
)


logger = structlog.get_logger()


class BrowserManager:
    """
    Manages the browser process and its contexts.

    Features:
    - Lazy launch, idempotent initialize/shutdown
    - Session persistence (cookies, storage) across restarts
    - Isolated contexts for sandboxed script hosts
    """

    def __init__(
        self,
        headless: bool = True,
        user_data_dir: Optional[str] = None,
        viewport_width: int = 1280,
        viewport_height: int = 720,
    ):
        self.headless = headless
        self.user_data_dir = user_data_dir or "./data/browser"
        self.viewport = {"width": viewport_width, "height": viewport_height}

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._isolated: list[BrowserContext] = []
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """Launch the browser and open the persistent workflow context."""
        async with self._lock:
            if self._initialized:
                return

            logger.info("browser_initializing", headless=self.headless)
            Path(self.user_data_dir).mkdir(parents=True, exist_ok=True)

            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=[
                    "--disable-dev-shm-usage",
                    "--no-first-run",
                    "--mute-audio",
                    f"--window-size={self.viewport['width']},{self.viewport['height']}",
                    "--disable-background-timer-throttling",
                    "--disable-backgrounding-occluded-windows",
                    "--disable-renderer-backgrounding",
                ],
            )

            storage_path = self._get_storage_path()
            self._context = await self._browser.new_context(
                viewport=self.viewport,
                storage_state=storage_path if Path(storage_path).exists() else None,
                ignore_https_errors=True,
            )

            self._initialized = True
            logger.info("browser_initialized")

    async def shutdown(self) -> None:
        """Save session state and close everything."""
        async with self._lock:
            if not self._initialized:
                return

            logger.info("browser_shutting_down")
            await self._save_storage_state()

            try:
                for context in self._isolated:
                    await context.close()
                self._isolated.clear()

                if self._context:
                    await self._context.close()
                    self._context = None
                if self._browser:
                    await self._browser.close()
                    self._browser = None
                if self._playwright:
                    await self._playwright.stop()
                    self._playwright = None
            except PlaywrightError as e:
                logger.error("browser_shutdown_error", error=str(e))

            self._initialized = False
            logger.info("browser_shutdown_complete")

    @property
    def context(self) -> BrowserContext:
        if self._context is None:
            raise RuntimeError("Browser is not initialized")
        return self._context

    async def new_page(self) -> Page:
        """Open a page in the persistent workflow context."""
        if not self._initialized:
            await self.initialize()
        return await self.context.new_page()

    async def new_isolated_context(self) -> BrowserContext:
        """A fresh context sharing nothing with workflow pages."""
        if not self._initialized:
            await self.initialize()
        context = await self._browser.new_context(java_script_enabled=True)
        self._isolated.append(context)
        return context

    async def _save_storage_state(self) -> None:
        if self._context:
            try:
                storage_path = self._get_storage_path()
                await self._context.storage_state(path=storage_path)
                logger.debug("storage_state_saved", path=storage_path)
            except PlaywrightError as e:
                logger.warning("storage_state_save_failed", error=str(e))

    def _get_storage_path(self) -> str:
        return os.path.join(self.user_data_dir, "storage_state.json")
