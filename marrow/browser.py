"""
Browser automation with anti-detection countermeasures using Playwright.
"""

import asyncio
import logging
import random
from typing import Any, Dict, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Response,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .config import BrowserConfig
from .exceptions import LaunchError, NavigationError, PageNotReady

logger = logging.getLogger(__name__)


class StealthBrowser:
    """Owns one browser process and the single context/page opened on it."""

    def __init__(self, config: Optional[BrowserConfig] = None, headless: Optional[bool] = None):
        self.config = config or BrowserConfig()
        self.headless = self.config.headless if headless is None else headless
        self.playwright = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None

    async def __aenter__(self):
        """Context manager entry."""
        await self.launch()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        await self.close()

    async def launch(self) -> Browser:
        logger.debug(f"[Stealth] Launching browser (headless={self.headless})")
        try:
            self.playwright = await async_playwright().start()
            self.browser = await self.playwright.chromium.launch(
                headless=self.headless,
                args=self.config.stealth.launch_args,
            )
        except PlaywrightError as e:
            await self.close()
            raise LaunchError(f"Could not start browser: {e}") from e
        return self.browser

    async def new_page(self, storage_state: Optional[Dict[str, Any]] = None) -> Page:
        """Open a context with the stealth profile applied before any page script runs."""
        if not self.browser:
            raise LaunchError("Browser not launched. Call launch() first.")

        profile = self.config.stealth
        options = profile.context_options()
        if storage_state:
            options["storage_state"] = storage_state

        self.context = await self.browser.new_context(**options)
        await self.context.add_init_script(profile.init_script())
        page = await self.context.new_page()
        page.set_default_navigation_timeout(self.config.navigation_timeout_ms)
        return page

    async def storage_state(self) -> Dict[str, Any]:
        if not self.context:
            raise PageNotReady("No browser context to capture state from")
        return await self.context.storage_state()

    async def close(self):
        """Release the browser process. Safe to call on a partially launched browser."""
        browser, playwright = self.browser, self.playwright
        self.browser = None
        self.context = None
        self.playwright = None
        try:
            if browser:
                await browser.close()
        except PlaywrightError as e:
            logger.debug(f"[Stealth] Browser already gone on close: {e}")
        finally:
            if playwright:
                await playwright.stop()


class Navigator:
    """Drives one page with human-like pacing."""

    def __init__(self, config: Optional[BrowserConfig] = None, browser: Optional[StealthBrowser] = None):
        self.config = config or BrowserConfig()
        self.browser = browser or StealthBrowser(self.config)
        self._page: Optional[Page] = None

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def page(self) -> Page:
        if self._page is None:
            raise PageNotReady("Page not initialized. Call init() first.")
        return self._page

    async def init(self, storage_state: Optional[Dict[str, Any]] = None) -> Page:
        await self.browser.launch()
        self._page = await self.browser.new_page(storage_state=storage_state)
        return self._page

    async def goto(self, url: str) -> Optional[Response]:
        """
        Navigate and let client-side rendering settle.

        Waits for DOM content only, not network idle, so chatty pages cannot
        hang the call past the navigation timeout.
        """
        page = self.page
        logger.info(f"[Navigator] Navigating to: {url}")
        try:
            response = await page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=self.config.navigation_timeout_ms,
            )
        except PlaywrightTimeoutError as e:
            raise NavigationError(f"Timed out after {self.config.navigation_timeout_ms}ms loading {url}") from e
        except PlaywrightError as e:
            raise NavigationError(f"Navigation to {url} failed: {e}") from e

        await self._delay(*self.config.settle_delay)
        return response

    async def scroll_down(self, count: int = 3):
        """Scroll in smooth steps of 70% viewport height to trigger lazy loading."""
        page = self.page
        logger.debug(f"[Navigator] Scrolling {count} times")
        for _ in range(count):
            await page.evaluate(
                "() => window.scrollBy({ top: window.innerHeight * 0.7, behavior: 'smooth' })"
            )
            await self._delay(*self.config.scroll_delay)

    async def close(self):
        self._page = None
        await self.browser.close()

    @staticmethod
    async def _delay(low: float, high: float):
        await asyncio.sleep(random.uniform(low, high))
