"""
Interactive login escalation.

Opens a visible browser on the target, waits for a human to log in, then
captures the browser state into the session vault. Flow:

    OPENED -> success indicator seen -> CAPTURED -> SAVED
    OPENED -> timeout / page closed  -> FAILED (nothing persisted)
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError

from ..browser import StealthBrowser
from ..config import AuthConfig, BrowserConfig
from ..exceptions import MarrowError
from ..models import EscalationResult
from ..urls import to_full_url
from .vault import SessionVault, session_domain

logger = logging.getLogger(__name__)


DEFAULT_SUCCESS_INDICATORS = [
    'button[aria-label*="profile"]',
    'img[alt*="avatar"]',
    '[data-testid="user-menu"]',
    ".user-profile",
    ".avatar",
    'a[href*="/logout"]',
    'a[href*="/signout"]',
]


class BrowserEscalator:
    """Human-in-the-loop login that refreshes a domain's stored session."""

    def __init__(
        self,
        vault: SessionVault,
        config: Optional[AuthConfig] = None,
        browser_config: Optional[BrowserConfig] = None,
        success_indicators: Optional[List[str]] = None,
        browser_factory: Optional[Callable[[], StealthBrowser]] = None,
    ):
        self.vault = vault
        self.config = config or AuthConfig()
        self.success_indicators = success_indicators or list(DEFAULT_SUCCESS_INDICATORS)
        self._browser_factory = browser_factory or (
            lambda: StealthBrowser(browser_config or BrowserConfig(), headless=False)
        )

    async def escalate(self, url: str) -> EscalationResult:
        """Open the page and wait for a fresh login."""
        return await self._run(url, storage_state=None, allow_short_circuit=False)

    async def escalate_with_session(
        self,
        url: str,
        existing_session: Optional[Dict[str, Any]] = None,
    ) -> EscalationResult:
        """Reuse a stored session when it is still valid, otherwise wait for re-login."""
        domain = session_domain(url)
        if existing_session is None:
            existing_session = self.vault.load(domain)
        return await self._run(url, storage_state=existing_session, allow_short_circuit=existing_session is not None)

    async def _run(self, url: str, storage_state, allow_short_circuit: bool) -> EscalationResult:
        domain = session_domain(url)
        browser = self._browser_factory()

        try:
            logger.info(f"[Escalation] Opening browser for login: {domain}")
            await browser.launch()
            page = await browser.new_page(storage_state=storage_state)
            await page.goto(to_full_url(url), wait_until="domcontentloaded")

            if allow_short_circuit and await self.has_success_indicator(page):
                logger.info(f"[Escalation] Session still valid for {domain}")
                return EscalationResult(success=True, domain=domain, session_captured=False)

            logger.info(f"[Escalation] Waiting for login completion (timeout {self.config.escalation_timeout:.0f}s)")
            outcome = await self.wait_for_login(page)

            if outcome != "captured":
                return EscalationResult(
                    success=False,
                    domain=domain,
                    session_captured=False,
                    error=self._failure_message(outcome),
                )

            logger.info("[Escalation] Login detected, capturing session...")
            state = await browser.storage_state()
            self.vault.save(domain, state)
            return EscalationResult(success=True, domain=domain, session_captured=True)

        except (MarrowError, PlaywrightError) as e:
            return EscalationResult(success=False, domain=domain, session_captured=False, error=str(e))
        finally:
            await browser.close()

    async def wait_for_login(self, page) -> str:
        """
        Poll the page until a login is observed.

        Returns ``"captured"``, ``"closed"`` or ``"timeout"``. A success
        indicator alone counts as a login, whether or not the page has left
        its login URL. A timeout is only reported once the full budget has
        elapsed.
        """
        timeout = self.config.escalation_timeout
        start = time.monotonic()

        while True:
            if page.is_closed():
                return "closed"

            try:
                found = await self.has_success_indicator(page)
            except PlaywrightError:
                return "closed"

            if found:
                return "captured"

            elapsed = time.monotonic() - start
            if elapsed >= timeout:
                return "timeout"
            await asyncio.sleep(min(self.config.poll_interval, timeout - elapsed))

    async def has_success_indicator(self, page) -> bool:
        for selector in self.success_indicators:
            try:
                if await page.query_selector(selector):
                    return True
            except PlaywrightError:
                if page.is_closed():
                    raise
                continue
        return False

    def _failure_message(self, outcome: str) -> str:
        if outcome == "closed":
            return "Login cancelled: browser page was closed"
        return f"Login timeout after {self.config.escalation_timeout:g}s"
