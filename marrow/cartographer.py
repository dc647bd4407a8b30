"""
Page capture and selector-based extraction.

Every call owns one browser from launch to close; the browser is released on
every path, including errors raised mid-extraction.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from playwright.async_api import Error as PlaywrightError

from .auth.detector import AuthDetector
from .auth.vault import SessionVault, session_domain
from .browser import Navigator
from .config import BrowserConfig
from .exceptions import AuthenticationRequired
from .extractor import ContextExtractor, structure_counts, truncate_html
from .models import (
    ExtractDebug,
    ExtractionResult,
    PageSnapshot,
    SelectorResult,
    SnapshotDebug,
)
from .urls import to_full_url

logger = logging.getLogger(__name__)


def _ms_since(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class Cartographer:
    """Turns a URL into a snapshot, or a set of selectors into text."""

    def __init__(
        self,
        config: Optional[BrowserConfig] = None,
        vault: Optional[SessionVault] = None,
        detector: Optional[AuthDetector] = None,
        fail_on_auth_wall: bool = False,
        scrolls: int = 0,
        extract_timeout_ms: int = 5000,
        navigator_factory: Optional[Callable[[], Navigator]] = None,
    ):
        self.config = config or BrowserConfig()
        self.vault = vault
        self.detector = detector
        self.fail_on_auth_wall = fail_on_auth_wall
        self.scrolls = scrolls
        self.extract_timeout_ms = extract_timeout_ms
        self.extractor = ContextExtractor()
        self._navigator_factory = navigator_factory or (lambda: Navigator(self.config))

    async def snap(self, url: str) -> PageSnapshot:
        snapshot, _ = await self.snap_detailed(url)
        return snapshot

    async def snap_detailed(self, url: str) -> Tuple[PageSnapshot, SnapshotDebug]:
        url = to_full_url(url)
        navigator = self._navigator_factory()
        timings = {}
        start = time.monotonic()

        try:
            t = time.monotonic()
            await navigator.init(storage_state=self._stored_session(url))
            timings["init"] = _ms_since(t)

            t = time.monotonic()
            response = await navigator.goto(url)
            timings["goto"] = _ms_since(t)

            auth = None
            if self.detector is not None:
                auth = await self.detector.detect(navigator.page, url, response)
                if auth.required and self.fail_on_auth_wall:
                    raise AuthenticationRequired(
                        f"Login required for {url} (confidence {auth.confidence:.2f})",
                        detection=auth,
                    )

            if self.scrolls:
                await navigator.scroll_down(self.scrolls)

            t = time.monotonic()
            html = await self.extractor.get_clean_html(navigator.page)
            timings["html"] = _ms_since(t)

            t = time.monotonic()
            summary = await self.extractor.get_structure_summary(navigator.page)
            timings["structure"] = _ms_since(t)
            timings["total"] = _ms_since(start)

            snapshot = PageSnapshot(html=truncate_html(html), structure_summary=summary)
            debug = SnapshotDebug(
                timings_ms=timings,
                final_url=navigator.page.url or url,
                html_length=len(html),
                structure_counts=structure_counts(html),
                auth=auth,
            )
            logger.info(f"[Cartographer] Captured {url} ({len(html)} chars, {timings['total']}ms)")
            return snapshot, debug
        finally:
            await navigator.close()

    async def extract(self, url: str, selectors: List[str]) -> Dict[str, Optional[str]]:
        result = await self.extract_detailed(url, selectors)
        return result.data

    async def extract_detailed(self, url: str, selectors: List[str]) -> ExtractionResult:
        """
        Navigate once and read each selector independently.

        A selector that is missing, invalid or times out yields ``None``; it
        never aborts the rest of the batch.
        """
        url = to_full_url(url)
        navigator = self._navigator_factory()
        timings = {}
        start = time.monotonic()

        try:
            t = time.monotonic()
            await navigator.init(storage_state=self._stored_session(url))
            timings["init"] = _ms_since(t)

            t = time.monotonic()
            await navigator.goto(url)
            timings["goto"] = _ms_since(t)

            page = navigator.page
            data: Dict[str, Optional[str]] = {}
            report: List[SelectorResult] = []

            t = time.monotonic()
            for selector in selectors:
                try:
                    content = await self._read_selector(page, selector)
                    data[selector] = content
                    report.append(SelectorResult(
                        selector=selector,
                        found=content is not None,
                        text_length=len(content) if content else 0,
                    ))
                except PlaywrightError as e:
                    logger.warning(f"[Cartographer] Failed to extract selector {selector}: {e}")
                    data[selector] = None
                    report.append(SelectorResult(selector=selector, found=False, error=str(e)))
            timings["extract"] = _ms_since(t)
            timings["total"] = _ms_since(start)

            return ExtractionResult(
                data=data,
                debug=ExtractDebug(timings_ms=timings, final_url=page.url or url, selectors=report),
            )
        finally:
            await navigator.close()

    async def _read_selector(self, page, selector: str) -> Optional[str]:
        locator = page.locator(selector).first
        if await locator.count() == 0:
            return None
        text = await locator.inner_text(timeout=self.extract_timeout_ms)
        return text.strip()

    def _stored_session(self, url: str):
        if self.vault is None:
            return None
        domain = session_domain(url)
        if not self.vault.exists(domain):
            return None
        logger.debug(f"[Cartographer] Replaying stored session for {domain}")
        return self.vault.load(domain)
