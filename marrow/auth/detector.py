"""
Heuristic detection of authentication walls.

Each signal source contributes a fixed weight; the summed weight, capped at
1.0, is the confidence. A result with ``required=False`` means "proceed", not
"the page is public".
"""

import logging
from typing import List, Optional
from urllib.parse import urlsplit

from playwright.async_api import Error as PlaywrightError

from ..models import AuthDetectionResult, AuthSignal

logger = logging.getLogger(__name__)


LOGIN_PATH_PATTERNS = ["/login", "/signin", "/auth", "/sso", "/oauth"]

DEFAULT_LOGIN_SELECTORS = [
    'input[type="password"]',
    'form[action*="login"]',
    'form[action*="signin"]',
    'button[type="submit"]:has-text("Log in")',
    'button[type="submit"]:has-text("Sign in")',
]

DEFAULT_AUTH_WALL_SELECTORS = [
    ".login-required",
    ".auth-gate",
    ".sign-in-prompt",
    "[data-testid='login-form']",
]

HTTP_STATUS_WEIGHTS = {401: 0.9, 403: 0.8}
LOGIN_REDIRECT_WEIGHT = 0.7
CROSS_DOMAIN_WEIGHT = 0.5
LOGIN_FORM_WEIGHT = 0.6
AUTH_WALL_WEIGHT = 0.5


class AuthDetector:
    """Scores a navigated page for signs that it requires a login."""

    def __init__(
        self,
        confidence_threshold: float = 0.7,
        login_form_selectors: Optional[List[str]] = None,
        auth_wall_selectors: Optional[List[str]] = None,
    ):
        self.confidence_threshold = confidence_threshold
        self.login_form_selectors = login_form_selectors or list(DEFAULT_LOGIN_SELECTORS)
        self.auth_wall_selectors = auth_wall_selectors or list(DEFAULT_AUTH_WALL_SELECTORS)

    @property
    def confidence_threshold(self) -> float:
        return self._threshold

    @confidence_threshold.setter
    def confidence_threshold(self, value: float):
        if not 0.0 <= value <= 1.0:
            raise ValueError("confidence_threshold must be within [0, 1]")
        self._threshold = value

    async def detect(self, page, target_url: str, response=None) -> AuthDetectionResult:
        signals: List[AuthSignal] = []
        redirect_chain: List[str] = []
        final_url = page.url

        if response is not None:
            signals.extend(self.check_http_status(response.status))
            redirect_chain = self._redirect_chain(response)

        signals.extend(self.check_url_divergence(target_url, final_url))
        signals.extend(await self.check_dom_signals(page))

        confidence = self.score(signals)
        result = AuthDetectionResult(
            required=confidence >= self.confidence_threshold,
            confidence=confidence,
            signals=signals,
            redirect_chain=redirect_chain,
            final_url=final_url,
        )
        if result.required:
            logger.info(f"[AuthDetector] Login wall on {final_url} (confidence {confidence:.2f})")
        return result

    def is_auth_required(self, result: AuthDetectionResult) -> bool:
        return result.required

    @staticmethod
    def score(signals: List[AuthSignal]) -> float:
        total = sum(max(s.weight, 0.0) for s in signals)
        return min(total, 1.0)

    @staticmethod
    def check_http_status(status: int) -> List[AuthSignal]:
        weight = HTTP_STATUS_WEIGHTS.get(status)
        if weight is None:
            return []
        label = "Unauthorized" if status == 401 else "Forbidden"
        return [AuthSignal(type="http_status", description=f"HTTP {status} {label}", weight=weight)]

    @staticmethod
    def check_url_divergence(target_url: str, final_url: str) -> List[AuthSignal]:
        signals = []
        final_path = urlsplit(final_url).path.lower()

        for pattern in LOGIN_PATH_PATTERNS:
            if pattern in final_path:
                signals.append(AuthSignal(
                    type="url_redirect",
                    description=f"Redirected to login page: {pattern}",
                    weight=LOGIN_REDIRECT_WEIGHT,
                ))
                break

        try:
            target_host = urlsplit(target_url).hostname
            final_host = urlsplit(final_url).hostname
        except ValueError:
            return signals

        if target_host and final_host and target_host != final_host:
            signals.append(AuthSignal(
                type="url_redirect",
                description=f"Cross-domain redirect: {target_host} -> {final_host}",
                weight=CROSS_DOMAIN_WEIGHT,
            ))
        return signals

    async def check_dom_signals(self, page) -> List[AuthSignal]:
        signals = []

        selector = await self._first_match(page, self.login_form_selectors)
        if selector:
            signals.append(AuthSignal(
                type="dom_element",
                description=f"Login form detected: {selector}",
                weight=LOGIN_FORM_WEIGHT,
            ))

        selector = await self._first_match(page, self.auth_wall_selectors)
        if selector:
            signals.append(AuthSignal(
                type="dom_element",
                description=f"Auth wall detected: {selector}",
                weight=AUTH_WALL_WEIGHT,
            ))
        return signals

    @staticmethod
    async def _first_match(page, selectors: List[str]) -> Optional[str]:
        for selector in selectors:
            try:
                if await page.query_selector(selector):
                    return selector
            except PlaywrightError as e:
                logger.debug(f"[AuthDetector] Selector probe failed for {selector}: {e}")
        return None

    @staticmethod
    def _redirect_chain(response) -> List[str]:
        chain = []
        current = response.request.redirected_from
        while current is not None:
            chain.insert(0, current.url)
            current = current.redirected_from
        return chain
