import asyncio
import time

import pytest

from conftest import FakePage
from marrow.auth.escalator import BrowserEscalator
from marrow.auth.vault import SessionVault
from marrow.config import AuthConfig


CAPTURED_STATE = {"cookies": [{"name": "li_at", "value": "token"}], "origins": []}


class FakeBrowser:
    def __init__(self, page: FakePage):
        self.page = page
        self.storage_state_arg = None
        self.closed = 0

    async def launch(self):
        return self

    async def new_page(self, storage_state=None):
        self.storage_state_arg = storage_state
        return self.page

    async def storage_state(self):
        return CAPTURED_STATE

    async def close(self):
        self.closed += 1


def _escalator(temp_dir, page, timeout=5.0):
    browser = FakeBrowser(page)
    escalator = BrowserEscalator(
        SessionVault(temp_dir / "sessions"),
        AuthConfig(session_dir=temp_dir / "sessions", escalation_timeout=timeout, poll_interval=0.05),
        browser_factory=lambda: browser,
    )
    return escalator, browser


@pytest.mark.asyncio
async def test_indicator_appearing_captures_session(temp_dir):
    page = FakePage(url="https://www.linkedin.com/login")
    escalator, browser = _escalator(temp_dir, page, timeout=5.0)

    async def log_in():
        await asyncio.sleep(0.2)
        page.url = "https://www.linkedin.com/feed/"
        page.texts[".avatar"] = ""

    start = time.monotonic()
    result, _ = await asyncio.gather(escalator.escalate("https://www.linkedin.com/login"), log_in())

    assert result.success is True
    assert result.session_captured is True
    assert time.monotonic() - start < 5.0
    assert escalator.vault.load("www.linkedin.com") == CAPTURED_STATE
    assert browser.closed == 1


@pytest.mark.asyncio
async def test_timeout_is_never_early(temp_dir):
    page = FakePage(url="https://example.com/login")
    escalator, browser = _escalator(temp_dir, page, timeout=0.3)

    start = time.monotonic()
    result = await escalator.escalate("https://example.com/login")

    assert time.monotonic() - start >= 0.3
    assert result.success is False
    assert "timeout" in result.error.lower()
    assert not escalator.vault.exists("example.com")
    assert browser.closed == 1


@pytest.mark.asyncio
async def test_closed_page_fails(temp_dir):
    page = FakePage(url="https://example.com/login")
    page.closed = True
    escalator, browser = _escalator(temp_dir, page)

    result = await escalator.escalate("example.com/login")

    assert result.success is False
    assert "closed" in result.error
    assert browser.closed == 1


@pytest.mark.asyncio
async def test_valid_session_short_circuits(temp_dir):
    page = FakePage(url="https://example.com/home", texts={'a[href*="/logout"]': ""})
    escalator, browser = _escalator(temp_dir, page)
    escalator.vault.save("example.com", {"cookies": [], "origins": []})

    result = await escalator.escalate_with_session("https://example.com/home")

    assert result.success is True
    assert result.session_captured is False
    assert browser.storage_state_arg == {"cookies": [], "origins": []}


@pytest.mark.asyncio
async def test_indicator_on_login_url_still_counts(temp_dir):
    page = FakePage(url="https://example.com/login")
    escalator, browser = _escalator(temp_dir, page, timeout=5.0)

    async def log_in():
        await asyncio.sleep(0.1)
        page.texts['[data-testid="user-menu"]'] = ""

    result, _ = await asyncio.gather(escalator.escalate("https://example.com/login"), log_in())

    assert page.url == "https://example.com/login"
    assert result.success is True
    assert result.session_captured is True
    assert escalator.vault.exists("example.com")
