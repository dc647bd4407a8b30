import pytest
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from conftest import FakePage
from marrow import browser as browser_module
from marrow.browser import Navigator, StealthBrowser
from marrow.config import BrowserConfig
from marrow.exceptions import LaunchError, NavigationError


class RecordingPage(FakePage):
    def __init__(self, events, goto_error=None):
        super().__init__()
        self.events = events
        self.goto_error = goto_error
        self.default_navigation_timeout = None

    def set_default_navigation_timeout(self, timeout):
        self.default_navigation_timeout = timeout

    async def goto(self, url, **kwargs):
        self.events.append("goto")
        if self.goto_error:
            raise self.goto_error
        return await super().goto(url, **kwargs)


class FakeContext:
    def __init__(self, page, events):
        self.page = page
        self.events = events
        self.init_scripts = []

    async def add_init_script(self, script):
        self.events.append("init_script")
        self.init_scripts.append(script)

    async def new_page(self):
        self.events.append("new_page")
        return self.page

    async def storage_state(self):
        return {"cookies": [], "origins": []}


class FakeChromium:
    def __init__(self, page, events, launch_error=None):
        self.page = page
        self.events = events
        self.launch_error = launch_error
        self.launch_kwargs = None
        self.context_options = None
        self.context = None
        self.closed = 0

    async def launch(self, **kwargs):
        if self.launch_error:
            raise self.launch_error
        self.launch_kwargs = kwargs
        return self

    async def new_context(self, **options):
        self.context_options = options
        self.context = FakeContext(self.page, self.events)
        return self.context

    async def close(self):
        self.closed += 1


class FakePlaywright:
    def __init__(self, chromium):
        self.chromium = chromium
        self.stopped = 0

    async def stop(self):
        self.stopped += 1


class FakeStarter:
    def __init__(self, playwright):
        self.playwright = playwright

    async def start(self):
        return self.playwright


@pytest.fixture
def events():
    return []


@pytest.fixture
def fake_playwright(monkeypatch, events):
    """Patch playwright startup to hand out a scripted chromium."""
    chromium = FakeChromium(RecordingPage(events), events)
    playwright = FakePlaywright(chromium)
    monkeypatch.setattr(browser_module, "async_playwright", lambda: FakeStarter(playwright))
    return playwright


@pytest.fixture
def fast_config():
    return BrowserConfig(navigation_timeout_ms=1500, settle_delay=(0.001, 0.003), scroll_delay=(0.002, 0.004))


@pytest.mark.asyncio
async def test_new_page_applies_stealth_before_navigation(fake_playwright, events, fast_config):
    stealth = StealthBrowser(fast_config)
    navigator = Navigator(fast_config, browser=stealth)
    session = {"cookies": [{"name": "sid", "value": "1"}], "origins": []}

    page = await navigator.init(storage_state=session)
    await navigator.goto("https://example.com")
    await navigator.close()

    chromium = fake_playwright.chromium
    assert events == ["init_script", "new_page", "goto"]
    assert chromium.context.init_scripts == [fast_config.stealth.init_script()]
    assert chromium.context_options["storage_state"] == session
    assert chromium.context_options["user_agent"] == fast_config.stealth.user_agent
    assert chromium.launch_kwargs["args"] == fast_config.stealth.launch_args
    assert page.default_navigation_timeout == 1500


@pytest.mark.asyncio
async def test_new_page_without_session_omits_storage_state(fake_playwright, fast_config):
    stealth = StealthBrowser(fast_config)
    await stealth.launch()
    await stealth.new_page()
    await stealth.close()

    assert "storage_state" not in fake_playwright.chromium.context_options


@pytest.mark.asyncio
async def test_new_page_requires_launch(fast_config):
    with pytest.raises(LaunchError):
        await StealthBrowser(fast_config).new_page()


@pytest.mark.asyncio
async def test_launch_failure_releases_playwright(monkeypatch, events, fast_config):
    chromium = FakeChromium(RecordingPage(events), events, launch_error=PlaywrightError("Executable doesn't exist"))
    playwright = FakePlaywright(chromium)
    monkeypatch.setattr(browser_module, "async_playwright", lambda: FakeStarter(playwright))

    stealth = StealthBrowser(fast_config)
    with pytest.raises(LaunchError):
        await stealth.launch()

    assert playwright.stopped == 1
    assert stealth.playwright is None
    assert stealth.browser is None


@pytest.mark.asyncio
async def test_close_twice_is_safe(fake_playwright, fast_config):
    stealth = StealthBrowser(fast_config)
    await stealth.launch()

    await stealth.close()
    await stealth.close()

    assert fake_playwright.chromium.closed == 1
    assert fake_playwright.stopped == 1


@pytest.mark.asyncio
async def test_goto_timeout_becomes_navigation_error(monkeypatch, events, fast_config):
    page = RecordingPage(events, goto_error=PlaywrightTimeoutError("Timeout 1500ms exceeded."))
    playwright = FakePlaywright(FakeChromium(page, events))
    monkeypatch.setattr(browser_module, "async_playwright", lambda: FakeStarter(playwright))

    navigator = Navigator(fast_config)
    await navigator.init()
    with pytest.raises(NavigationError, match="Timed out after 1500ms"):
        await navigator.goto("https://slow.example.com")
    await navigator.close()

    assert playwright.stopped == 1


@pytest.mark.asyncio
async def test_delays_stay_in_configured_ranges(monkeypatch, fake_playwright, fast_config):
    drawn = []
    uniform = browser_module.random.uniform

    def recording_uniform(low, high):
        value = uniform(low, high)
        drawn.append((low, high, value))
        return value

    monkeypatch.setattr(browser_module.random, "uniform", recording_uniform)

    navigator = Navigator(fast_config)
    await navigator.init()
    await navigator.goto("https://example.com")
    await navigator.scroll_down(count=2)
    await navigator.close()

    assert [(low, high) for low, high, _ in drawn] == [
        fast_config.settle_delay,
        fast_config.scroll_delay,
        fast_config.scroll_delay,
    ]
    assert all(low <= value <= high for low, high, value in drawn)
