"""
Shared fakes: a scripted Playwright page, a navigator around it, and canned
maps. No test launches a real browser or reaches the network.
"""

import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from playwright.async_api import Error as PlaywrightError

from marrow.models import ExtractDebug, ExtractionResult, Element, PageSnapshot, PageStructure, SnapshotDebug
from marrow.registry import Registry
from marrow.urls import normalize_url


SAMPLE_HTML = """
<html>
  <head><title>Hacker News</title><script>var x = 1;</script><style>.a{}</style></head>
  <body>
    <header id="top"><nav role="navigation"><a href="/newest" id="nav-new">new</a> <a href="/front">past</a></nav></header>
    <main>
      <h1>Top stories</h1>
      <table class="itemlist">
        <tr class="athing" data-testid="story"><td><a href="https://a.example">First</a></td></tr>
        <tr class="athing" data-testid="story"><td><a href="https://b.example">Second</a></td></tr>
      </table>
      <form action="/search"><input name="q" type="text"><button type="submit">Go</button></form>
    </main>
    <footer>bye</footer>
  </body>
</html>
"""


class FakeLocator:
    def __init__(self, text: Optional[str] = None, error: Optional[str] = None):
        self.text = text
        self.error = error

    @property
    def first(self):
        return self

    async def count(self) -> int:
        if self.error:
            raise PlaywrightError(self.error)
        return 0 if self.text is None else 1

    async def inner_text(self, timeout=None) -> str:
        return self.text


class FakePage:
    """Answers locator/query_selector calls from a selector -> text table."""

    def __init__(
        self,
        url: str = "https://news.ycombinator.com/",
        html: str = SAMPLE_HTML,
        texts: Optional[Dict[str, str]] = None,
        broken: Optional[List[str]] = None,
    ):
        self.url = url
        self.html = html
        self.texts = dict(texts or {})
        self.broken = list(broken or [])
        self.closed = False
        self.visited: List[str] = []

    def locator(self, selector: str) -> FakeLocator:
        if selector in self.broken:
            return FakeLocator(error=f"Unexpected token in selector {selector}")
        return FakeLocator(self.texts.get(selector))

    async def query_selector(self, selector: str):
        if self.closed:
            raise PlaywrightError("Target page, context or browser has been closed")
        return object() if selector in self.texts else None

    async def content(self) -> str:
        return self.html

    async def goto(self, url, **kwargs):
        self.visited.append(url)
        return None

    async def evaluate(self, script):
        return None

    def is_closed(self) -> bool:
        return self.closed


class FakeRequest:
    def __init__(self, url: str, redirected_from=None):
        self.url = url
        self.redirected_from = redirected_from


class FakeResponse:
    def __init__(self, status: int = 200, request: Optional[FakeRequest] = None):
        self.status = status
        self.request = request or FakeRequest("https://news.ycombinator.com/")


class FakeNavigator:
    """Stands in for marrow.browser.Navigator around a FakePage."""

    def __init__(self, page: FakePage, response: Optional[FakeResponse] = None):
        self._page = page
        self.response = response or FakeResponse()
        self.storage_state = None
        self.closed = 0
        self.scrolled = 0

    @property
    def page(self):
        return self._page

    async def init(self, storage_state=None):
        self.storage_state = storage_state
        return self._page

    async def goto(self, url):
        self._page.visited.append(url)
        return self.response

    async def scroll_down(self, count=3):
        self.scrolled += count

    async def close(self):
        self.closed += 1


class FakeCartographer:
    """Snapshot and extraction without a browser; counts calls."""

    def __init__(self, texts: Optional[Dict[str, str]] = None):
        self.texts = dict(texts or {})
        self.snap_calls = 0
        self.extract_calls: List[List[str]] = []

    async def snap_detailed(self, url):
        self.snap_calls += 1
        snapshot = PageSnapshot(html=SAMPLE_HTML, structure_summary="{}")
        debug = SnapshotDebug(timings_ms={"total": 1}, final_url=url, html_length=len(SAMPLE_HTML))
        return snapshot, debug

    async def snap(self, url):
        snapshot, _ = await self.snap_detailed(url)
        return snapshot

    async def extract_detailed(self, url, selectors):
        self.extract_calls.append(list(selectors))
        data = {s: self.texts.get(s) for s in selectors}
        return ExtractionResult(
            data=data,
            debug=ExtractDebug(timings_ms={"total": 1}, final_url=url, selectors=[]),
        )

    async def extract(self, url, selectors):
        result = await self.extract_detailed(url, selectors)
        return result.data


class FakeMapper:
    """Returns a fixed map for whatever URL it is asked about."""

    def __init__(self, elements: Optional[List[Element]] = None, page_type: str = "news_list"):
        self.elements = elements or sample_elements()
        self.page_type = page_type
        self.calls = 0

    async def analyze(self, url, snapshot, timeout=None):
        self.calls += 1
        target = normalize_url(url)
        return PageStructure(domain=target.domain, url=target.url, page_type=self.page_type, elements=self.elements)


def sample_elements() -> List[Element]:
    return [
        Element.model_validate({
            "name": "story_list",
            "description": "Table holding the stories",
            "strategies": [
                {"type": "selector", "value": "table.itemlist"},
                {"type": "xpath", "value": "//table[@class='itemlist']"},
            ],
            "confidence_score": 0.9,
        }),
        Element.model_validate({
            "name": "nav_new",
            "description": "Link to the newest stories",
            "strategies": [
                {"type": "text_content", "value": "new"},
                {"type": "selector", "value": "#nav-new"},
            ],
            "confidence_score": 0.8,
        }),
    ]


def sample_page(url: str = "news.ycombinator.com", elements: Optional[List[Element]] = None) -> PageStructure:
    target = normalize_url(url)
    return PageStructure(
        domain=target.domain,
        url=target.url,
        page_type="news_list",
        elements=elements or sample_elements(),
    )


@pytest.fixture
def temp_dir():
    """Create a temporary directory for registry and session files."""
    path = Path(tempfile.mkdtemp())
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def registry(temp_dir):
    """Empty registry backed by a temporary SQLite file."""
    return Registry(temp_dir / "registry.db")
