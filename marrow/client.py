"""
MarrowClient: cache-first page maps and map-driven extraction.

    async with MarrowClient(config) as marrow:
        page = await marrow.get_map("news.ycombinator.com")
        data = await marrow.extract_elements("news.ycombinator.com", ["nav_new"])
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Set, Tuple

from .auth.detector import AuthDetector
from .auth.vault import SessionVault
from .cartographer import Cartographer
from .config import MarrowConfig
from .exceptions import MapNotFound
from .mapper import Mapper
from .models import (
    Element,
    ExtractionResult,
    Manifest,
    MapDebug,
    MapResult,
    PageStructure,
    RegistryStats,
    RetryDebug,
    RetryResult,
    SelectorCheck,
    ValidationReport,
)
from .providers import build_provider
from .registry import Registry
from .urls import normalize_url

logger = logging.getLogger(__name__)


def _ms_since(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _unique(values) -> List[str]:
    seen: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


class MarrowClient:
    """
    Single entry point over registry, cartographer and mapper.

    Components can be injected; any that are missing are built from
    ``config``. Building the mapper needs a provider API key unless the
    provider is ``ollama``.
    """

    def __init__(
        self,
        config: Optional[MarrowConfig] = None,
        registry: Optional[Registry] = None,
        mapper: Optional[Mapper] = None,
        cartographer: Optional[Cartographer] = None,
        vault: Optional[SessionVault] = None,
        discovery_timeout: Optional[float] = None,
    ):
        self.config = config or MarrowConfig()
        self.vault = vault or SessionVault(self.config.auth.session_dir)
        self.registry = registry or Registry(
            self.config.registry.path,
            domain_fallback=self.config.registry.domain_fallback,
        )
        self.cartographer = cartographer or Cartographer(
            self.config.browser,
            vault=self.vault,
            detector=AuthDetector(self.config.auth.confidence_threshold),
            fail_on_auth_wall=self.config.auth.fail_on_auth_wall,
        )
        self._mapper = mapper
        self.discovery_timeout = discovery_timeout
        self._background: Set[asyncio.Task] = set()

    @property
    def mapper(self) -> Mapper:
        if self._mapper is None:
            self._mapper = Mapper(build_provider(self.config.provider))
        return self._mapper

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.drain()

    # ------------------------------------------------------------------ maps

    async def get_map(self, url_pattern: str) -> PageStructure:
        result = await self.get_map_detailed(url_pattern)
        return result.map

    async def get_map_detailed(self, url_pattern: str) -> MapResult:
        """
        Return the stored map for ``url_pattern``, mapping the page on a miss.

        A hit never touches the browser or the model; its view is counted in
        the background.
        """
        start = time.monotonic()
        result = await self.lookup_map_detailed(url_pattern)
        if result.map is not None:
            return result

        logger.info(f"[Marrow] Cache miss for {normalize_url(url_pattern).url}, mapping live")
        live = await self._map_live(url_pattern, forced=False)
        live.debug.timings_ms["query"] = result.debug.timings_ms["query"]
        live.debug.timings_ms["total"] = _ms_since(start)
        return live

    async def lookup_map(self, url_pattern: str) -> Optional[PageStructure]:
        result = await self.lookup_map_detailed(url_pattern)
        return result.map

    async def lookup_map_detailed(self, url_pattern: str) -> MapResult:
        """Registry lookup only; ``map`` is None on a miss."""
        start = time.monotonic()
        target = normalize_url(url_pattern)
        cached = await self.registry.get_map(target.url)
        query_ms = _ms_since(start)

        if cached is not None:
            logger.info(f"[Marrow] Cache hit for {target.url}")
            self.track_view_in_background(cached.url)

        return MapResult(
            map=cached,
            debug=MapDebug(cache_hit=cached is not None, timings_ms={"query": query_ms, "total": _ms_since(start)}),
        )

    async def map_page_fresh(self, url_pattern: str) -> PageStructure:
        result = await self.map_page_fresh_detailed(url_pattern)
        return result.map

    async def map_page_fresh_detailed(self, url_pattern: str) -> MapResult:
        """Always rediscover. The registry keeps an existing map if there is one."""
        start = time.monotonic()
        result = await self._map_live(url_pattern, forced=True)
        result.debug.timings_ms["total"] = _ms_since(start)
        return result

    async def _map_live(self, url_pattern: str, forced: bool) -> MapResult:
        timings: Dict[str, int] = {}

        t = time.monotonic()
        snapshot, snapshot_debug = await self.cartographer.snap_detailed(url_pattern)
        timings["snapshot"] = _ms_since(t)

        t = time.monotonic()
        page = await self.mapper.analyze(url_pattern, snapshot, timeout=self.discovery_timeout)
        timings["model"] = _ms_since(t)

        t = time.monotonic()
        saved = await self.registry.save_map(page)
        timings["save"] = _ms_since(t)

        if saved.status == "exists":
            # First writer wins; hand back what is actually stored.
            stored = await self.registry.get_map(page.url)
            page = stored if stored is not None else page.model_copy(update={"id": saved.id})
        else:
            page = page.model_copy(update={"id": saved.id})

        return MapResult(
            map=page,
            debug=MapDebug(
                cache_hit=False,
                forced_refresh=forced,
                timings_ms=timings,
                snapshot=snapshot_debug,
                save=saved,
            ),
        )

    async def get_element(self, url_pattern: str, name: str) -> Optional[Element]:
        return await self.registry.get_element(url_pattern, name)

    async def get_manifest(self, domain: str) -> Manifest:
        return await self.registry.get_manifest(domain)

    async def get_stats(self) -> RegistryStats:
        return await self.registry.get_stats()

    # ------------------------------------------------------------- analytics

    def track_view_in_background(self, url: str) -> asyncio.Task:
        """Count a view without blocking the caller. Failures are logged and dropped."""
        task = asyncio.create_task(self._track_view(url))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _track_view(self, url: str):
        try:
            await self.registry.track_view(url)
        except Exception as e:
            logger.warning(f"[Marrow] Failed to track view for {url}: {e}")

    async def drain(self):
        """Wait for outstanding background tasks."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------ extraction

    async def extract_content(self, url: str, selectors: List[str]) -> Dict[str, Optional[str]]:
        return await self.cartographer.extract(url, selectors)

    async def extract_content_detailed(self, url: str, selectors: List[str]) -> ExtractionResult:
        return await self.cartographer.extract_detailed(url, selectors)

    async def validate_selectors(self, url: str, selectors: List[str]) -> ValidationReport:
        data = await self.cartographer.extract(url, selectors)
        results = [
            SelectorCheck(selector=s, found=data.get(s) is not None, value=data.get(s))
            for s in selectors
        ]
        return ValidationReport(valid=all(r.found for r in results), results=results)

    async def extract_with_retry(
        self,
        url: str,
        selectors: List[str],
        max_attempts: int = 1,
        use_map_selectors: bool = False,
        debug: bool = False,
    ) -> RetryResult:
        """
        Extract raw selectors, retrying while any comes back empty.

        With ``use_map_selectors`` the locators of the stored map (if any)
        are appended once as fallbacks after the first incomplete attempt.
        """
        plan = _unique(selectors)
        fallback: List[str] = []
        if use_map_selectors:
            page = await self.registry.get_map(url)
            if page is not None:
                fallback = _unique(loc for el in page.elements for loc in el.locators())
        return await self._extract_plan(url, plan, fallback, max_attempts, debug)

    async def extract_elements(
        self,
        url: str,
        element_names: List[str],
        max_attempts: int = 1,
        debug: bool = False,
        map_on_miss: bool = True,
    ) -> RetryResult:
        """
        Extract named elements of the stored map, keyed by element name.

        Each element's strategies are tried in stability order; the first
        non-empty value wins. Retries re-run the same plan; locators of other
        elements are never added. A page without a map is mapped first unless
        ``map_on_miss`` is False, in which case MapNotFound is raised. Raises
        ValueError when none of ``element_names`` are in the map.
        """
        page = await (self.get_map(url) if map_on_miss else self.lookup_map(url))
        if page is None:
            raise MapNotFound(f"No map for {url}")

        wanted = [el for el in page.elements if el.name in element_names]
        if not wanted:
            raise ValueError(f"None of {', '.join(element_names)} exist in the map for {page.url}")

        element_plan = [(el.name, el.locators()) for el in wanted]
        plan = _unique(loc for _, locs in element_plan for loc in locs)

        result = await self._extract_plan(url, plan, [], max_attempts, debug)
        result.data = self._by_element(element_plan, result.data)
        if result.debug is not None:
            result.debug.element_names = list(element_names)
        return result

    async def _extract_plan(
        self,
        url: str,
        plan: List[str],
        fallback: List[str],
        max_attempts: int,
        debug: bool,
    ) -> RetryResult:
        if not plan:
            raise ValueError("No selectors available for extraction")

        max_attempts = max(1, int(max_attempts))
        fallback = [s for s in fallback if s not in plan]
        fallback_applied = False
        attempt = 0
        data: Dict[str, Optional[str]] = {}
        extract_debug = None

        logger.info(f"[Marrow] Extracting {len(plan)} selectors from {url}")
        while attempt < max_attempts:
            attempt += 1
            result = await self.cartographer.extract_detailed(url, plan)
            data, extract_debug = result.data, result.debug

            missing = [s for s, v in data.items() if v is None]
            if not missing:
                break
            logger.debug(f"[Marrow] Attempt {attempt}/{max_attempts}: {len(missing)} selectors empty")

            if not fallback_applied and fallback:
                plan = plan + fallback
                fallback_applied = True

        return RetryResult(
            data=data,
            debug=RetryDebug(
                attempts=attempt,
                selectors=plan,
                fallback_applied=fallback_applied,
                fallback_selector_count=len(fallback),
                extract=extract_debug,
            ) if debug else None,
        )

    @staticmethod
    def _by_element(element_plan: List[Tuple[str, List[str]]], data: Dict[str, Optional[str]]) -> Dict[str, Optional[str]]:
        resolved: Dict[str, Optional[str]] = {}
        for name, locators in element_plan:
            resolved[name] = next((data[loc] for loc in locators if data.get(loc) is not None), None)
        return resolved
