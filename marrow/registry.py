"""
Registry: durable store of page maps and usage analytics.

Backed by SQLite. The UNIQUE constraint on ``page_maps.url`` is what makes
``save_map`` insert-if-absent: concurrent writers for the same normalized URL
race at the storage layer, the first committed insert wins and every other
writer gets ``status="exists"``. Stored maps are never overwritten.

Blocking sqlite calls run in worker threads, one short-lived connection per
operation, so the event loop is never blocked.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from .exceptions import RegistryError
from .models import (
    AnalyticsCounter,
    Element,
    Manifest,
    ManifestElement,
    ManifestPage,
    NormalizedUrl,
    PageStructure,
    RegistryStats,
    SaveResult,
)
from .urls import normalize_url

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS page_maps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL UNIQUE,
    domain TEXT NOT NULL,
    page_type TEXT NOT NULL,
    elements TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_validated TEXT,
    validation_status TEXT,
    usage_count INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_page_maps_domain ON page_maps(domain);
CREATE INDEX IF NOT EXISTS idx_page_maps_usage ON page_maps(usage_count);

CREATE TABLE IF NOT EXISTS analytics (
    metric TEXT PRIMARY KEY,
    value INTEGER NOT NULL,
    timestamp TEXT NOT NULL
);
"""

TOP_DOMAINS = 10


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Registry:
    """Keyed storage of page maps by normalized URL."""

    def __init__(self, path: Union[str, Path], domain_fallback: bool = False):
        self.path = Path(path)
        self.domain_fallback = domain_fallback
        self._init_db()

    @staticmethod
    def normalize(value: str) -> NormalizedUrl:
        return normalize_url(value)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with closing(self._connect()) as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(SCHEMA)
                conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise RegistryError(f"Cannot open registry at {self.path}: {e}") from e

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise RegistryError(f"Registry operation {fn.__name__} failed: {e}") from e

    # ------------------------------------------------------------------ reads

    async def get_map(self, url_pattern: str) -> Optional[PageStructure]:
        """
        Exact lookup on the normalized URL.

        With ``domain_fallback`` enabled, a miss falls back to the most used
        map of the same domain.
        """
        target = normalize_url(url_pattern)
        return await self._run(self._get_map, target, self.domain_fallback)

    async def get_element(self, url_pattern: str, name: str) -> Optional[Element]:
        """Named element from the exact map, else from the domain's most used map."""
        target = normalize_url(url_pattern)
        page = await self._run(self._get_map, target, True)
        if page is None:
            return None
        return page.element(name)

    async def get_manifest(self, domain: str) -> Manifest:
        normalized = normalize_url(domain).domain
        rows = await self._run(self._rows_for_domain, normalized)
        pages = []
        for row in rows:
            page = self._to_page(row)
            pages.append(ManifestPage(
                url=page.url,
                page_type=page.page_type,
                elements=[ManifestElement(name=el.name, description=el.description) for el in page.elements],
            ))
        return Manifest(domain=normalized, pages=pages)

    async def list_maps_by_domain(self, domain: str) -> Dict:
        normalized = normalize_url(domain).domain
        rows = await self._run(self._rows_for_domain, normalized)
        urls = sorted(row["url"] for row in rows)
        return {"domain": normalized, "count": len(urls), "urls": urls}

    async def get_stats(self) -> RegistryStats:
        return await self._run(self._get_stats)

    async def get_counter(self, metric: str) -> Optional[AnalyticsCounter]:
        return await self._run(self._get_counter, metric)

    # ----------------------------------------------------------------- writes

    async def save_map(self, page: PageStructure) -> SaveResult:
        """Insert the map unless one already exists for its normalized URL."""
        result = await self._run(self._save_map, page)
        if result.status == "created":
            logger.info(f"[Registry] Stored map #{result.id} for {normalize_url(page.url).url}")
        else:
            logger.info(f"[Registry] Map already exists for {normalize_url(page.url).url} (#{result.id})")
        return result

    async def track_view(self, url_pattern: str) -> bool:
        """Count one cache hit. Returns False when no map matches."""
        target = normalize_url(url_pattern)
        return await self._run(self._track_view, target.url)

    # ------------------------------------------------------------ sync bodies

    def _get_map(self, target: NormalizedUrl, fallback: bool) -> Optional[PageStructure]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM page_maps WHERE url = ?", (target.url,)).fetchone()
            if row is None and fallback:
                row = conn.execute(
                    "SELECT * FROM page_maps WHERE domain = ? ORDER BY usage_count DESC, id ASC LIMIT 1",
                    (target.domain,),
                ).fetchone()
        return self._to_page(row) if row is not None else None

    def _rows_for_domain(self, domain: str) -> List[sqlite3.Row]:
        with closing(self._connect()) as conn:
            return conn.execute(
                "SELECT * FROM page_maps WHERE domain = ? ORDER BY url", (domain,)
            ).fetchall()

    def _save_map(self, page: PageStructure) -> SaveResult:
        url = normalize_url(page.url).url
        domain = normalize_url(page.domain).domain
        elements = json.dumps([el.model_dump(mode="json") for el in page.elements])

        with closing(self._connect()) as conn:
            with conn:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO page_maps
                        (url, domain, page_type, elements, created_at, validation_status, usage_count)
                    VALUES (?, ?, ?, ?, ?, ?, 0)
                    """,
                    (url, domain, page.page_type, elements, page.created_at.isoformat(), page.validation_status),
                )
                if cursor.rowcount == 1:
                    self._increment(conn, "total_maps")
                    return SaveResult(status="created", id=cursor.lastrowid)

                row = conn.execute("SELECT id FROM page_maps WHERE url = ?", (url,)).fetchone()
                return SaveResult(status="exists", id=row["id"])

    def _track_view(self, url: str) -> bool:
        with closing(self._connect()) as conn:
            with conn:
                cursor = conn.execute(
                    "UPDATE page_maps SET usage_count = usage_count + 1 WHERE url = ?", (url,)
                )
                if cursor.rowcount == 0:
                    return False
                self._increment(conn, "total_requests")
                return True

    def _get_stats(self) -> RegistryStats:
        with closing(self._connect()) as conn:
            total = conn.execute("SELECT COUNT(*) FROM page_maps").fetchone()[0]
            top = conn.execute(
                "SELECT domain, COUNT(*) AS maps FROM page_maps GROUP BY domain ORDER BY maps DESC, domain ASC LIMIT ?",
                (TOP_DOMAINS,),
            ).fetchall()
            requests = conn.execute(
                "SELECT value FROM analytics WHERE metric = 'total_requests'"
            ).fetchone()
        return RegistryStats(
            total_maps=total,
            total_requests=requests["value"] if requests else 0,
            top_domains=[row["domain"] for row in top],
        )

    def _get_counter(self, metric: str) -> Optional[AnalyticsCounter]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM analytics WHERE metric = ?", (metric,)).fetchone()
        if row is None:
            return None
        return AnalyticsCounter(metric=row["metric"], value=row["value"], timestamp=row["timestamp"])

    @staticmethod
    def _increment(conn: sqlite3.Connection, metric: str):
        conn.execute(
            """
            INSERT INTO analytics (metric, value, timestamp) VALUES (?, 1, ?)
            ON CONFLICT(metric) DO UPDATE SET value = value + 1, timestamp = excluded.timestamp
            """,
            (metric, _now()),
        )

    @staticmethod
    def _to_page(row: sqlite3.Row) -> PageStructure:
        try:
            return PageStructure(
                id=row["id"],
                domain=row["domain"],
                url=row["url"],
                page_type=row["page_type"],
                elements=json.loads(row["elements"]),
                created_at=row["created_at"],
                usage_count=row["usage_count"],
                validation_status=row["validation_status"],
                last_validated=row["last_validated"],
            )
        except (ValueError, ValidationError) as e:
            raise RegistryError(f"Stored map #{row['id']} is corrupt: {e}") from e
