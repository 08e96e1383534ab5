from __future__ import annotations

import asyncio
import time
from typing import Callable

from loguru import logger

from sidecar.config import Settings, settings as default_settings
from sidecar.models.research import UrlCacheEntry
from sidecar.rules import URL_TTL_RULES, first_match
from sidecar.services.database import ResearchDatabase
from sidecar.tools.content_extractor import ContentExtractor, ExtractedPage
from sidecar.tools.web_utils import extract_domain, normalize_url


class UrlCache:
    """Read-through page cache keyed by normalized URL with per-domain TTLs."""

    def __init__(
        self,
        database: ResearchDatabase,
        *,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.database = database
        self.settings = settings or default_settings
        self.clock = clock
        self._inflight: dict[str, asyncio.Task[UrlCacheEntry]] = {}

    def ttl_seconds(self, url: str) -> float:
        found = first_match(URL_TTL_RULES, extract_domain(url))
        ttl_class = found[0].name if found else "default"
        hours = {
            "docs": self.settings.url_cache_docs_ttl_hours,
            "reference": self.settings.url_cache_reference_ttl_hours,
            "news": self.settings.url_cache_news_ttl_hours,
        }.get(ttl_class, self.settings.url_cache_default_ttl_hours)
        return float(hours) * 3600.0

    async def get(self, url: str) -> UrlCacheEntry | None:
        key = normalize_url(url)
        entry = await self.database.get_cached_page(key)
        if entry is None:
            return None
        if entry.expires_at <= self.clock():
            await self.database.delete_cached_page(key)
            logger.debug(f"URL cache expired: {key}")
            return None
        await self.database.bump_cache_hit(key)
        entry.hit_count += 1
        return entry

    async def put(self, url: str, page: ExtractedPage) -> UrlCacheEntry:
        now = self.clock()
        entry = UrlCacheEntry(
            normalized_url=normalize_url(url),
            url=url,
            title=page.title,
            content=page.content,
            content_length=len(page.content),
            scraped_at=now,
            expires_at=now + self.ttl_seconds(url),
        )
        await self.database.put_cached_page(entry)
        return entry

    async def fetch(self, url: str, extractor: ContentExtractor, *, timeout: float) -> UrlCacheEntry:
        """Return the cached page or extract it once, sharing concurrent misses."""
        cached = await self.get(url)
        if cached is not None:
            return cached

        key = normalize_url(url)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._extract_and_store(url, extractor, timeout))
            self._inflight[key] = task
            task.add_done_callback(lambda _: self._inflight.pop(key, None))
        return await asyncio.shield(task)

    async def _extract_and_store(self, url: str, extractor: ContentExtractor, timeout: float) -> UrlCacheEntry:
        page = await extractor.extract(url, timeout=timeout)
        return await self.put(url, page)

    async def evict_expired(self) -> int:
        return await self.database.delete_expired_pages(self.clock())

    async def stats(self) -> dict[str, int]:
        return await self.database.url_cache_stats()
