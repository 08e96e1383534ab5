from __future__ import annotations

import asyncio
import importlib
from dataclasses import dataclass, field
from typing import Protocol

from loguru import logger

from sidecar.tools import web_utils


@dataclass(slots=True)
class SearchHit:
    """Normalized result from one specialist source."""

    title: str
    url: str
    snippet: str = ""
    source: str = ""
    relevance: float | None = None


class SearchAdapter(Protocol):
    name: str

    async def search(self, query: str, *, max_results: int) -> list[SearchHit]: ...


@dataclass
class SearchResponse:
    results: list[SearchHit]
    sources_used: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)


def _score(hit: SearchHit, rank: int) -> float:
    if hit.relevance is not None:
        return max(0.0, min(float(hit.relevance), 1.0))
    return max(0.1, 1.0 - rank * 0.05)


def dedupe_hits(hits: list[SearchHit]) -> list[SearchHit]:
    """Keep the best-scored hit per normalized URL, highest first."""
    by_url: dict[str, SearchHit] = {}
    for hit in hits:
        if not web_utils.is_valid_url(hit.url):
            continue
        key = web_utils.normalize_url(hit.url)
        prev = by_url.get(key)
        if prev is None or (hit.relevance or 0.0) > (prev.relevance or 0.0):
            by_url[key] = hit
    return sorted(by_url.values(), key=lambda hit: hit.relevance or 0.0, reverse=True)


async def search_all(
    adapters: list[SearchAdapter],
    query: str,
    *,
    max_results: int,
    max_parallel: int = 4,
) -> SearchResponse:
    """Fan a query out to every adapter; a failing source never fails the batch."""
    semaphore = asyncio.Semaphore(max(max_parallel, 1))

    async def run(adapter: SearchAdapter) -> list[SearchHit]:
        async with semaphore:
            return await adapter.search(query, max_results=max_results)

    raw = await asyncio.gather(*(run(adapter) for adapter in adapters), return_exceptions=True)

    response = SearchResponse(results=[])
    pooled: list[SearchHit] = []
    for adapter, item in zip(adapters, raw):
        if isinstance(item, BaseException):
            response.failures[adapter.name] = str(item) or type(item).__name__
            logger.warning(f"Search adapter {adapter.name} failed for '{query}': {item!r}")
            continue
        response.sources_used.append(adapter.name)
        for rank, hit in enumerate(item[:max_results]):
            pooled.append(
                SearchHit(
                    title=hit.title,
                    url=hit.url,
                    snippet=hit.snippet,
                    source=hit.source or adapter.name,
                    relevance=_score(hit, rank),
                )
            )
    response.results = dedupe_hits(pooled)[:max_results]
    return response


def load_adapters(paths: list[str]) -> list[SearchAdapter]:
    """Build adapters from ``module:factory`` import paths; each factory takes no arguments."""
    adapters: list[SearchAdapter] = []
    for path in paths:
        module_name, _, attr = path.partition(":")
        if not module_name or not attr:
            raise ValueError(f"adapter path must look like 'module:factory', got {path!r}")
        factory = getattr(importlib.import_module(module_name), attr)
        adapter = factory()
        logger.info(f"Loaded search adapter {adapter.name} from {path}")
        adapters.append(adapter)
    return adapters
