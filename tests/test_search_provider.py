from __future__ import annotations

import pytest
from fakes import FakeAdapter

from sidecar.tools.search_provider import SearchHit, dedupe_hits, load_adapters, search_all


def make_adapter() -> FakeAdapter:
    return FakeAdapter("loaded", [SearchHit(title="t", url="https://example.com")])


@pytest.mark.asyncio
async def test_search_all_pools_ranks_and_tags_sources():
    docs = FakeAdapter(
        "docs",
        [
            SearchHit(title="A", url="https://a.dev/x"),
            SearchHit(title="B", url="https://b.dev/y"),
        ],
    )
    forum = FakeAdapter("forum", [SearchHit(title="C", url="https://c.dev/z", relevance=0.99)])

    response = await search_all([docs, forum], "celery retry backoff", max_results=5)

    assert [hit.title for hit in response.results] == ["A", "C", "B"]
    assert [hit.source for hit in response.results] == ["docs", "forum", "docs"]
    assert response.results[0].relevance == pytest.approx(1.0)
    assert response.results[2].relevance == pytest.approx(0.95)
    assert response.sources_used == ["docs", "forum"]
    assert docs.queries == ["celery retry backoff"]


@pytest.mark.asyncio
async def test_failing_adapter_does_not_fail_batch():
    ok = FakeAdapter("ok", [SearchHit(title="A", url="https://a.dev/x")])
    broken = FakeAdapter("broken", error=TimeoutError())

    response = await search_all([ok, broken], "query", max_results=3)

    assert [hit.url for hit in response.results] == ["https://a.dev/x"]
    assert response.failures == {"broken": "TimeoutError"}
    assert response.sources_used == ["ok"]


@pytest.mark.asyncio
async def test_results_are_capped():
    hits = [SearchHit(title=str(i), url=f"https://site.dev/{i}") for i in range(10)]
    response = await search_all([FakeAdapter("many", hits)], "query", max_results=3)
    assert len(response.results) == 3


def test_dedupe_hits_keeps_best_per_url_and_drops_invalid():
    hits = [
        SearchHit(title="low", url="https://www.example.com/page/", relevance=0.3),
        SearchHit(title="high", url="https://example.com/page", relevance=0.8),
        SearchHit(title="bad", url="not a url", relevance=1.0),
    ]
    assert [hit.title for hit in dedupe_hits(hits)] == ["high"]


def test_load_adapters_from_import_path():
    adapters = load_adapters(["test_search_provider:make_adapter"])
    assert [adapter.name for adapter in adapters] == ["loaded"]


def test_load_adapters_rejects_malformed_path():
    with pytest.raises(ValueError):
        load_adapters(["no_factory_here"])
