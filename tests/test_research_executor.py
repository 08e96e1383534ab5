import json

import pytest
from fakes import FakeAdapter, FakeExtractor, FakeOracle

from sidecar.agents.research_executor import ResearchError, ResearchExecutor, strip_years
from sidecar.llm_client import OracleError
from sidecar.models.research import ResearchFinding, ResearchTask, TaskStatus, TriggerSource
from sidecar.rules import infer_domain
from sidecar.services.dedup import DeduplicationEngine
from sidecar.tools.search_provider import SearchHit
from sidecar.tools.url_cache import UrlCache

VITE_URL = "https://vitejs.dev/config/server-options"
SO_URL = "https://stackoverflow.com/q/1"


def _task(query="vite hmr websocket behind proxy", context=None):
    return ResearchTask(
        id="t1",
        query=query,
        depth="quick",
        status=TaskStatus.RUNNING,
        trigger=TriggerSource.TOOL_OUTPUT,
        priority=7,
        created_at=0.0,
        context=context,
    )


def _adapters():
    primary = FakeAdapter(
        "docs",
        [
            SearchHit(title="Vite server options", url=VITE_URL, snippet="set hmr.clientPort", relevance=0.9),
            SearchHit(title="SO answer", url=SO_URL, snippet="use polling"),
        ],
    )
    duplicate = FakeAdapter(
        "mirror",
        [SearchHit(title="Mirror", url="https://www.vitejs.dev/config/server-options/", snippet="dup", relevance=0.5)],
    )
    broken = FakeAdapter("broken", error=RuntimeError("503"))
    return [primary, duplicate, broken]


def _executor(settings, clock, db, *, adapters=None, oracle=None, dedup=None):
    extractor = FakeExtractor({VITE_URL: "Vite page body", SO_URL: "Stack Overflow body"})
    executor = ResearchExecutor(
        _adapters() if adapters is None else adapters,
        extractor=extractor,
        url_cache=UrlCache(db, settings=settings, clock=clock),
        database=db,
        oracle=oracle,
        dedup=dedup,
        settings=settings,
        clock=clock,
    )
    return executor, extractor


def test_strip_years():
    assert strip_years("best react state library 2024") == "best react state library"
    assert strip_years("python 3.12 release 2019 notes") == "python 3.12 release notes"


@pytest.mark.asyncio
async def test_execute_without_oracle_uses_snippets(settings, clock, db):
    executor, extractor = _executor(settings, clock, db)

    result = await executor(_task())

    assert [s.url for s in result.sources] == [SO_URL, VITE_URL]
    assert result.summary == "use polling set hmr.clientPort"
    assert result.confidence == pytest.approx(0.4)
    assert result.domain == infer_domain("vite hmr websocket behind proxy")
    assert sorted(extractor.calls) == sorted([VITE_URL, SO_URL])

    finding = await db.get_finding(result.finding_id)
    assert finding.query == "vite hmr websocket behind proxy"
    assert "Vite page body" in finding.full_content
    assert finding.depth == "quick"


@pytest.mark.asyncio
async def test_execute_with_oracle_synthesis(settings, clock, db):
    reply = json.dumps(
        {
            "summary": "Set server.hmr.clientPort to the proxy port.",
            "keyPoints": ["clientPort", "protocol wss"],
            "confidence": 0.85,
            "pivot": {"alternative": "use polling", "reason": "proxy drops upgrades", "urgency": "medium"},
        }
    )
    oracle = FakeOracle(reply)
    executor, _ = _executor(settings, clock, db, oracle=oracle)

    result = await executor.execute(_task(context="HMR disconnects"))

    assert result.summary == "Set server.hmr.clientPort to the proxy port."
    assert result.key_points == ["clientPort", "protocol wss"]
    assert result.confidence == 0.85
    assert result.pivot.alternative == "use polling"
    assert result.tokens_used > 0
    caller, prompt = oracle.calls[0]
    assert caller == "executor.synthesize"
    assert "Session context: HMR disconnects" in prompt


@pytest.mark.asyncio
async def test_oracle_failure_falls_back_to_snippets(settings, clock, db):
    executor, _ = _executor(settings, clock, db, oracle=FakeOracle(OracleError("down")))
    result = await executor.execute(_task())
    assert result.summary == "use polling set hmr.clientPort"


@pytest.mark.asyncio
async def test_no_adapters_or_no_results_raise(settings, clock, db):
    executor, _ = _executor(settings, clock, db, adapters=[])
    with pytest.raises(ResearchError):
        await executor.execute(_task())

    executor, _ = _executor(settings, clock, db, adapters=[FakeAdapter("broken", error=RuntimeError("down"))])
    with pytest.raises(ResearchError, match="broken: down"):
        await executor.execute(_task())


@pytest.mark.asyncio
async def test_recent_finding_is_reused(settings, clock, db):
    await db.save_finding(
        ResearchFinding(
            id="prior",
            query="vite hmr websocket behind proxy",
            summary="Known answer.",
            created_at=clock(),
        )
    )
    adapters = _adapters()
    dedup = DeduplicationEngine(database=db, settings=settings, clock=clock)
    executor, _ = _executor(settings, clock, db, adapters=adapters, dedup=dedup)

    result = await executor.execute(_task("vite hmr websocket behind a proxy"))

    assert result.deduplicated is True
    assert result.finding_id == "prior"
    assert adapters[0].queries == []


@pytest.mark.asyncio
async def test_source_quality_is_attached(settings, clock, db):
    await db.record_source_citation("stackoverflow.com", infer_domain("vite hmr websocket behind proxy"), True, clock())
    executor, _ = _executor(settings, clock, db)

    result = await executor.execute(_task())
    scores = {s.url: s.quality_score for s in result.sources}
    assert scores[SO_URL] == pytest.approx(0.5)
    assert scores[VITE_URL] is None
