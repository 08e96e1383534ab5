"""Tests for injection admission, budgeting and formatting."""
import pytest
from fakes import FakeOracle

from sidecar.llm_client import OracleError
from sidecar.models.research import (
    PendingInjection,
    PivotSuggestion,
    ResearchFinding,
    ResearchResult,
    ResearchSource,
    ResearchTask,
    TaskStatus,
    TriggerSource,
)
from sidecar.services.background import BackgroundRunner
from sidecar.services.injection import (
    InjectionManager,
    estimate_tokens,
    format_injection,
    parse_relevance,
    static_score,
)
from sidecar.services.session_store import SessionStore


def _sources(count):
    return [
        ResearchSource(title=f"Source number {i} " + "x" * 90, url=f"https://site{i}.dev/page")
        for i in range(count)
    ]


def _pending(index=0, summary=None, **kwargs):
    return PendingInjection(
        query=kwargs.pop("query", f"query {index}"),
        summary=summary or ("This finding explains the fix in detail. " * 20),
        relevance=0.9,
        priority=kwargs.pop("priority", 5),
        queued_at=0.0,
        task_id=f"t{index}",
        finding_id=f"f{index}",
        sources=kwargs.pop("sources", _sources(4)),
        **kwargs,
    )


def _task(clock, *, confidence=0.8, priority=7, sources=3, age=60.0, trigger=TriggerSource.TOOL_OUTPUT):
    return ResearchTask(
        id="t1",
        query="fix cors preflight failing",
        depth="medium",
        status=TaskStatus.COMPLETED,
        trigger=trigger,
        priority=priority,
        created_at=clock() - age - 10,
        session_id="s1",
        completed_at=clock() - age,
        result=ResearchResult(
            summary="Allow the OPTIONS method and return Access-Control-Allow-Headers.",
            key_points=["allow OPTIONS"],
            sources=_sources(sources),
            confidence=confidence,
            finding_id="f1",
        ),
    )


def _manager(settings, clock, sessions=None, **kwargs):
    sessions = sessions or SessionStore(settings=settings, clock=clock)
    manager = InjectionManager(sessions, runner=BackgroundRunner(), settings=settings, clock=clock, **kwargs)
    return manager, sessions


def test_static_score_components(clock):
    score, reasons = static_score(
        confidence=0.8, completed_at=clock() - 60, priority=7, source_count=3, now=clock()
    )
    assert score == pytest.approx(0.24 + 0.3 + 0.1 + 0.1)
    assert "fresh (<5m)" in reasons

    capped, _ = static_score(
        confidence=1.0,
        completed_at=clock(),
        priority=9,
        source_count=6,
        now=clock(),
        summary="cors preflight options",
        context_text="cors preflight options",
    )
    assert capped == 1.0


def test_format_respects_token_limit_and_drops_optional_parts():
    pending = _pending(pivot=PivotSuggestion(alternative="use a proxy", reason="simpler", urgency="high"))

    text = format_injection(pending, max_tokens=150)
    assert text.startswith('<research-context query="query 0">')
    assert text.endswith("</research-context>")
    assert estimate_tokens(text) <= 150
    assert "Sources:" in text
    assert "More detail: finding f0" in text

    tight = format_injection(pending, max_tokens=40)
    assert estimate_tokens(tight) <= 40
    assert "Sources:" not in tight

    assert format_injection(pending, max_tokens=10) is None


def test_format_escapes_query_and_levels():
    pending = _pending(query='why "quotes" & <tags>', summary="short summary", key_points=["one", "two"], level=2)
    text = format_injection(pending, max_tokens=200)
    assert 'query="why &quot;quotes&quot; &amp; &lt;tags&gt;"' in text
    assert "Key points: - one - two" in text

    full = format_injection(_pending(summary="short", full_content="the full page body", level=3), max_tokens=200)
    assert "the full page body" in full
    assert "More detail" not in full


def test_parse_relevance():
    assert parse_relevance("0.85") == 0.85
    assert parse_relevance("Relevance: 1.0 (direct hit)") == 1.0
    assert parse_relevance("about .4 I guess") == 0.4
    assert parse_relevance("no idea") is None


@pytest.mark.asyncio
async def test_budget_is_never_exceeded(settings, clock):
    manager, sessions = _manager(settings, clock)
    sessions.get_or_create("s1")
    for index in range(12):
        sessions.queue_injection("s1", _pending(index))

    delivered = []
    for _ in range(20):
        delivery = manager.deliver("s1")
        if delivery is not None:
            delivered.append(delivery)
            assert delivery.tokens <= settings.max_tokens_per_injection
        clock.advance(settings.injection_cooldown_seconds)

    session = sessions.get("s1")
    assert 0 < len(delivered) <= settings.max_injections_per_session
    assert session.injected_tokens == sum(d.tokens for d in delivered)
    assert session.injected_tokens <= settings.max_total_tokens_per_session
    await manager.runner.drain(timeout=1)


@pytest.mark.asyncio
async def test_cooldown_spaces_deliveries(settings, clock):
    manager, sessions = _manager(settings, clock)
    sessions.get_or_create("s1")
    sessions.queue_injection("s1", _pending(1))
    sessions.queue_injection("s1", _pending(2))

    assert manager.deliver("s1") is not None
    clock.advance(10)
    assert manager.deliver("s1") is None
    assert manager.check_budget(sessions.get("s1")).reason.startswith("cooldown")
    clock.advance(settings.injection_cooldown_seconds)
    assert manager.deliver("s1") is not None
    await manager.runner.drain(timeout=1)


@pytest.mark.asyncio
async def test_block_too_large_for_budget_does_not_hold_back_others(make_settings, clock):
    settings = make_settings(max_tokens_per_injection=30)
    manager, sessions = _manager(settings, clock)
    sessions.get_or_create("s1")
    sessions.queue_injection("s1", _pending(1, query="x" * 200, priority=9))
    sessions.queue_injection("s1", _pending(2, query="short", priority=5))

    delivery = manager.deliver("s1")
    assert delivery is not None
    assert delivery.task_id == "t2"
    assert delivery.tokens <= 30

    session = sessions.get("s1")
    assert session.pending_injections == []
    assert [entry.research_id for entry in session.messages if entry.kind == "injection"] == ["t2"]
    await manager.runner.drain(timeout=1)


@pytest.mark.asyncio
async def test_static_gate_rejects_weak_candidates(make_settings, clock):
    settings = make_settings(relevance_gate_enabled=False)
    manager, sessions = _manager(settings, clock)
    sessions.get_or_create("s1")

    weak = _task(clock, confidence=0.2, priority=3, sources=1, age=4000)
    assert await manager.admit("s1", weak) is None

    strong = _task(clock)
    pending = await manager.admit("s1", strong)
    assert pending.trigger_reason == "error"
    assert pending.relevance == pytest.approx(0.74)
    assert sessions.peek_injection("s1") is pending


@pytest.mark.asyncio
async def test_relevance_gate_uses_oracle(settings, clock):
    oracle = FakeOracle("0.4", "0.85")
    manager, sessions = _manager(settings, clock, oracle=oracle)
    sessions.get_or_create("s1")

    assert await manager.admit("s1", _task(clock)) is None
    pending = await manager.admit("s1", _task(clock))
    assert pending.relevance == 0.85
    assert [caller for caller, _ in oracle.calls] == ["injection.relevance", "injection.relevance"]


@pytest.mark.asyncio
async def test_relevance_gate_falls_back_to_static_on_oracle_error(settings, clock):
    manager, sessions = _manager(settings, clock, oracle=FakeOracle(OracleError("down")))
    sessions.get_or_create("s1")

    pending = await manager.admit("s1", _task(clock, trigger=TriggerSource.SCHEDULED))
    assert pending is not None
    assert pending.trigger_reason == "proactive"


@pytest.mark.asyncio
async def test_admit_ignores_unknown_session(settings, clock):
    manager, _ = _manager(settings, clock)
    assert await manager.admit("missing", _task(clock)) is None


def test_select_best_filters_by_minimum(settings, clock):
    manager, _ = _manager(settings, clock)
    weak = _task(clock, confidence=0.1, priority=1, sources=0, age=5000)
    strong = _task(clock)
    best = manager.select_best([weak, strong])
    assert best.task is strong
    assert manager.select_best([weak]) is None


@pytest.mark.asyncio
async def test_delivery_is_logged_and_task_marked(settings, clock, db):
    class StubQueue:
        def __init__(self):
            self.injected = []

        async def mark_injected(self, task_id):
            self.injected.append(task_id)
            return True

    queue = StubQueue()
    manager, sessions = _manager(settings, clock, database=db, task_queue=queue)
    sessions.get_or_create("s1")
    sessions.queue_injection("s1", _pending(3))

    delivery = manager.deliver("s1")
    await manager.runner.drain(timeout=1)

    assert delivery.finding_id == "f3"
    history = await db.injection_history("s1")
    assert [(e.finding_id, e.injection_level) for e in history] == [("f3", 1)]
    assert queue.injected == ["t3"]


@pytest.mark.asyncio
async def test_followup_queues_deeper_level_once(settings, clock, db):
    await db.save_finding(
        ResearchFinding(
            id="f9",
            query="fix cors preflight failing",
            summary="Allow OPTIONS.",
            created_at=clock(),
            key_points=["allow OPTIONS", "set Allow-Headers"],
            full_content="full write-up",
        )
    )
    manager, sessions = _manager(settings, clock, database=db)
    sessions.get_or_create("s1")

    pending = await manager.queue_followup("s1", "f9", 2)
    assert pending.level == 2
    assert pending.priority == 8
    assert pending.trigger_reason == "followup"
    assert await manager.queue_followup("s1", "f9", 3) is None
    assert await manager.queue_followup("s1", "other", 4) is None

    delivery = manager.deliver("s1")
    assert "Key points: - allow OPTIONS - set Allow-Headers" in delivery.text
    await manager.runner.drain(timeout=1)
