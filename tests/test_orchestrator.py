"""End-to-end flows through the orchestrator with fake search, pages and oracle."""
import asyncio

import pytest
import pytest_asyncio
from fakes import FakeAdapter, FakeExtractor

from sidecar.agents.orchestrator import create_orchestrator
from sidecar.models.events import EventType
from sidecar.models.research import PendingInjection, ResearchTask, TaskStatus, TriggerSource
from sidecar.models.schemas import OutcomeReport, SettingsUpdate
from sidecar.tools.page_fetch import FetchError
from sidecar.tools.search_provider import SearchHit

TYPE_ERROR = "TypeError: Cannot read properties of undefined (reading 'map')\n    at render (list.tsx:12)"

HITS = [
    SearchHit(
        title="Reading map of undefined",
        url="https://stackoverflow.com/q/100",
        snippet="Initialize the array before calling map on undefined",
    ),
    SearchHit(title="Array.prototype.map", url="https://developer.mozilla.org/map", snippet="map needs an array"),
    SearchHit(title="React lists", url="https://react.dev/learn/rendering-lists", snippet="render lists safely"),
]


async def _settle(orchestrator):
    await orchestrator.runner.drain(timeout=5)
    await orchestrator.queue.drain()
    await orchestrator.runner.drain(timeout=5)


@pytest_asyncio.fixture
async def orchestrator(settings, clock):
    instance = create_orchestrator(
        settings,
        adapters=[FakeAdapter("web", HITS)],
        extractor=FakeExtractor({hit.url: f"body of {hit.title}" for hit in HITS}),
        clock=clock,
    )
    await instance.start()
    yield instance
    await instance.stop()


@pytest.mark.asyncio
async def test_tool_error_is_researched_and_injected_on_next_event(orchestrator, clock):
    response = orchestrator.handle_tool_use("s1", "Bash", {"command": "npm run dev"}, TYPE_ERROR)
    assert response.research_queued is True
    assert response.queued_query.startswith("fix TypeError: Cannot read properties of undefined")
    assert response.injection is None

    await _settle(orchestrator)
    tasks = await orchestrator.list_tasks()
    assert len(tasks) == 1
    assert tasks[0].status == TaskStatus.COMPLETED
    assert tasks[0].trigger == TriggerSource.TOOL_OUTPUT
    assert orchestrator.dedup.inflight_count("s1") == 0

    follow = orchestrator.handle_user_prompt("s1", "still broken, any ideas?")
    assert follow.injection is not None
    assert follow.injection.startswith("<research-context")
    assert "stackoverflow.com" in follow.injection

    await _settle(orchestrator)
    assert (await orchestrator.get_task(tasks[0].id)).status == TaskStatus.INJECTED
    history = await orchestrator.database.injection_history("s1")
    assert len(history) == 1
    assert history[0].trigger_reason == "error"


@pytest.mark.asyncio
async def test_error_is_queued_when_an_injection_goes_out_on_the_same_event(orchestrator, clock):
    orchestrator.sessions.get_or_create("s1")
    orchestrator.sessions.queue_injection(
        "s1",
        PendingInjection(
            query="configure vite proxy",
            summary="Point server.proxy at the API origin to avoid CORS in development.",
            relevance=0.9,
            priority=5,
            queued_at=clock(),
        ),
    )

    response = orchestrator.handle_tool_use("s1", "Bash", {"command": "npm run dev"}, TYPE_ERROR)
    assert response.injection is not None
    assert response.research_queued is True
    assert response.queued_query.startswith("fix TypeError")

    await _settle(orchestrator)
    assert len(await orchestrator.list_tasks()) == 1


@pytest.mark.asyncio
async def test_repeated_error_does_not_requeue_during_cooldown(orchestrator):
    orchestrator.handle_tool_use("s1", "Bash", {"command": "npm run dev"}, TYPE_ERROR)
    second = orchestrator.handle_tool_use("s1", "Bash", {"command": "npm run dev"}, TYPE_ERROR)

    assert second.research_queued is False
    assert second.reason.startswith("cooldown active")
    await _settle(orchestrator)
    assert len(await orchestrator.list_tasks()) == 1


@pytest.mark.asyncio
async def test_user_prompt_never_queues_research(orchestrator):
    response = orchestrator.handle_user_prompt("s1", "TypeError everywhere, can you fix the list view?")
    assert response.research_queued is False
    await _settle(orchestrator)
    assert await orchestrator.list_tasks() == []


@pytest.mark.asyncio
async def test_stuck_session_triggers_scheduled_research(orchestrator):
    for _ in range(8):
        orchestrator.handle_tool_use("s1", "Edit", {"file_path": "src/auth.ts"}, "ok")
    await _settle(orchestrator)

    tasks = await orchestrator.list_tasks()
    assert [(t.query, t.trigger) for t in tasks] == [("alternative approaches to auth.ts", TriggerSource.SCHEDULED)]
    assert orchestrator.sessions.get("s1").research_history[0].query == "alternative approaches to auth.ts"


@pytest.mark.asyncio
async def test_manual_research_waits_and_is_not_injected(orchestrator):
    orchestrator.handle_user_prompt("s1", "hello")

    task = await orchestrator.request_research("list rendering 2023 best practices", session_id="s1", wait=True)
    await _settle(orchestrator)

    assert task.status == TaskStatus.COMPLETED
    assert task.query == "list rendering best practices"
    assert task.trigger == TriggerSource.MANUAL
    assert orchestrator.sessions.get("s1").pending_injections == []


@pytest.mark.asyncio
async def test_manual_research_rejects_empty_query(orchestrator):
    with pytest.raises(ValueError):
        await orchestrator.request_research("2024")


@pytest.mark.asyncio
async def test_stream_events_reports_lifecycle(orchestrator):
    seen = []

    async def consume():
        async for event in orchestrator.stream_events():
            seen.append(event.event)
            if event.event in (EventType.TASK_COMPLETED, EventType.TASK_FAILED):
                return

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    await orchestrator.request_research("rendering lists in react")
    await asyncio.wait_for(consumer, timeout=5)

    assert seen == [EventType.TASK_QUEUED, EventType.TASK_STARTED, EventType.TASK_COMPLETED]


@pytest.mark.asyncio
async def test_findings_and_levels(orchestrator):
    task = await orchestrator.request_research("rendering lists in react", wait=True)
    finding_id = task.result.finding_id

    brief = await orchestrator.get_finding(finding_id)
    assert "key_points" not in brief
    full = await orchestrator.get_finding(finding_id, level=3)
    assert full["key_points"]
    assert "body of" in full["full_content"]
    assert [f.id for f in await orchestrator.list_findings(text="rendering")] == [finding_id]
    assert await orchestrator.get_finding("missing") is None


@pytest.mark.asyncio
async def test_outcome_requires_matching_session(orchestrator):
    orchestrator.handle_tool_use("s1", "Bash", {"command": "npm run dev"}, TYPE_ERROR)
    await _settle(orchestrator)
    orchestrator.handle_user_prompt("s1", "retrying")
    await _settle(orchestrator)
    entry = (await orchestrator.database.injection_history("s1"))[0]

    assert await orchestrator.record_outcome(OutcomeReport(session_id="other", injection_id=entry.id)) is None
    evaluation = await orchestrator.record_outcome(
        OutcomeReport(session_id="s1", injection_id=entry.id, issue_resolved=True)
    )
    assert evaluation.helpful is True

    finding = await orchestrator.database.get_finding(entry.finding_id)
    quality = await orchestrator.database.get_source_quality("stackoverflow.com", finding.domain)
    assert quality.citation_count == 1
    assert quality.helpful_count == 1


@pytest.mark.asyncio
async def test_settings_update_and_status(orchestrator):
    updated = orchestrator.update_settings(SettingsUpdate(autonomous_research_enabled=False, max_concurrent_tasks=3))
    assert updated["autonomous_research_enabled"] is False
    assert updated["max_concurrent_tasks"] == 3

    response = orchestrator.handle_tool_use("s1", "Bash", {"command": "npm run dev"}, TYPE_ERROR)
    assert response.research_queued is False
    assert response.reason == "autonomous research disabled"

    status = await orchestrator.status()
    assert status["autonomous_research_enabled"] is False
    assert status["oracle_available"] is False
    assert status["sessions"]["total_sessions"] == 1


@pytest.mark.asyncio
async def test_end_session_returns_snapshot(orchestrator):
    orchestrator.handle_user_prompt("s1", "I need to paginate the orders endpoint.")
    snapshot = orchestrator.end_session("s1")
    assert snapshot["current_task"] == "paginate the orders endpoint"
    assert orchestrator.session_snapshot("s1") is None
    assert orchestrator.end_session("s1") is None

    await orchestrator.runner.drain(timeout=5)
    record = await orchestrator.stored_session("s1")
    assert record["is_active"] is False
    assert record["snapshot"]["current_task"] == "paginate the orders endpoint"
    assert await orchestrator.stored_session("nobody") is None


@pytest.mark.asyncio
async def test_fetch_url_reads_through_cache_and_keeps_finding(orchestrator):
    url = HITS[0].url
    first = await orchestrator.fetch_url(url, session_id="s1")
    assert first.cached is False
    assert first.content == "body of Reading map of undefined"
    assert first.truncated is False
    assert first.excerpt is None

    second = await orchestrator.fetch_url(url, store=False)
    assert second.cached is True
    assert second.finding_id is None
    assert orchestrator.extractor.calls == [url]
    assert (await orchestrator.url_cache.stats())["hits"] == 1

    finding = await orchestrator.get_finding(first.finding_id, level=3)
    assert finding["query"] == f"Fetched: {url}"
    assert finding["depth"] == "quick"
    assert finding["confidence"] == 0.95
    assert finding["sources"][0]["url"] == url
    assert finding["full_content"] == "body of Reading map of undefined"


@pytest.mark.asyncio
async def test_fetch_url_focuses_and_truncates(orchestrator):
    noise = "\n".join(f"unrelated paragraph {i}" for i in range(40))
    orchestrator.extractor.pages["https://vitejs.dev/config/server"] = (
        f"{noise}\n## Server proxy options\n- server.proxy forwards API calls in development\n{noise}"
    )

    page = await orchestrator.fetch_url("vitejs.dev/config/server", query="proxy options", max_length=600)
    assert page.url == "https://vitejs.dev/config/server"
    assert page.content.startswith("unrelated paragraph 38\nunrelated paragraph 39\n## Server proxy options")
    assert "---" in page.content
    assert "unrelated paragraph 10\n" not in page.content
    assert len(page.content) <= 600

    finding = await orchestrator.get_finding(page.finding_id, level=2)
    assert finding["query"] == "proxy options"
    assert finding["key_points"] == [
        "Server proxy options",
        "server.proxy forwards API calls in development",
    ]

    long_page = await orchestrator.fetch_url("https://vitejs.dev/config/server", max_length=500, store=False)
    assert long_page.truncated is True
    assert len(long_page.content) == 500
    assert long_page.excerpt is None


@pytest.mark.asyncio
async def test_fetch_url_rejects_bad_input(orchestrator):
    with pytest.raises(ValueError, match="invalid URL"):
        await orchestrator.fetch_url("   ")
    with pytest.raises(ValueError, match="invalid URL"):
        await orchestrator.fetch_url("ftp://files.example.org/a.txt")


@pytest.mark.asyncio
async def test_start_removes_rows_past_retention(make_settings, clock, db):
    old = ResearchTask(
        id="old",
        query="fix webpack alias",
        depth="quick",
        status=TaskStatus.COMPLETED,
        trigger=TriggerSource.MANUAL,
        priority=5,
        created_at=clock() - 3 * 86400,
    )
    recent = ResearchTask(
        id="recent",
        query="fix eslint flat config",
        depth="quick",
        status=TaskStatus.COMPLETED,
        trigger=TriggerSource.MANUAL,
        priority=5,
        created_at=clock() - 3600,
    )
    await db.insert_task(old)
    await db.insert_task(recent)

    instance = create_orchestrator(
        make_settings(data_retention_days=1),
        adapters=[FakeAdapter("web", HITS)],
        extractor=FakeExtractor(),
        database=db,
        clock=clock,
    )
    await instance.start()
    try:
        assert await db.get_task("old") is None
        assert await db.get_task("recent") is not None
    finally:
        await instance.stop()


@pytest.mark.asyncio
async def test_fetch_url_wraps_upstream_failures(orchestrator):
    with pytest.raises(FetchError, match="no page for"):
        await orchestrator.fetch_url("https://example.com/gone")
    assert await orchestrator.url_cache.get("https://example.com/gone") is None
