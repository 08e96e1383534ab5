"""Tests for API routes."""
from contextlib import asynccontextmanager

import pytest
from fakes import FakeAdapter, FakeExtractor
from fastapi import FastAPI
from fastapi.testclient import TestClient

from sidecar.agents.orchestrator import create_orchestrator
from sidecar.api.routes import events, research, settings as settings_routes
from sidecar.tools.search_provider import SearchHit

HITS = [
    SearchHit(title="Pagination guide", url="https://docs.example.dev/pagination", snippet="use keyset pagination"),
    SearchHit(title="Offset vs cursor", url="https://blog.example.org/cursor", snippet="cursors scale better"),
]


@pytest.fixture
def client(settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        orchestrator = create_orchestrator(
            settings,
            adapters=[FakeAdapter("web", HITS)],
            extractor=FakeExtractor({hit.url: f"page about {hit.title}" for hit in HITS}),
        )
        await orchestrator.start()
        app.state.orchestrator = orchestrator
        yield
        await orchestrator.stop()

    app = FastAPI(lifespan=lifespan)
    app.include_router(events.router)
    app.include_router(research.router)
    app.include_router(settings_routes.router)
    with TestClient(app) as test_client:
        yield test_client


def test_health_and_unstarted_status():
    from sidecar.main import app

    client = TestClient(app)
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "research-sidecar"}

    assert client.get("/api/status").status_code == 503


def test_user_prompt_tracks_session_without_research(client):
    response = client.post(
        "/api/events/user-prompt",
        json={"session_id": "s1", "prompt": "I need to paginate the orders endpoint."},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["research_queued"] is False
    assert body["injection"] is None

    session = client.get("/api/sessions/s1").json()
    assert session["current_task"] == "paginate the orders endpoint"
    assert [s["session_id"] for s in client.get("/api/sessions").json()["sessions"]] == ["s1"]

    assert client.post("/api/sessions/s1/end").json() == {"session_id": "s1", "ended": True}
    assert client.get("/api/sessions/s1").status_code == 404


def test_tool_use_error_queues_research(client):
    response = client.post(
        "/api/events/tool-use",
        json={
            "session_id": "s1",
            "tool_name": "Bash",
            "tool_input": {"command": "pytest"},
            "tool_output": "TypeError: unsupported operand type(s) for +: 'int' and 'str'",
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["research_queued"] is True
    assert body["queued_query"].startswith("fix TypeError")


def test_tool_use_requires_session_id(client):
    response = client.post("/api/events/tool-use", json={"tool_name": "Bash"})
    assert response.status_code == 422


def test_execute_research_returns_finished_task(client):
    response = client.post("/api/research/execute", json={"query": "keyset pagination in postgres", "depth": "quick"})
    assert response.status_code == 200
    task = response.json()
    assert task["status"] == "completed"
    assert task["trigger"] == "manual"
    assert task["result"]["summary"] == "use keyset pagination cursors scale better"

    assert client.get(f"/api/tasks/{task['id']}").json()["id"] == task["id"]
    finding_id = task["result"]["finding_id"]
    detail = client.get(f"/api/findings/{finding_id}", params={"level": 3}).json()
    assert "page about Pagination guide" in detail["full_content"]
    listed = client.get("/api/findings", params={"q": "keyset"}).json()["findings"]
    assert [f["id"] for f in listed] == [finding_id]


def test_research_validation_errors(client):
    assert client.post("/api/research", json={"query": "ab"}).status_code == 422
    assert client.post("/api/research", json={"query": "2024"}).status_code == 400
    assert client.post("/api/research", json={"query": "valid query", "priority": 11}).status_code == 422


def test_queue_research_returns_task_immediately(client):
    response = client.post("/api/research", json={"query": "cursor pagination tradeoffs", "priority": 8})
    assert response.status_code == 200
    task = response.json()
    assert task["priority"] == 8
    assert task["status"] in ("queued", "running")
    assert set(client.get("/api/queue/stats").json()) >= {"queued", "running", "completed", "failed"}


def test_missing_resources_return_404(client):
    assert client.get("/api/tasks/nope").status_code == 404
    assert client.get("/api/findings/nope").status_code == 404
    assert client.get("/api/findings/nope", params={"level": 4}).status_code == 422
    assert client.get("/api/sessions/nope/record").status_code == 404
    outcome = client.post("/api/outcomes", json={"session_id": "s1", "injection_id": 42, "issue_resolved": True})
    assert outcome.status_code == 404


def test_settings_round_trip_and_validation(client):
    current = client.get("/api/settings").json()
    assert current["autonomous_research_enabled"] is True
    assert current["trigger_cooldown_seconds"] == 30.0

    assert client.post("/api/settings", json={"trigger_cooldown_seconds": 45}).status_code == 422
    assert client.post("/api/settings", json={"relevance_threshold": 0.2}).status_code == 422

    updated = client.post("/api/settings", json={"trigger_cooldown_seconds": 60, "relevance_gate_enabled": False})
    assert updated.status_code == 200
    assert updated.json()["trigger_cooldown_seconds"] == 60.0
    assert updated.json()["relevance_gate_enabled"] is False


def test_fetch_returns_page_and_maps_errors(client):
    response = client.post("/api/fetch", json={"url": HITS[0].url, "query": "keyset pagination"})
    assert response.status_code == 200
    page = response.json()
    assert page["content"] == "page about Pagination guide\n---"
    assert page["cached"] is False
    assert client.get(f"/api/findings/{page['finding_id']}").json()["query"] == "keyset pagination"

    again = client.post("/api/fetch", json={"url": HITS[0].url, "store": False}).json()
    assert again["cached"] is True
    assert again["finding_id"] is None

    assert client.post("/api/fetch", json={"url": "ftp://example.org/file"}).status_code == 400
    assert client.post("/api/fetch", json={"url": "https://example.org/missing"}).status_code == 502
    assert client.post("/api/fetch", json={"url": HITS[0].url, "max_length": 10}).status_code == 422
