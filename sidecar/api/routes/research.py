from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query
from sse_starlette.sse import EventSourceResponse

from sidecar.agents.orchestrator import SessionOrchestrator
from sidecar.api.deps import get_orchestrator
from sidecar.models.research import TaskStatus
from sidecar.models.schemas import FetchRequest, OutcomeReport, ResearchRequest
from sidecar.services import logger as log_service
from sidecar.services.task_queue import QueueFullError
from sidecar.tools.page_fetch import FetchError

router = APIRouter(prefix="/api", tags=["research"])


@router.post("/research")
async def queue_research(request: ResearchRequest, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    """Queue research and return the task immediately."""
    try:
        task = await orchestrator.request_research(
            request.query,
            depth=request.depth,
            session_id=request.session_id,
            priority=request.priority,
            context=request.context,
        )
    except QueueFullError as exc:
        raise HTTPException(status_code=429, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return task.to_dict()


@router.post("/research/execute")
async def execute_research(request: ResearchRequest, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    """Run research and wait for it, bounded by the depth's timeout."""
    try:
        task = await orchestrator.request_research(
            request.query,
            depth=request.depth,
            session_id=request.session_id,
            priority=request.priority,
            context=request.context,
            wait=True,
        )
    except QueueFullError as exc:
        raise HTTPException(status_code=429, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except asyncio.TimeoutError as exc:
        raise HTTPException(status_code=504, detail="Research timed out") from exc
    if task.status == TaskStatus.FAILED:
        raise HTTPException(status_code=502, detail=task.error or "Research failed")
    return task.to_dict()


@router.post("/fetch")
async def fetch_url(request: FetchRequest, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    """Fetch one page, optionally focused on a query, and keep it as a finding."""
    try:
        page = await orchestrator.fetch_url(
            request.url,
            query=request.query,
            max_length=request.max_length,
            store=request.store,
            session_id=request.session_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except FetchError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return page.to_dict()


@router.get("/research/events")
async def stream_task_events(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    """SSE stream of task lifecycle events."""

    async def event_generator():
        try:
            async for event in orchestrator.stream_events():
                yield event.to_sse()
        except asyncio.CancelledError:
            log_service.log_event("stream_closed", "Task event stream closed by client")
            raise

    return EventSourceResponse(event_generator())


@router.get("/queue/stats")
async def queue_stats(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    return orchestrator.queue.stats()


@router.get("/tasks")
async def list_tasks(
    limit: int = Query(50, ge=1, le=500),
    status: TaskStatus | None = None,
    q: str | None = None,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    if q:
        tasks = await orchestrator.search_tasks(q, limit=limit)
    else:
        tasks = await orchestrator.list_tasks(limit=limit, status=status)
    return {"tasks": [task.to_dict() for task in tasks]}


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    task = await orchestrator.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task.to_dict()


@router.get("/findings")
async def list_findings(
    limit: int = Query(20, ge=1, le=200),
    domain: str | None = None,
    q: str | None = None,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    findings = await orchestrator.list_findings(limit, domain=domain, text=q)
    return {
        "findings": [
            {
                "id": f.id,
                "query": f.query,
                "summary": f.summary,
                "domain": f.domain,
                "depth": f.depth,
                "confidence": f.confidence,
                "created_at": f.created_at,
            }
            for f in findings
        ]
    }


@router.get("/findings/{finding_id}")
async def get_finding(
    finding_id: str,
    level: int = Query(1, ge=1, le=3),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    finding = await orchestrator.get_finding(finding_id, level=level)
    if finding is None:
        raise HTTPException(status_code=404, detail="Finding not found")
    return finding


@router.post("/outcomes")
async def report_outcome(report: OutcomeReport, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    evaluation = await orchestrator.record_outcome(report)
    if evaluation is None:
        raise HTTPException(status_code=404, detail="Injection not found for this session")
    return {
        "injection_id": evaluation.injection_id,
        "helpful": evaluation.helpful,
        "score": evaluation.score,
        "reason": evaluation.reason,
    }


@router.get("/learning")
async def learning_insights(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.learning_insights()
