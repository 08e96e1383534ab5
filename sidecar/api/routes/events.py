from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from sidecar.agents.orchestrator import SessionOrchestrator
from sidecar.api.deps import get_orchestrator
from sidecar.models.schemas import EventResponseModel, ToolUseEvent, UserPromptEvent

router = APIRouter(prefix="/api", tags=["events"])


# Handlers must stay async: the hot path submits background work to the running loop.
@router.post("/events/user-prompt", response_model=EventResponseModel)
async def user_prompt(event: UserPromptEvent, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    response = orchestrator.handle_user_prompt(event.session_id, event.prompt, event.project_path)
    return EventResponseModel(**response.to_dict())


@router.post("/events/tool-use", response_model=EventResponseModel)
async def tool_use(event: ToolUseEvent, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    response = orchestrator.handle_tool_use(
        event.session_id,
        event.tool_name,
        event.tool_input,
        event.tool_output,
        event.project_path,
    )
    return EventResponseModel(**response.to_dict())


@router.get("/sessions")
async def list_sessions(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    sessions = orchestrator.sessions.list_sessions()
    return {
        "sessions": [
            {
                "session_id": s.session_id,
                "project_path": s.project_path,
                "started_at": s.started_at,
                "last_activity_at": s.last_activity_at,
                "message_count": s.message_count,
                "pending_injections": len(s.pending_injections),
            }
            for s in sessions
        ]
    }


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    snapshot = orchestrator.session_snapshot(session_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return snapshot


@router.get("/sessions/{session_id}/record")
async def get_stored_session(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    """Persisted session record; still available after the session ends."""
    record = await orchestrator.stored_session(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return record


@router.post("/sessions/{session_id}/end")
async def end_session(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    snapshot = orchestrator.end_session(session_id)
    return {"session_id": session_id, "ended": snapshot is not None}
