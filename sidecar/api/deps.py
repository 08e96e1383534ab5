from __future__ import annotations

from fastapi import HTTPException, Request

from sidecar.agents.orchestrator import SessionOrchestrator


def get_orchestrator(request: Request) -> SessionOrchestrator:
    """Return the orchestrator owned by the running app."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Sidecar is not started")
    return orchestrator
