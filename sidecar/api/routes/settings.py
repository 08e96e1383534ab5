from __future__ import annotations

from fastapi import APIRouter, Depends

from sidecar.agents.orchestrator import SessionOrchestrator
from sidecar.api.deps import get_orchestrator
from sidecar.models.schemas import SettingsUpdate

router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("")
async def read_settings(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_settings()


@router.post("")
async def update_settings(update: SettingsUpdate, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    """Apply validated runtime changes; components read them on their next call."""
    return orchestrator.update_settings(update)
