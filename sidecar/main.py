from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sidecar.agents.orchestrator import SessionOrchestrator, create_orchestrator
from sidecar.api.deps import get_orchestrator
from sidecar.api.routes import events, research, settings as settings_routes
from sidecar.config import settings
from sidecar.services.logger import configure_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging(settings)
    orchestrator = create_orchestrator(settings)
    await orchestrator.start()
    app.state.orchestrator = orchestrator
    yield
    # Shutdown
    await orchestrator.stop()
    app.state.orchestrator = None


app = FastAPI(
    title="Research Sidecar",
    description="Session-aware background research for AI coding sessions",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(events.router)
app.include_router(research.router)
app.include_router(settings_routes.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "research-sidecar"}


@app.get("/api/status")
async def status(orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.status()
