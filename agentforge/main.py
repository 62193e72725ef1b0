"""FastAPI entry-point exposing agent and workflow controls."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from agentforge.api.routes import router as agents_router
from agentforge.api.workflows import router as workflows_router
from agentforge.logging_config import setup_logging
from agentforge.runtime import Runtime, build_runtime


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for FastAPI application."""
        active = app.state.runtime = runtime or build_runtime()
        setup_logging(active.config.log_level)
        await active.start()
        yield
        # Shutdown: terminate agents, close broker and store
        await active.stop()

    app = FastAPI(title="Agent Forge", lifespan=lifespan)
    app.include_router(agents_router)
    app.include_router(workflows_router)

    @app.get("/health")
    async def health() -> dict:
        active = getattr(app.state, "runtime", None)
        return {
            "status": "ok",
            "agents": len(list(active.supervisor.list_agents())) if active else 0,
            "active_workflows": len(active.orchestrator.active_workflows) if active else 0,
        }

    return app


app = create_app()
