"""
FastAPI Application — process root for the dispatch core.

Provides:
- Lifespan wiring: load snapshot → restore running workers → autosave →
  graceful shutdown with a final snapshot
- REST endpoints over the queue registry (enqueue pre-built jobs, start/stop
  sessions, clear campaigns, status and statistics)
"""
from __future__ import annotations

import structlog
from typing import Any
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from config.settings import Settings, get_settings
from channels.dispatcher import Dispatcher, HttpDispatcher
from job_queue.registry import AutoSaver, QueueRegistry
from models.schemas import EnqueueJobsRequest
from persistence.store import PersistenceStore, PersistenceWriteError

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

def build_registry(settings: Settings, dispatcher: Dispatcher = None) -> QueueRegistry:
    persistence = PersistenceStore(
        data_dir=settings.persistence.data_dir,
        debounce_delay=settings.persistence.debounce_delay,
    )
    return QueueRegistry(
        persistence=persistence,
        dispatcher=dispatcher or HttpDispatcher(settings.gateway),
        worker_config=settings.worker,
        document_key=settings.persistence.document_key,
    )


def create_app(settings: Settings = None, dispatcher: Dispatcher = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry = build_registry(settings, dispatcher)
        autosaver = AutoSaver(
            registry,
            interval=settings.persistence.auto_save_interval,
            backup_keep=settings.persistence.backup_keep,
        )
        app.state.registry = registry

        registry.load_all()
        registry.restore_workers()
        autosaver.start_background()

        logger.info("turbozap_started",
                    data_dir=settings.persistence.data_dir,
                    execution_interval=settings.worker.execution_interval,
                    auto_save_interval=settings.persistence.auto_save_interval)
        yield

        await autosaver.stop()
        try:
            await registry.shutdown()
        except PersistenceWriteError as e:
            logger.error("final_save_failed", error=str(e))
        await registry.dispatcher.close()
        logger.info("turbozap_stopped")

    app = FastAPI(
        title="Turbozap API",
        description="Paced per-session campaign dispatch",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def get_registry(request: Request) -> QueueRegistry:
    return request.app.state.registry


# ══════════════════════════════════════════════════════════════
#  ROUTES
# ══════════════════════════════════════════════════════════════

def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health():
        return {"success": True, "message": "Turbozap backend is running"}

    @app.post("/api/sessions/{session}/jobs", status_code=202)
    async def enqueue_jobs(
        session: str,
        body: EnqueueJobsRequest,
        registry: QueueRegistry = Depends(get_registry),
    ) -> dict[str, Any]:
        items = registry.enqueue(session, body.jobs, body.campaign_id)
        return {
            "success": True,
            "session": session,
            "campaignId": body.campaign_id,
            "requestIds": [item.id for item in items],
        }

    @app.post("/api/sessions/{session}/start")
    async def start_session(session: str, registry: QueueRegistry = Depends(get_registry)):
        registry.start(session)
        return {"success": True, "session": session, "isActive": True}

    @app.post("/api/sessions/{session}/stop")
    async def stop_session(session: str, registry: QueueRegistry = Depends(get_registry)):
        if not registry.stop(session):
            raise HTTPException(404, f"No worker for session {session}")
        return {"success": True, "session": session, "isActive": False}

    @app.get("/api/sessions/{session}/status")
    async def session_status(session: str, registry: QueueRegistry = Depends(get_registry)):
        status = registry.status_for(session)
        if status is None:
            raise HTTPException(404, f"No worker for session {session}")
        return status

    @app.get("/api/workers")
    async def all_workers(registry: QueueRegistry = Depends(get_registry)):
        return registry.all_status()

    @app.get("/api/queues")
    async def all_queues(registry: QueueRegistry = Depends(get_registry)):
        return registry.all_queues()

    @app.get("/api/stats")
    async def stats(registry: QueueRegistry = Depends(get_registry)):
        return registry.stats()

    @app.delete("/api/campaigns/{campaign_id}")
    async def clear_campaign(campaign_id: str, registry: QueueRegistry = Depends(get_registry)):
        removed = registry.clear_campaign(campaign_id)
        return {"success": True, "campaignId": campaign_id, "removed": removed}

    @app.post("/api/persistence/save")
    async def save_now(registry: QueueRegistry = Depends(get_registry)):
        try:
            registry.save_all(immediate=True)
        except PersistenceWriteError as e:
            raise HTTPException(500, str(e))
        return {"success": True}

    @app.get("/api/persistence/stats")
    async def persistence_stats(registry: QueueRegistry = Depends(get_registry)):
        store = registry.persistence
        return {**store.get_stats(), "writable": store.is_writable()}


app = create_app()


if __name__ == "__main__":
    import os
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "3000")))
