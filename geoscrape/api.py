"""FastAPI status surface: health, manual seed, status and coordinator trigger.

Endpoints are unauthenticated; deploy behind a private network.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import Settings
from .models import SeedMode, utcnow
from .scrape_queue.coordinator import COORDINATOR_ID, Coordinator, CoordinatorConfig
from .scrape_queue.consumer import WORKER_TYPE as CONSUMER_WORKER_TYPE
from .scrape_queue.queue import WorkQueue
from .scrape_queue.seed import SeedProducer
from .scrape_queue.services import build_queue, build_store
from .store import StateStore

LOGGER = logging.getLogger(__name__)


class SeedRequest(BaseModel):
    mode: str = SeedMode.TEST.value
    states: Optional[List[str]] = None
    regions: Optional[List[str]] = None
    force: bool = False


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[StateStore] = None,
    queue: Optional[WorkQueue] = None,
) -> FastAPI:
    """Build the app; store and queue are created on first use when not given."""
    app = FastAPI(title="geoscrape status API")
    app.state.settings = settings or Settings.from_env()
    app.state.store = store
    app.state.queue = queue

    def _store(request: Request) -> StateStore:
        state = request.app.state
        if state.store is None:
            state.store = build_store(state.settings)
        return state.store

    def _queue(request: Request) -> WorkQueue:
        state = request.app.state
        if state.queue is None:
            state.queue = build_queue(state.settings)
        return state.queue

    def _producer(request: Request) -> SeedProducer:
        return SeedProducer(_store(request), _queue(request), request.app.state.settings)

    @app.get("/health")
    def health(request: Request) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "version": request.app.state.settings.version,
            "timestamp": utcnow().isoformat(),
        }

    @app.post("/seed")
    def seed(request: Request, body: Optional[SeedRequest] = None) -> Dict[str, Any]:
        body = body or SeedRequest()
        try:
            mode = SeedMode(body.mode)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid mode: {body.mode}")

        regions = body.states if body.states is not None else body.regions
        if regions is not None and not regions:
            raise HTTPException(status_code=400, detail="No states given")
        result = _producer(request).seed(mode, regions=regions, force=body.force)
        return {
            "success": True,
            "mode": mode.value,
            "states": [r.upper() for r in regions] if regions else "all",
            "result": result.model_dump(),
            "timestamp": utcnow().isoformat(),
        }

    @app.get("/status")
    def status(request: Request) -> Dict[str, Any]:
        store = _store(request)
        try:
            counters = store.get_queue_counters()
            coordinator = store.get_worker(COORDINATOR_ID)
            workers = store.list_workers(CONSUMER_WORKER_TYPE)
            breakdown = store.status_breakdown()
        except Exception as exc:
            LOGGER.error("Status query failed: %s", exc, exc_info=True)
            raise HTTPException(status_code=500, detail="Status query failed")

        queue_info: Dict[str, Any] = {"status": "unknown"}
        if counters is not None:
            queue_info = counters.model_dump(mode="json")
            queue_info["current_depth"] = counters.current_depth

        return {
            "queue_state": breakdown,
            "queue": queue_info,
            "coordinator": (
                coordinator.model_dump(mode="json") if coordinator else {"status": "unknown"}
            ),
            "workers": [w.model_dump(mode="json") for w in workers],
            "timestamp": utcnow().isoformat(),
        }

    @app.post("/trigger")
    def trigger(request: Request) -> Dict[str, Any]:
        settings = request.app.state.settings
        coordinator = Coordinator(
            _store(request),
            _producer(request),
            CoordinatorConfig.from_settings(settings),
        )
        report = coordinator.tick()
        return {"success": report.error is None, "report": report.to_dict()}

    return app
