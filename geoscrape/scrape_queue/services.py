"""Wiring helpers shared by the CLI, the Prefect flows and the HTTP surface."""
from __future__ import annotations

from typing import Optional

from ..config import Settings
from ..store import PostgresStateStore, StateStore
from .consumer import ScrapeConsumer
from .coordinator import Coordinator, CoordinatorConfig
from .queue import PostgresWorkQueue, WorkQueue
from .render import HttpRenderClient, PlaywrightRenderClient, RenderClient
from .seed import SeedProducer


def build_store(settings: Settings) -> PostgresStateStore:
    return PostgresStateStore(settings.database_url)


def build_queue(settings: Settings) -> PostgresWorkQueue:
    return PostgresWorkQueue(
        settings.database_url, visibility_timeout=settings.queue_visibility_timeout()
    )


def build_render_client(settings: Settings) -> RenderClient:
    """Pick the render backend named by ``RENDER_BACKEND``."""
    backend = settings.render_backend.lower()
    if backend == "http":
        return HttpRenderClient(settings.render_service_url)
    if backend == "browser":
        return PlaywrightRenderClient(headless=not settings.debug)
    raise ValueError(f"Unknown render backend: {settings.render_backend}")


def build_producer(
    settings: Settings,
    store: Optional[StateStore] = None,
    queue: Optional[WorkQueue] = None,
) -> SeedProducer:
    return SeedProducer(store or build_store(settings), queue or build_queue(settings), settings)


def build_consumer(
    settings: Settings,
    store: Optional[StateStore] = None,
    render_client: Optional[RenderClient] = None,
) -> ScrapeConsumer:
    return ScrapeConsumer(
        store or build_store(settings),
        render_client or build_render_client(settings),
        settings,
    )


def build_coordinator(
    settings: Settings,
    store: Optional[StateStore] = None,
    queue: Optional[WorkQueue] = None,
) -> Coordinator:
    store = store or build_store(settings)
    producer = build_producer(settings, store, queue)
    return Coordinator(store, producer, CoordinatorConfig.from_settings(settings))
