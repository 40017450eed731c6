"""Queue-based scrape orchestration.

This package provides the moving parts of the pipeline:
- Postgres-backed work queue with leased, at-least-once delivery
- Seed producer over static ZIP lists
- Consumer with per-source rate limiting and region parsers
- Worker loop and coordinator health checks
"""

from .consumer import BatchSummary, ItemOutcome, ItemResult, ScrapeConsumer
from .coordinator import Coordinator, CoordinatorConfig, CoordinatorReport
from .queue import PostgresWorkQueue, QueueMessage, WorkQueue
from .render import HttpRenderClient, PlaywrightRenderClient, RenderClient, RenderRequest, RenderResponse
from .seed import SeedProducer, is_already_queued
from .worker import Worker, WorkerConfig

__all__ = [
    "BatchSummary",
    "Coordinator",
    "CoordinatorConfig",
    "CoordinatorReport",
    "HttpRenderClient",
    "ItemOutcome",
    "ItemResult",
    "PlaywrightRenderClient",
    "PostgresWorkQueue",
    "QueueMessage",
    "RenderClient",
    "RenderRequest",
    "RenderResponse",
    "ScrapeConsumer",
    "SeedProducer",
    "Worker",
    "WorkerConfig",
    "WorkQueue",
    "is_already_queued",
]
