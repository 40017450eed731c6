"""Scrape consumer: turns delivered work items into stored professionals.

Each message yields an explicit ``ItemResult``; the worker loop maps
``success`` and ``terminal`` to ack and ``retry`` to a delayed redelivery.
"""
from __future__ import annotations

import logging
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional

from ..config import Settings
from ..models import (
    DeadLetterEntry,
    ErrorLogEntry,
    ProcessingLogEntry,
    WorkerStatus,
    utcnow,
)
from ..parsers import BaseLicenseParser, UnsupportedRegionError, get_parser
from ..rate_limit import RateLimiter
from ..retry import RetryPolicy
from ..store import StateStore
from .queue import QueueMessage
from .render import RenderClient, RenderError, RenderRequest

LOGGER = logging.getLogger(__name__)

WORKER_TYPE = "consumer"


class ItemOutcome(str, Enum):
    """What the queue should do with a processed message."""

    SUCCESS = "success"  # ack
    RETRY = "retry"  # redeliver after delay
    TERMINAL = "terminal"  # ack, item is dead-lettered


@dataclass
class ItemResult:
    """Result of processing one message."""

    message_id: str
    outcome: ItemOutcome
    records_found: int = 0
    records_saved: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    retry_delay: float = 0.0

    @property
    def should_ack(self) -> bool:
        return self.outcome != ItemOutcome.RETRY


@dataclass
class BatchSummary:
    results: List[ItemResult] = field(default_factory=list)

    def _count(self, outcome: ItemOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def succeeded(self) -> int:
        return self._count(ItemOutcome.SUCCESS)

    @property
    def retried(self) -> int:
        return self._count(ItemOutcome.RETRY)

    @property
    def terminal(self) -> int:
        return self._count(ItemOutcome.TERMINAL)

    @property
    def records_saved(self) -> int:
        return sum(r.records_saved for r in self.results)


class ScrapeConsumer:
    """Rate-limit, render, parse and persist each delivered work item."""

    def __init__(
        self,
        store: StateStore,
        render_client: RenderClient,
        settings: Optional[Settings] = None,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        retry_policy: Optional[RetryPolicy] = None,
        parser_lookup: Callable[[str], BaseLicenseParser] = get_parser,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize consumer.

        Parameters
        ----------
        store : StateStore
            Shared state store
        render_client : RenderClient
            Fetch-and-render backend
        settings : Settings, optional
            Worker id, render options and retry budget
        rate_limiter : RateLimiter, optional
            Per-source limiter (built from ``store`` when omitted)
        retry_policy : RetryPolicy, optional
            Retry budget (built from ``settings`` when omitted)
        parser_lookup : callable
            Region code -> parser; raises ``UnsupportedRegionError``
        """
        self.store = store
        self.render_client = render_client
        self.settings = settings or Settings()
        self.rate_limiter = rate_limiter or RateLimiter(
            store, default_rps=self.settings.rate_limit_per_second
        )
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=self.settings.max_retries,
            backoff_base=self.settings.retry_backoff_base,
            max_backoff=self.settings.retry_backoff_max,
        )
        self._parser_lookup = parser_lookup
        self._clock = clock
        self._monotonic = monotonic

    @property
    def worker_id(self) -> str:
        return self.settings.worker_id

    def process_batch(self, messages: List[QueueMessage]) -> BatchSummary:
        """Process every message; one failing item never aborts the batch."""
        summary = BatchSummary()
        LOGGER.info("Processing batch of %d message(s)", len(messages))

        for message in messages:
            try:
                summary.results.append(self.process_message(message))
            except Exception as exc:
                LOGGER.error(
                    "Unexpected error on message %s: %s",
                    message.message_id,
                    exc,
                    exc_info=True,
                )
                summary.results.append(
                    ItemResult(
                        message_id=message.message_id,
                        outcome=ItemOutcome.RETRY,
                        error=str(exc),
                        retry_delay=self.retry_policy.get_backoff_delay(message.retry_count),
                    )
                )

        LOGGER.info(
            "Batch done: succeeded=%d retried=%d terminal=%d saved=%d",
            summary.succeeded,
            summary.retried,
            summary.terminal,
            summary.records_saved,
        )
        return summary

    def process_message(self, message: QueueMessage) -> ItemResult:
        """Process a single message.

        Parameters
        ----------
        message : QueueMessage
            Delivered work item with its ``retry_count``

        Returns
        -------
        ItemResult
            Outcome for the queue; never raises for item-level failures
        """
        item = message.item
        start = self._monotonic()

        LOGGER.info(
            "Processing message %s (attempt %d): %s",
            message.message_id,
            message.retry_count + 1,
            item.label(),
        )

        try:
            parser = self._parser_lookup(item.region_code)
        except UnsupportedRegionError as exc:
            return self._handle_failure(message, exc, start, validation=True)

        self._record("mark processing", self.store.mark_processing, item, self._clock())
        self._record("rate limit", self.rate_limiter.acquire, item.source_identifier)

        try:
            request = RenderRequest(
                target_url=parser.build_search_url(item.geo_code),
                wait_condition=self.settings.render_wait_for,
                timeout_ms=self.settings.render_timeout_ms,
            )
            response = self.render_client.render(request)
            if not response.success:
                raise RenderError(f"Render returned status {response.status}")

            records = parser.parse(response.content, item.geo_code)
            saved = self.store.upsert_professionals(records)
        except Exception as exc:
            return self._handle_failure(message, exc, start, validation=False)

        duration_ms = self._elapsed_ms(start)
        now = self._clock()

        self._record(
            "processing log",
            self.store.log_processing,
            ProcessingLogEntry(
                worker_id=self.worker_id,
                geo_code=item.geo_code,
                region_code=item.region_code,
                status="completed",
                records_found=len(records),
                records_saved=saved,
                processing_time_ms=duration_ms,
                created_at=now,
            ),
        )
        self._record("queue state", self.store.mark_completed, item, len(records), duration_ms, now)
        self._record("queue counters", self.store.increment_processed, now)
        self._record(
            "worker health",
            self.store.record_heartbeat,
            self.worker_id,
            WORKER_TYPE,
            WorkerStatus.HEALTHY,
            duration_ms,
            False,
            now,
        )

        LOGGER.info(
            "Processed %s: %d found, %d stored (%dms)",
            item.label(),
            len(records),
            saved,
            duration_ms,
        )
        return ItemResult(
            message_id=message.message_id,
            outcome=ItemOutcome.SUCCESS,
            records_found=len(records),
            records_saved=saved,
            duration_ms=duration_ms,
        )

    def _handle_failure(
        self,
        message: QueueMessage,
        exc: Exception,
        start: float,
        validation: bool,
    ) -> ItemResult:
        item = message.item
        duration_ms = self._elapsed_ms(start)
        now = self._clock()
        error = str(exc) or exc.__class__.__name__
        terminal = validation or not self.retry_policy.should_retry(message.retry_count)
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

        LOGGER.warning(
            "Failed %s (attempt %d/%d, %s): %s",
            item.label(),
            message.retry_count + 1,
            self.retry_policy.max_retries + 1,
            "terminal" if terminal else "will retry",
            error,
        )

        self._record(
            "error log",
            self.store.log_error,
            ErrorLogEntry(
                worker_id=self.worker_id,
                error_type=type(exc).__name__,
                error_message=error,
                stack_trace=stack,
                context={
                    "message_id": message.message_id,
                    "geo_code": item.geo_code,
                    "region_code": item.region_code,
                    "source_identifier": item.source_identifier,
                    "terminal": terminal,
                },
                retry_count=message.retry_count,
                max_retries=self.retry_policy.max_retries,
                created_at=now,
            ),
        )
        self._record("queue counters", self.store.increment_failed, now)
        self._record(
            "worker health",
            self.store.record_heartbeat,
            self.worker_id,
            WORKER_TYPE,
            WorkerStatus.DEGRADED,
            duration_ms,
            True,
            now,
        )
        self._record(
            "processing log",
            self.store.log_processing,
            ProcessingLogEntry(
                worker_id=self.worker_id,
                geo_code=item.geo_code,
                region_code=item.region_code,
                status="failed",
                error_message=error,
                processing_time_ms=duration_ms,
                created_at=now,
            ),
        )
        self._record("queue state", self.store.mark_failed, item, error, terminal, now)

        if terminal:
            self._record(
                "dead letter",
                self.store.record_dead_letter,
                DeadLetterEntry(
                    message_id=message.message_id,
                    message_body=item.model_dump(mode="json"),
                    geo_code=item.geo_code,
                    region_code=item.region_code,
                    source_identifier=item.source_identifier,
                    category=item.category,
                    error_message=error,
                    error_stack=stack,
                    retry_count=message.retry_count,
                    original_scheduled_at=item.scheduled_at,
                    worker_version=self.settings.version,
                    failed_at=now,
                ),
            )
            return ItemResult(
                message_id=message.message_id,
                outcome=ItemOutcome.TERMINAL,
                duration_ms=duration_ms,
                error=error,
            )

        return ItemResult(
            message_id=message.message_id,
            outcome=ItemOutcome.RETRY,
            duration_ms=duration_ms,
            error=error,
            retry_delay=self.retry_policy.get_backoff_delay(message.retry_count),
        )

    def _record(self, what: str, func: Callable[..., Any], *args: Any) -> None:
        """Run a bookkeeping write; failures are logged and do not fail the item."""
        try:
            func(*args)
        except Exception as exc:
            LOGGER.error("Bookkeeping write failed (%s): %s", what, exc)

    def _elapsed_ms(self, start: float) -> int:
        return int((self._monotonic() - start) * 1000)
