from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import pytest

from geoscrape.config import Settings
from geoscrape.models import (
    DEFAULT_CATEGORY,
    DeadLetterEntry,
    ErrorLogEntry,
    HourlyStats,
    ProcessingLogEntry,
    Professional,
    QueueCounters,
    QueueStateRecord,
    QueueStatus,
    RateLimitRecord,
    WorkerHealthRecord,
    WorkerStatus,
    WorkerSummary,
    WorkItem,
)
from geoscrape.scrape_queue.queue import QueueMessage
from geoscrape.scrape_queue.render import RenderRequest, RenderResponse
from geoscrape.store import NON_SCRAPE_WORKERS

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeStateStore:
    """In-memory state store mirroring PostgresStateStore semantics."""

    def __init__(self) -> None:
        self.states: Dict[tuple, QueueStateRecord] = {}
        self.counters: Optional[QueueCounters] = QueueCounters()
        self.rate_limits: Dict[str, RateLimitRecord] = {}
        self.workers: Dict[str, WorkerHealthRecord] = {}
        self.processing_logs: List[ProcessingLogEntry] = []
        self.error_logs: List[ErrorLogEntry] = []
        self.dead_letters: List[DeadLetterEntry] = []
        self.professionals: Dict[tuple, Professional] = {}
        self.blobs: Dict[str, Dict[str, Any]] = {}
        self.fail_on: set = set()

    def _maybe_fail(self, name: str) -> None:
        if name in self.fail_on:
            raise RuntimeError(f"{name} unavailable")

    # per-key state

    def get_queue_state(self, geo_code, region_code, source_identifier, category=DEFAULT_CATEGORY):
        self._maybe_fail("get_queue_state")
        return self.states.get((geo_code, region_code, source_identifier, category))

    def _upsert(self, item: WorkItem) -> QueueStateRecord:
        record = self.states.get(item.key)
        if record is None:
            record = QueueStateRecord(
                geo_code=item.geo_code,
                region_code=item.region_code,
                source_identifier=item.source_identifier,
                category=item.category,
                priority=item.priority,
            )
            self.states[item.key] = record
        return record

    def mark_queued(self, item, now):
        self._maybe_fail("mark_queued")
        record = self._upsert(item)
        record.status = QueueStatus.QUEUED
        record.priority = item.priority
        record.queued_at = now

    def mark_processing(self, item, now):
        self._maybe_fail("mark_processing")
        record = self._upsert(item)
        record.status = QueueStatus.PROCESSING
        record.started_at = now

    def mark_completed(self, item, result_count, duration_ms, now):
        self._maybe_fail("mark_completed")
        record = self.states.get(item.key)
        if record is None:
            return
        record.status = QueueStatus.COMPLETED
        record.successful_scrapes += 1
        record.total_attempts += 1
        record.last_result_count = result_count
        record.completed_at = now
        record.last_attempted_at = now
        record.consecutive_failures = 0
        record.last_error = None

    def mark_failed(self, item, error, terminal, now):
        self._maybe_fail("mark_failed")
        record = self.states.get(item.key)
        if record is None:
            return
        record.status = QueueStatus.FAILED if terminal else QueueStatus.QUEUED
        record.failed_scrapes += 1
        record.total_attempts += 1
        record.consecutive_failures += 1
        record.last_error = error
        record.last_attempted_at = now

    def reconcile_stale_processing(self, older_than, now):
        self._maybe_fail("reconcile_stale_processing")
        count = 0
        for record in self.states.values():
            if (
                record.status == QueueStatus.PROCESSING
                and record.started_at is not None
                and record.started_at < older_than
            ):
                record.status = QueueStatus.FAILED
                record.last_error = "processing abandoned (reconciled)"
                record.last_attempted_at = record.started_at
                count += 1
        return count

    def status_breakdown(self):
        self._maybe_fail("status_breakdown")
        counts: Dict[tuple, int] = {}
        for r in self.states.values():
            key = (r.region_code, r.source_identifier, r.status.value)
            counts[key] = counts.get(key, 0) + 1
        return [
            {"region_code": k[0], "source_identifier": k[1], "status": k[2], "count": v}
            for k, v in sorted(counts.items())
        ]

    # counters

    def get_queue_counters(self):
        self._maybe_fail("get_queue_counters")
        return self.counters

    def record_seed(self, queued, now):
        self._maybe_fail("record_seed")
        if self.counters is None:
            self.counters = QueueCounters()
        self.counters.total_items += queued
        self.counters.last_seed_time = now
        self.counters.status = "active"

    def increment_processed(self, now):
        self._maybe_fail("increment_processed")
        if self.counters is not None:
            self.counters.processed_items += 1
            self.counters.last_process_time = now

    def increment_failed(self, now):
        self._maybe_fail("increment_failed")
        if self.counters is not None:
            self.counters.failed_items += 1

    # rate limits

    def get_rate_limit(self, source_identifier):
        self._maybe_fail("get_rate_limit")
        return self.rate_limits.get(source_identifier)

    def record_request(self, source_identifier, request_time_ms, requests_per_second):
        self._maybe_fail("record_request")
        record = self.rate_limits.get(source_identifier)
        if record is None:
            self.rate_limits[source_identifier] = RateLimitRecord(
                source_identifier=source_identifier,
                requests_per_second=requests_per_second,
                last_request_time=request_time_ms,
                request_count=1,
            )
        else:
            record.last_request_time = request_time_ms
            record.request_count += 1

    # worker health

    def record_heartbeat(self, worker_id, worker_type, status, processing_time_ms, had_error, now):
        self._maybe_fail("record_heartbeat")
        record = self.workers.get(worker_id)
        if record is None:
            self.workers[worker_id] = WorkerHealthRecord(
                worker_id=worker_id,
                worker_type=worker_type,
                status=status,
                last_heartbeat=now,
                items_processed=1,
                errors_count=1 if had_error else 0,
                average_processing_time_ms=float(processing_time_ms),
            )
            return
        if record.items_processed == 0 or record.average_processing_time_ms is None:
            record.average_processing_time_ms = float(processing_time_ms)
        else:
            record.average_processing_time_ms = (
                record.average_processing_time_ms * record.items_processed + processing_time_ms
            ) / (record.items_processed + 1)
        record.items_processed += 1
        record.errors_count += 1 if had_error else 0
        record.status = status
        record.last_heartbeat = now

    def set_worker_status(self, worker_id, worker_type, status, context, now):
        self._maybe_fail("set_worker_status")
        record = self.workers.get(worker_id)
        if record is None:
            record = WorkerHealthRecord(worker_id=worker_id, worker_type=worker_type)
            self.workers[worker_id] = record
        record.status = status
        record.last_heartbeat = now
        if context is not None:
            record.context = context

    def get_worker(self, worker_id):
        self._maybe_fail("get_worker")
        return self.workers.get(worker_id)

    def list_workers(self, worker_type):
        self._maybe_fail("list_workers")
        return sorted(
            (w for w in self.workers.values() if w.worker_type == worker_type),
            key=lambda w: w.worker_id,
        )

    def summarize_workers(self, worker_type, stale_before):
        self._maybe_fail("summarize_workers")
        rows = [w for w in self.workers.values() if w.worker_type == worker_type]
        times = [w.average_processing_time_ms for w in rows if w.average_processing_time_ms is not None]
        return WorkerSummary(
            total_workers=len(rows),
            healthy_workers=sum(1 for w in rows if w.status == WorkerStatus.HEALTHY),
            degraded_workers=sum(1 for w in rows if w.status == WorkerStatus.DEGRADED),
            stale_workers=sum(
                1 for w in rows if w.last_heartbeat is not None and w.last_heartbeat < stale_before
            ),
            avg_processing_time=sum(times) / len(times) if times else None,
            total_items_processed=sum(w.items_processed for w in rows),
            total_errors=sum(w.errors_count for w in rows),
        )

    # logs

    def log_processing(self, entry):
        self._maybe_fail("log_processing")
        self.processing_logs.append(entry)

    def log_error(self, entry):
        self._maybe_fail("log_error")
        self.error_logs.append(entry)

    def hourly_stats(self, since):
        self._maybe_fail("hourly_stats")
        errors = [
            e
            for e in self.error_logs
            if e.created_at > since and e.worker_id not in NON_SCRAPE_WORKERS
        ]
        processed = [
            p
            for p in self.processing_logs
            if p.created_at > since and p.worker_id not in NON_SCRAPE_WORKERS
        ]
        times = [p.processing_time_ms for p in processed if p.processing_time_ms is not None]
        return HourlyStats(
            total_errors=len(errors),
            affected_workers=len({e.worker_id for e in errors}),
            total_processed=len(processed),
            total_records_saved=sum(p.records_saved for p in processed),
            avg_processing_time=sum(times) / len(times) if times else None,
        )

    # dead letters

    def record_dead_letter(self, entry):
        self._maybe_fail("record_dead_letter")
        self.dead_letters.append(entry)

    def list_dead_letters(self, limit=50):
        self._maybe_fail("list_dead_letters")
        return list(reversed(self.dead_letters))[:limit]

    # records

    def upsert_professionals(self, records: Sequence[Professional]) -> int:
        self._maybe_fail("upsert_professionals")
        inserted = 0
        for record in records:
            if record.natural_key not in self.professionals:
                self.professionals[record.natural_key] = record
                inserted += 1
        return inserted

    # blobs

    def put_state(self, key, value, expires_at):
        self._maybe_fail("put_state")
        self.blobs[key] = {"value": value, "expires_at": expires_at}

    def get_state(self, key, now):
        self._maybe_fail("get_state")
        blob = self.blobs.get(key)
        if blob is None:
            return None
        if blob["expires_at"] is not None and blob["expires_at"] <= now:
            return None
        return blob["value"]


class FakeQueue:
    """In-memory queue: retried messages come back immediately with retry_count + 1."""

    def __init__(self) -> None:
        self.pending: deque = deque()
        self.sent: List[QueueMessage] = []
        self.acked: List[str] = []
        self.retried: List[tuple] = []
        self.fail_on_geo_codes: set = set()
        self._in_flight: Dict[str, QueueMessage] = {}

    def send(self, item: WorkItem) -> str:
        if item.geo_code in self.fail_on_geo_codes:
            raise RuntimeError(f"queue rejected {item.geo_code}")
        message = QueueMessage(item=item, message_id=uuid.uuid4().hex)
        self.sent.append(message)
        self.pending.append(message)
        return message.message_id

    def receive(self, batch_size: int = 10) -> List[QueueMessage]:
        lease_token = uuid.uuid4().hex
        batch = []
        while self.pending and len(batch) < batch_size:
            message = self.pending.popleft()
            message.lease_token = lease_token
            self._in_flight[message.message_id] = message
            batch.append(message)
        return batch

    def expire_leases(self) -> None:
        """Make every in-flight message visible again, as a lapsed lease would."""
        for message in self._in_flight.values():
            self.pending.append(
                QueueMessage(
                    item=message.item,
                    message_id=message.message_id,
                    retry_count=message.retry_count + 1,
                )
            )
        self._in_flight.clear()

    def _holds(self, message_id: str, lease_token: Optional[str]) -> bool:
        message = self._in_flight.get(message_id)
        return message is not None and lease_token in (None, message.lease_token)

    def ack(self, message_id: str, lease_token: Optional[str] = None) -> bool:
        if not self._holds(message_id, lease_token):
            return False
        self._in_flight.pop(message_id)
        self.acked.append(message_id)
        return True

    def retry(
        self, message_id: str, delay_seconds: float = 0.0, lease_token: Optional[str] = None
    ) -> bool:
        if not self._holds(message_id, lease_token):
            return False
        message = self._in_flight.pop(message_id)
        self.retried.append((message_id, delay_seconds))
        message.retry_count += 1
        self.pending.append(message)
        return True

    def depth(self) -> int:
        return len(self.pending) + len(self._in_flight)

    def get_stats(self) -> Dict[str, int]:
        return {"visible": len(self.pending), "in_flight": len(self._in_flight), "acked": len(self.acked)}


class FakeRenderClient:
    """Returns a canned response, or raises ``error`` when set."""

    def __init__(self, response: Optional[RenderResponse] = None, error: Optional[Exception] = None):
        self.response = response or RenderResponse(status=200, content="")
        self.error = error
        self.requests: List[RenderRequest] = []

    def render(self, request: RenderRequest) -> RenderResponse:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response


FL_RESULTS_TEXT = """
License Number
SL3412345
JOHN SMITH
SMITH REALTY LLC
123 Ocean Drive
MIAMI BEACH, FL 33139
BK987654
MARIA GARCIA
4500 Biscayne Blvd
MIAMI, FL 33137
(305) 555-0199
"""


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def store():
    return FakeStateStore()


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def settings():
    return Settings(worker_id="worker-test", max_retries=3, version="test")


def make_item(geo_code="33101", region_code="FL", source_identifier="FL_DBPR", **kwargs) -> WorkItem:
    return WorkItem(
        geo_code=geo_code,
        region_code=region_code,
        source_identifier=source_identifier,
        scheduled_at=FIXED_NOW,
        **kwargs,
    )
