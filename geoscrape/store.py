"""State store: the single source of truth shared by all pipeline components.

Every component is stateless between invocations and rebuilds its context
from here. Writes are single-statement upserts or increments; related writes
across tables are not wrapped in one transaction, the coordinator's
reconciliation sweep repairs keys left in ``processing`` by a crash.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from psycopg2.extras import RealDictCursor, execute_values

from .db import connect, get_dsn
from .models import (
    DEFAULT_CATEGORY,
    QUEUE_NAME,
    DeadLetterEntry,
    ErrorLogEntry,
    HourlyStats,
    ProcessingLogEntry,
    Professional,
    QueueCounters,
    QueueStateRecord,
    RateLimitRecord,
    WorkerHealthRecord,
    WorkerStatus,
    WorkerSummary,
    WorkItem,
)

LOGGER = logging.getLogger(__name__)

# Worker ids whose processing_log rows are bookkeeping, not scrape attempts
NON_SCRAPE_WORKERS = ("coordinator", "seed")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS queue_state (
    queue_name TEXT PRIMARY KEY,
    total_items INTEGER NOT NULL DEFAULT 0,
    processed_items INTEGER NOT NULL DEFAULT 0,
    failed_items INTEGER NOT NULL DEFAULT 0,
    last_seed_time TIMESTAMPTZ,
    last_process_time TIMESTAMPTZ,
    status TEXT NOT NULL DEFAULT 'idle',
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS scrape_queue_state (
    geo_code TEXT NOT NULL,
    region_code TEXT NOT NULL,
    source_identifier TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT 'real_estate',
    status TEXT NOT NULL DEFAULT 'pending',
    priority INTEGER NOT NULL DEFAULT 5,
    queued_at TIMESTAMPTZ,
    started_at TIMESTAMPTZ,
    last_attempted_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    total_attempts INTEGER NOT NULL DEFAULT 0,
    successful_scrapes INTEGER NOT NULL DEFAULT 0,
    failed_scrapes INTEGER NOT NULL DEFAULT 0,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    last_result_count INTEGER NOT NULL DEFAULT 0,
    total_records_found INTEGER NOT NULL DEFAULT 0,
    last_scrape_duration_ms INTEGER,
    last_error TEXT,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW(),

    PRIMARY KEY (geo_code, region_code, source_identifier, category)
);

CREATE INDEX IF NOT EXISTS idx_scrape_queue_state_status
    ON scrape_queue_state(status, started_at);

CREATE TABLE IF NOT EXISTS rate_limits (
    source_identifier TEXT PRIMARY KEY,
    requests_per_second REAL NOT NULL DEFAULT 1.0,
    last_request_time BIGINT,
    request_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS processing_log (
    id BIGSERIAL PRIMARY KEY,
    worker_id TEXT NOT NULL,
    geo_code TEXT NOT NULL,
    region_code TEXT NOT NULL,
    status TEXT NOT NULL,
    records_found INTEGER DEFAULT 0,
    records_saved INTEGER DEFAULT 0,
    error_message TEXT,
    processing_time_ms INTEGER,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_processing_log_created ON processing_log(created_at);

CREATE TABLE IF NOT EXISTS error_log (
    id BIGSERIAL PRIMARY KEY,
    worker_id TEXT,
    error_type TEXT NOT NULL,
    error_message TEXT NOT NULL,
    stack_trace TEXT,
    context JSONB,
    retry_count INTEGER DEFAULT 0,
    max_retries INTEGER DEFAULT 3,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_error_log_created ON error_log(created_at);

CREATE TABLE IF NOT EXISTS worker_health (
    worker_id TEXT PRIMARY KEY,
    worker_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'healthy',
    last_heartbeat TIMESTAMPTZ,
    items_processed INTEGER NOT NULL DEFAULT 0,
    errors_count INTEGER NOT NULL DEFAULT 0,
    average_processing_time_ms DOUBLE PRECISION,
    context JSONB,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS dead_letter_queue (
    id BIGSERIAL PRIMARY KEY,
    message_id TEXT NOT NULL,
    message_body JSONB NOT NULL,
    geo_code TEXT NOT NULL,
    region_code TEXT NOT NULL,
    source_identifier TEXT NOT NULL,
    category TEXT,
    error_message TEXT,
    error_stack TEXT,
    retry_count INTEGER DEFAULT 0,
    failed_at TIMESTAMPTZ DEFAULT NOW(),
    original_scheduled_at TIMESTAMPTZ,
    worker_version TEXT,
    resolved BOOLEAN NOT NULL DEFAULT FALSE,
    resolved_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_dlq_resolved ON dead_letter_queue(resolved, failed_at);

CREATE TABLE IF NOT EXISTS seed_state (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL,
    expires_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS professionals (
    id BIGSERIAL PRIMARY KEY,
    license_number TEXT NOT NULL,
    name TEXT NOT NULL,
    region_code TEXT NOT NULL,
    source_identifier TEXT NOT NULL,
    category TEXT NOT NULL,
    license_status TEXT,
    company TEXT,
    address TEXT,
    city TEXT,
    postal_code TEXT,
    phone TEXT,
    email TEXT,
    scraped_at TIMESTAMPTZ DEFAULT NOW(),

    CONSTRAINT uq_professional_license_region UNIQUE (license_number, region_code)
);

CREATE INDEX IF NOT EXISTS idx_professionals_postal ON professionals(postal_code);

INSERT INTO queue_state (queue_name, status)
VALUES ('geoscrape-zip-queue', 'idle')
ON CONFLICT (queue_name) DO NOTHING;
"""


class StateStore(Protocol):
    """Persistence interface used by the producer, consumer and coordinator."""

    def get_queue_state(
        self,
        geo_code: str,
        region_code: str,
        source_identifier: str,
        category: str = DEFAULT_CATEGORY,
    ) -> Optional[QueueStateRecord]:
        ...

    def mark_queued(self, item: WorkItem, now: datetime) -> None:
        ...

    def mark_processing(self, item: WorkItem, now: datetime) -> None:
        ...

    def mark_completed(
        self, item: WorkItem, result_count: int, duration_ms: int, now: datetime
    ) -> None:
        ...

    def mark_failed(self, item: WorkItem, error: str, terminal: bool, now: datetime) -> None:
        ...

    def reconcile_stale_processing(self, older_than: datetime, now: datetime) -> int:
        ...

    def status_breakdown(self) -> List[Dict[str, Any]]:
        ...

    def get_queue_counters(self) -> Optional[QueueCounters]:
        ...

    def record_seed(self, queued: int, now: datetime) -> None:
        ...

    def increment_processed(self, now: datetime) -> None:
        ...

    def increment_failed(self, now: datetime) -> None:
        ...

    def get_rate_limit(self, source_identifier: str) -> Optional[RateLimitRecord]:
        ...

    def record_request(
        self, source_identifier: str, request_time_ms: int, requests_per_second: float
    ) -> None:
        ...

    def record_heartbeat(
        self,
        worker_id: str,
        worker_type: str,
        status: WorkerStatus,
        processing_time_ms: int,
        had_error: bool,
        now: datetime,
    ) -> None:
        ...

    def set_worker_status(
        self,
        worker_id: str,
        worker_type: str,
        status: WorkerStatus,
        context: Optional[Dict[str, Any]],
        now: datetime,
    ) -> None:
        ...

    def get_worker(self, worker_id: str) -> Optional[WorkerHealthRecord]:
        ...

    def list_workers(self, worker_type: str) -> List[WorkerHealthRecord]:
        ...

    def summarize_workers(self, worker_type: str, stale_before: datetime) -> WorkerSummary:
        ...

    def log_processing(self, entry: ProcessingLogEntry) -> None:
        ...

    def log_error(self, entry: ErrorLogEntry) -> None:
        ...

    def hourly_stats(self, since: datetime) -> HourlyStats:
        ...

    def record_dead_letter(self, entry: DeadLetterEntry) -> None:
        ...

    def list_dead_letters(self, limit: int = 50) -> List[DeadLetterEntry]:
        ...

    def upsert_professionals(self, records: Sequence[Professional]) -> int:
        ...

    def put_state(self, key: str, value: Dict[str, Any], expires_at: Optional[datetime]) -> None:
        ...

    def get_state(self, key: str, now: datetime) -> Optional[Dict[str, Any]]:
        ...


class PostgresStateStore:
    """PostgreSQL implementation of :class:`StateStore`."""

    def __init__(self, conn_string: Optional[str] = None, ensure_schema: bool = True) -> None:
        """Initialize the store.

        Parameters
        ----------
        conn_string : str, optional
            PostgreSQL connection string (falls back to the environment)
        ensure_schema : bool
            Create missing tables on startup
        """
        self.conn_string = get_dsn(conn_string)
        if ensure_schema:
            self.ensure_schema()

    def ensure_schema(self) -> None:
        """Create pipeline tables if they do not exist."""
        with connect(self.conn_string) as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
        LOGGER.info("Ensured pipeline schema exists")

    def _execute(self, sql: str, params: Any = None) -> int:
        with connect(self.conn_string) as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.rowcount

    def _fetchone(self, sql: str, params: Any = None) -> Optional[Dict[str, Any]]:
        with connect(self.conn_string) as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
        return dict(row) if row is not None else None

    def _fetchall(self, sql: str, params: Any = None) -> List[Dict[str, Any]]:
        with connect(self.conn_string) as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        return [dict(row) for row in rows]

    @staticmethod
    def _key_params(item: WorkItem) -> Dict[str, Any]:
        return {
            "geo_code": item.geo_code,
            "region_code": item.region_code,
            "source_identifier": item.source_identifier,
            "category": item.category,
        }

    # -- per-key queue state -------------------------------------------

    def get_queue_state(
        self,
        geo_code: str,
        region_code: str,
        source_identifier: str,
        category: str = DEFAULT_CATEGORY,
    ) -> Optional[QueueStateRecord]:
        row = self._fetchone(
            """
            SELECT *
            FROM scrape_queue_state
            WHERE geo_code = %s AND region_code = %s
              AND source_identifier = %s AND category = %s
            """,
            (geo_code, region_code, source_identifier, category),
        )
        return QueueStateRecord(**row) if row else None

    def mark_queued(self, item: WorkItem, now: datetime) -> None:
        self._execute(
            """
            INSERT INTO scrape_queue_state
                (geo_code, region_code, source_identifier, category,
                 status, priority, queued_at, updated_at)
            VALUES (%(geo_code)s, %(region_code)s, %(source_identifier)s, %(category)s,
                    'queued', %(priority)s, %(now)s, %(now)s)
            ON CONFLICT (geo_code, region_code, source_identifier, category) DO UPDATE
            SET status = 'queued',
                priority = EXCLUDED.priority,
                queued_at = EXCLUDED.queued_at,
                updated_at = EXCLUDED.updated_at
            """,
            {**self._key_params(item), "priority": item.priority, "now": now},
        )

    def mark_processing(self, item: WorkItem, now: datetime) -> None:
        self._execute(
            """
            INSERT INTO scrape_queue_state
                (geo_code, region_code, source_identifier, category,
                 status, priority, started_at, updated_at)
            VALUES (%(geo_code)s, %(region_code)s, %(source_identifier)s, %(category)s,
                    'processing', %(priority)s, %(now)s, %(now)s)
            ON CONFLICT (geo_code, region_code, source_identifier, category) DO UPDATE
            SET status = 'processing',
                started_at = EXCLUDED.started_at,
                updated_at = EXCLUDED.updated_at
            """,
            {**self._key_params(item), "priority": item.priority, "now": now},
        )

    def mark_completed(
        self, item: WorkItem, result_count: int, duration_ms: int, now: datetime
    ) -> None:
        self._execute(
            """
            UPDATE scrape_queue_state
            SET status = 'completed',
                successful_scrapes = successful_scrapes + 1,
                total_attempts = total_attempts + 1,
                last_result_count = %(result_count)s,
                total_records_found = total_records_found + %(result_count)s,
                last_scrape_duration_ms = %(duration_ms)s,
                completed_at = %(now)s,
                last_attempted_at = %(now)s,
                consecutive_failures = 0,
                last_error = NULL,
                updated_at = %(now)s
            WHERE geo_code = %(geo_code)s AND region_code = %(region_code)s
              AND source_identifier = %(source_identifier)s AND category = %(category)s
            """,
            {
                **self._key_params(item),
                "result_count": result_count,
                "duration_ms": duration_ms,
                "now": now,
            },
        )

    def mark_failed(self, item: WorkItem, error: str, terminal: bool, now: datetime) -> None:
        # A retryable failure goes straight back to queued: redelivery is pending
        self._execute(
            """
            UPDATE scrape_queue_state
            SET status = %(status)s,
                failed_scrapes = failed_scrapes + 1,
                total_attempts = total_attempts + 1,
                consecutive_failures = consecutive_failures + 1,
                last_error = %(error)s,
                last_attempted_at = %(now)s,
                updated_at = %(now)s
            WHERE geo_code = %(geo_code)s AND region_code = %(region_code)s
              AND source_identifier = %(source_identifier)s AND category = %(category)s
            """,
            {
                **self._key_params(item),
                "status": "failed" if terminal else "queued",
                "error": error,
                "now": now,
            },
        )

    def reconcile_stale_processing(self, older_than: datetime, now: datetime) -> int:
        count = self._execute(
            """
            UPDATE scrape_queue_state
            SET status = 'failed',
                last_error = 'processing abandoned (reconciled)',
                last_attempted_at = COALESCE(started_at, %(now)s),
                updated_at = %(now)s
            WHERE status = 'processing'
              AND started_at < %(older_than)s
            """,
            {"older_than": older_than, "now": now},
        )
        if count > 0:
            LOGGER.warning("Reconciled %d abandoned processing key(s) to failed", count)
        return count

    def status_breakdown(self) -> List[Dict[str, Any]]:
        return self._fetchall(
            """
            SELECT region_code, source_identifier, status, COUNT(*) AS count
            FROM scrape_queue_state
            GROUP BY region_code, source_identifier, status
            ORDER BY region_code, source_identifier, status
            """
        )

    # -- aggregate counters ---------------------------------------------

    def get_queue_counters(self) -> Optional[QueueCounters]:
        row = self._fetchone("SELECT * FROM queue_state WHERE queue_name = %s", (QUEUE_NAME,))
        if row is None:
            return None
        return QueueCounters(
            queue_name=row["queue_name"],
            total_items=row["total_items"],
            processed_items=row["processed_items"],
            failed_items=row["failed_items"],
            last_seed_time=row["last_seed_time"],
            last_process_time=row["last_process_time"],
            status=row["status"],
        )

    def record_seed(self, queued: int, now: datetime) -> None:
        self._execute(
            """
            INSERT INTO queue_state (queue_name, total_items, last_seed_time, status, updated_at)
            VALUES (%(queue_name)s, %(queued)s, %(now)s, 'active', %(now)s)
            ON CONFLICT (queue_name) DO UPDATE
            SET total_items = queue_state.total_items + EXCLUDED.total_items,
                last_seed_time = EXCLUDED.last_seed_time,
                status = 'active',
                updated_at = EXCLUDED.updated_at
            """,
            {"queue_name": QUEUE_NAME, "queued": queued, "now": now},
        )

    def increment_processed(self, now: datetime) -> None:
        self._execute(
            """
            UPDATE queue_state
            SET processed_items = processed_items + 1,
                last_process_time = %(now)s,
                updated_at = %(now)s
            WHERE queue_name = %(queue_name)s
            """,
            {"queue_name": QUEUE_NAME, "now": now},
        )

    def increment_failed(self, now: datetime) -> None:
        self._execute(
            """
            UPDATE queue_state
            SET failed_items = failed_items + 1,
                updated_at = %(now)s
            WHERE queue_name = %(queue_name)s
            """,
            {"queue_name": QUEUE_NAME, "now": now},
        )

    # -- rate limits ----------------------------------------------------

    def get_rate_limit(self, source_identifier: str) -> Optional[RateLimitRecord]:
        row = self._fetchone(
            """
            SELECT source_identifier, requests_per_second, last_request_time, request_count
            FROM rate_limits
            WHERE source_identifier = %s
            """,
            (source_identifier,),
        )
        return RateLimitRecord(**row) if row else None

    def record_request(
        self, source_identifier: str, request_time_ms: int, requests_per_second: float
    ) -> None:
        self._execute(
            """
            INSERT INTO rate_limits
                (source_identifier, requests_per_second, last_request_time, request_count)
            VALUES (%s, %s, %s, 1)
            ON CONFLICT (source_identifier) DO UPDATE
            SET last_request_time = EXCLUDED.last_request_time,
                request_count = rate_limits.request_count + 1
            """,
            (source_identifier, requests_per_second, request_time_ms),
        )

    # -- worker health --------------------------------------------------

    def record_heartbeat(
        self,
        worker_id: str,
        worker_type: str,
        status: WorkerStatus,
        processing_time_ms: int,
        had_error: bool,
        now: datetime,
    ) -> None:
        self._execute(
            """
            INSERT INTO worker_health
                (worker_id, worker_type, status, last_heartbeat, items_processed,
                 errors_count, average_processing_time_ms, created_at, updated_at)
            VALUES (%(worker_id)s, %(worker_type)s, %(status)s, %(now)s, 1,
                    %(errors)s, %(ms)s, %(now)s, %(now)s)
            ON CONFLICT (worker_id) DO UPDATE
            SET status = EXCLUDED.status,
                last_heartbeat = EXCLUDED.last_heartbeat,
                items_processed = worker_health.items_processed + 1,
                errors_count = worker_health.errors_count + EXCLUDED.errors_count,
                average_processing_time_ms = CASE
                    WHEN worker_health.items_processed = 0
                      OR worker_health.average_processing_time_ms IS NULL
                        THEN EXCLUDED.average_processing_time_ms
                    ELSE (worker_health.average_processing_time_ms * worker_health.items_processed
                          + EXCLUDED.average_processing_time_ms)
                         / (worker_health.items_processed + 1)
                END,
                updated_at = EXCLUDED.updated_at
            """,
            {
                "worker_id": worker_id,
                "worker_type": worker_type,
                "status": status.value,
                "now": now,
                "errors": 1 if had_error else 0,
                "ms": float(processing_time_ms),
            },
        )

    def set_worker_status(
        self,
        worker_id: str,
        worker_type: str,
        status: WorkerStatus,
        context: Optional[Dict[str, Any]],
        now: datetime,
    ) -> None:
        self._execute(
            """
            INSERT INTO worker_health
                (worker_id, worker_type, status, last_heartbeat, context, created_at, updated_at)
            VALUES (%(worker_id)s, %(worker_type)s, %(status)s, %(now)s,
                    %(context)s::jsonb, %(now)s, %(now)s)
            ON CONFLICT (worker_id) DO UPDATE
            SET status = EXCLUDED.status,
                last_heartbeat = EXCLUDED.last_heartbeat,
                context = COALESCE(EXCLUDED.context, worker_health.context),
                updated_at = EXCLUDED.updated_at
            """,
            {
                "worker_id": worker_id,
                "worker_type": worker_type,
                "status": status.value,
                "now": now,
                "context": json.dumps(context, default=str) if context is not None else None,
            },
        )

    def get_worker(self, worker_id: str) -> Optional[WorkerHealthRecord]:
        row = self._fetchone(
            """
            SELECT worker_id, worker_type, status, last_heartbeat, items_processed,
                   errors_count, average_processing_time_ms, context
            FROM worker_health
            WHERE worker_id = %s
            """,
            (worker_id,),
        )
        return WorkerHealthRecord(**row) if row else None

    def list_workers(self, worker_type: str) -> List[WorkerHealthRecord]:
        rows = self._fetchall(
            """
            SELECT worker_id, worker_type, status, last_heartbeat, items_processed,
                   errors_count, average_processing_time_ms, context
            FROM worker_health
            WHERE worker_type = %s
            ORDER BY worker_id
            """,
            (worker_type,),
        )
        return [WorkerHealthRecord(**row) for row in rows]

    def summarize_workers(self, worker_type: str, stale_before: datetime) -> WorkerSummary:
        row = self._fetchone(
            """
            SELECT
                COUNT(*) AS total_workers,
                COUNT(*) FILTER (WHERE status = 'healthy') AS healthy_workers,
                COUNT(*) FILTER (WHERE status = 'degraded') AS degraded_workers,
                COUNT(*) FILTER (WHERE last_heartbeat < %(stale_before)s) AS stale_workers,
                AVG(average_processing_time_ms) AS avg_processing_time,
                COALESCE(SUM(items_processed), 0) AS total_items_processed,
                COALESCE(SUM(errors_count), 0) AS total_errors
            FROM worker_health
            WHERE worker_type = %(worker_type)s
            """,
            {"worker_type": worker_type, "stale_before": stale_before},
        )
        return WorkerSummary(**row) if row else WorkerSummary()

    # -- logs -----------------------------------------------------------

    def log_processing(self, entry: ProcessingLogEntry) -> None:
        self._execute(
            """
            INSERT INTO processing_log
                (worker_id, geo_code, region_code, status, records_found,
                 records_saved, error_message, processing_time_ms, created_at)
            VALUES (%(worker_id)s, %(geo_code)s, %(region_code)s, %(status)s, %(records_found)s,
                    %(records_saved)s, %(error_message)s, %(processing_time_ms)s, %(created_at)s)
            """,
            entry.model_dump(),
        )

    def log_error(self, entry: ErrorLogEntry) -> None:
        params = entry.model_dump()
        params["context"] = json.dumps(entry.context, default=str) if entry.context else None
        self._execute(
            """
            INSERT INTO error_log
                (worker_id, error_type, error_message, stack_trace, context,
                 retry_count, max_retries, created_at)
            VALUES (%(worker_id)s, %(error_type)s, %(error_message)s, %(stack_trace)s,
                    %(context)s::jsonb, %(retry_count)s, %(max_retries)s, %(created_at)s)
            """,
            params,
        )

    def hourly_stats(self, since: datetime) -> HourlyStats:
        excluded = list(NON_SCRAPE_WORKERS)
        errors = self._fetchone(
            """
            SELECT COUNT(*) AS total_errors,
                   COUNT(DISTINCT worker_id) AS affected_workers
            FROM error_log
            WHERE created_at > %(since)s
              AND (worker_id IS NULL OR worker_id <> ALL(%(excluded)s))
            """,
            {"since": since, "excluded": excluded},
        ) or {}
        processed = self._fetchone(
            """
            SELECT COUNT(*) AS total_processed,
                   COALESCE(SUM(records_saved), 0) AS total_records_saved,
                   AVG(processing_time_ms) AS avg_processing_time
            FROM processing_log
            WHERE created_at > %(since)s
              AND worker_id <> ALL(%(excluded)s)
            """,
            {"since": since, "excluded": excluded},
        ) or {}
        avg_time = processed.get("avg_processing_time")
        return HourlyStats(
            total_errors=errors.get("total_errors", 0),
            affected_workers=errors.get("affected_workers", 0),
            total_processed=processed.get("total_processed", 0),
            total_records_saved=processed.get("total_records_saved", 0),
            avg_processing_time=float(avg_time) if avg_time is not None else None,
        )

    # -- dead letters ---------------------------------------------------

    def record_dead_letter(self, entry: DeadLetterEntry) -> None:
        params = entry.model_dump()
        params["message_body"] = json.dumps(entry.message_body, default=str)
        self._execute(
            """
            INSERT INTO dead_letter_queue
                (message_id, message_body, geo_code, region_code, source_identifier,
                 category, error_message, error_stack, retry_count, failed_at,
                 original_scheduled_at, worker_version)
            VALUES (%(message_id)s, %(message_body)s::jsonb, %(geo_code)s, %(region_code)s,
                    %(source_identifier)s, %(category)s, %(error_message)s, %(error_stack)s,
                    %(retry_count)s, %(failed_at)s, %(original_scheduled_at)s,
                    %(worker_version)s)
            """,
            params,
        )

    def list_dead_letters(self, limit: int = 50) -> List[DeadLetterEntry]:
        rows = self._fetchall(
            """
            SELECT message_id, message_body, geo_code, region_code, source_identifier,
                   category, error_message, error_stack, retry_count, failed_at,
                   original_scheduled_at, worker_version
            FROM dead_letter_queue
            WHERE resolved = FALSE
            ORDER BY failed_at DESC
            LIMIT %s
            """,
            (limit,),
        )
        return [DeadLetterEntry(**row) for row in rows]

    # -- scraped records ------------------------------------------------

    def upsert_professionals(self, records: Sequence[Professional]) -> int:
        """Insert records, ignoring natural-key conflicts.

        Returns
        -------
        int
            Number of newly inserted rows
        """
        if not records:
            return 0

        rows = [
            (
                r.license_number,
                r.name,
                r.region_code,
                r.source_identifier,
                r.category,
                r.license_status,
                r.company,
                r.address,
                r.city,
                r.postal_code,
                r.phone,
                r.email,
                r.scraped_at,
            )
            for r in records
        ]
        with connect(self.conn_string) as conn:
            with conn.cursor() as cur:
                inserted = execute_values(
                    cur,
                    """
                    INSERT INTO professionals
                        (license_number, name, region_code, source_identifier, category,
                         license_status, company, address, city, postal_code, phone,
                         email, scraped_at)
                    VALUES %s
                    ON CONFLICT (license_number, region_code) DO NOTHING
                    RETURNING id
                    """,
                    rows,
                    page_size=len(rows),
                    fetch=True,
                )
        LOGGER.debug("Stored %d/%d professional(s)", len(inserted), len(records))
        return len(inserted)

    # -- short-lived state blobs ------------------------------------------

    def put_state(self, key: str, value: Dict[str, Any], expires_at: Optional[datetime]) -> None:
        self._execute(
            """
            INSERT INTO seed_state (key, value, expires_at, updated_at)
            VALUES (%s, %s::jsonb, %s, NOW())
            ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value,
                expires_at = EXCLUDED.expires_at,
                updated_at = NOW()
            """,
            (key, json.dumps(value, default=str), expires_at),
        )

    def get_state(self, key: str, now: datetime) -> Optional[Dict[str, Any]]:
        row = self._fetchone(
            """
            SELECT value
            FROM seed_state
            WHERE key = %s AND (expires_at IS NULL OR expires_at > %s)
            """,
            (key, now),
        )
        return row["value"] if row else None
