"""Pydantic models shared across the scrape pipeline."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field

DEFAULT_CATEGORY = "real_estate"
QUEUE_NAME = "geoscrape-zip-queue"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueStatus(str, Enum):
    """Lifecycle of a queue key."""

    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkerStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SeedMode(str, Enum):
    TEST = "test"
    PRODUCTION = "production"


class WorkItem(BaseModel):
    """Unit of scrape work: one ZIP code for one licensing source."""

    geo_code: str
    region_code: str
    source_identifier: str
    category: str = DEFAULT_CATEGORY
    priority: int = 5
    scheduled_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> Tuple[str, str, str, str]:
        return (self.geo_code, self.region_code, self.source_identifier, self.category)

    def label(self) -> str:
        return f"{self.region_code}-{self.geo_code}"


class QueueStateRecord(BaseModel):
    geo_code: str
    region_code: str
    source_identifier: str
    category: str = DEFAULT_CATEGORY
    status: QueueStatus = QueueStatus.PENDING
    priority: int = 5
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    last_attempted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_attempts: int = 0
    successful_scrapes: int = 0
    failed_scrapes: int = 0
    consecutive_failures: int = 0
    last_result_count: int = 0
    last_error: Optional[str] = None


class QueueCounters(BaseModel):
    """Aggregate counter row for the whole queue."""

    queue_name: str = QUEUE_NAME
    total_items: int = 0
    processed_items: int = 0
    failed_items: int = 0
    last_seed_time: Optional[datetime] = None
    last_process_time: Optional[datetime] = None
    status: str = "idle"

    @property
    def current_depth(self) -> int:
        return self.total_items - self.processed_items - self.failed_items


class RateLimitRecord(BaseModel):
    source_identifier: str
    requests_per_second: float = 1.0
    last_request_time: Optional[int] = None  # epoch milliseconds
    request_count: int = 0


class WorkerHealthRecord(BaseModel):
    worker_id: str
    worker_type: str
    status: WorkerStatus = WorkerStatus.HEALTHY
    last_heartbeat: Optional[datetime] = None
    items_processed: int = 0
    errors_count: int = 0
    average_processing_time_ms: Optional[float] = None
    context: Optional[Dict[str, Any]] = None


class ProcessingLogEntry(BaseModel):
    worker_id: str
    geo_code: str
    region_code: str
    status: str
    records_found: int = 0
    records_saved: int = 0
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)


class ErrorLogEntry(BaseModel):
    worker_id: Optional[str] = None
    error_type: str
    error_message: str
    stack_trace: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime = Field(default_factory=utcnow)


class DeadLetterEntry(BaseModel):
    message_id: str
    message_body: Dict[str, Any]
    geo_code: str
    region_code: str
    source_identifier: str
    category: Optional[str] = None
    error_message: Optional[str] = None
    error_stack: Optional[str] = None
    retry_count: int = 0
    original_scheduled_at: Optional[datetime] = None
    worker_version: Optional[str] = None
    failed_at: datetime = Field(default_factory=utcnow)


class Professional(BaseModel):
    """Licensed professional scraped from a licensing board."""

    license_number: str
    name: str
    region_code: str
    source_identifier: str
    category: str = DEFAULT_CATEGORY
    license_status: str = "active"
    company: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    scraped_at: datetime = Field(default_factory=utcnow)

    @property
    def natural_key(self) -> Tuple[str, str]:
        return (self.license_number, self.region_code)


class Alert(BaseModel):
    type: str
    message: str
    severity: Severity
    timestamp: datetime = Field(default_factory=utcnow)


class SeedResult(BaseModel):
    queued: int = 0
    skipped: int = 0
    errors: int = 0


class WorkerSummary(BaseModel):
    """Aggregated worker_health rows for one worker type."""

    total_workers: int = 0
    healthy_workers: int = 0
    degraded_workers: int = 0
    stale_workers: int = 0
    avg_processing_time: Optional[float] = None
    total_items_processed: int = 0
    total_errors: int = 0


class HourlyStats(BaseModel):
    total_errors: int = 0
    affected_workers: int = 0
    total_processed: int = 0
    total_records_saved: int = 0
    avg_processing_time: Optional[float] = None

    @property
    def error_rate(self) -> float:
        if self.total_processed <= 0:
            return 0.0
        return self.total_errors / self.total_processed
