"""Coordinator: periodic health check over the state store.

Each tick reads aggregate metrics, scores pipeline health, records alerts
and re-seeds the queue when it runs low. A tick never raises: a failure in
its own queries marks the coordinator ``critical`` and is logged.
"""
from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ..config import Settings
from ..models import (
    Alert,
    ErrorLogEntry,
    HourlyStats,
    ProcessingLogEntry,
    QueueCounters,
    SeedMode,
    SeedResult,
    Severity,
    WorkerStatus,
    WorkerSummary,
    utcnow,
)
from ..store import StateStore
from .consumer import WORKER_TYPE as CONSUMER_WORKER_TYPE
from .seed import SeedProducer

LOGGER = logging.getLogger(__name__)

COORDINATOR_ID = "coordinator"


@dataclass
class CoordinatorConfig:
    """Coordinator thresholds."""

    max_queue_depth: int = 10000
    seed_threshold: int = 50
    error_rate_threshold: float = 0.1
    stale_minutes: int = 30  # No successful processing for this long -> queue_stale
    heartbeat_stale_minutes: int = 5
    reconcile_after_minutes: int = 30

    @classmethod
    def from_settings(cls, settings: Settings) -> CoordinatorConfig:
        return cls(
            max_queue_depth=settings.max_queue_depth,
            seed_threshold=settings.seed_threshold,
            error_rate_threshold=settings.error_rate_threshold,
            stale_minutes=settings.stale_minutes,
            heartbeat_stale_minutes=settings.heartbeat_stale_minutes,
            reconcile_after_minutes=settings.reconcile_after_minutes,
        )


@dataclass
class HealthMetrics:
    error_rate: float
    healthy_worker_ratio: float
    queue_depth_ratio: float
    has_stale_workers: bool


def calculate_health_score(metrics: HealthMetrics) -> float:
    """Composite health score in [0, 1].

    Error rate costs 5x (10% errors halves the score, 20% zeroes it), the
    score scales with the healthy worker ratio, a nearly full queue costs
    20%, a nearly empty one 10%, and any stale worker 30%.
    """
    score = 1.0
    score *= max(0.0, 1.0 - metrics.error_rate * 5)
    score *= metrics.healthy_worker_ratio

    if metrics.queue_depth_ratio > 0.8:
        score *= 0.8
    elif metrics.queue_depth_ratio < 0.01:
        score *= 0.9

    if metrics.has_stale_workers:
        score *= 0.7

    return max(0.0, min(1.0, score))


def health_status(score: float) -> WorkerStatus:
    if score > 0.8:
        return WorkerStatus.HEALTHY
    if score > 0.5:
        return WorkerStatus.DEGRADED
    return WorkerStatus.CRITICAL


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def evaluate_alerts(
    *,
    error_rate: float,
    workers: WorkerSummary,
    counters: Optional[QueueCounters],
    current_depth: int,
    config: CoordinatorConfig,
    now: datetime,
) -> List[Alert]:
    """Evaluate every alert rule independently."""
    alerts: List[Alert] = []

    if error_rate > config.error_rate_threshold:
        alerts.append(
            Alert(
                type="high_error_rate",
                message=(
                    f"Error rate {error_rate * 100:.2f}% exceeds threshold "
                    f"{config.error_rate_threshold * 100:g}%"
                ),
                severity=Severity.CRITICAL,
                timestamp=now,
            )
        )

    if workers.stale_workers > 0:
        alerts.append(
            Alert(
                type="stale_workers",
                message=(
                    f"{workers.stale_workers} workers have not reported heartbeat "
                    f"in {config.heartbeat_stale_minutes} minutes"
                ),
                severity=Severity.HIGH,
                timestamp=now,
            )
        )

    if workers.degraded_workers > workers.healthy_workers:
        alerts.append(
            Alert(
                type="degraded_workers",
                message=(
                    f"More degraded workers ({workers.degraded_workers}) "
                    f"than healthy ({workers.healthy_workers})"
                ),
                severity=Severity.HIGH,
                timestamp=now,
            )
        )

    if counters is not None and counters.last_process_time is not None:
        stale_before = _as_utc(now) - timedelta(minutes=config.stale_minutes)
        if _as_utc(counters.last_process_time) < stale_before:
            alerts.append(
                Alert(
                    type="queue_stale",
                    message=f"Queue has not processed items in {config.stale_minutes} minutes",
                    severity=Severity.CRITICAL,
                    timestamp=now,
                )
            )

    if current_depth > config.max_queue_depth:
        alerts.append(
            Alert(
                type="queue_overflow",
                message=f"Queue depth ({current_depth}) exceeds maximum ({config.max_queue_depth})",
                severity=Severity.MEDIUM,
                timestamp=now,
            )
        )

    return alerts


@dataclass
class CoordinatorReport:
    """Outcome of one coordinator tick."""

    status: WorkerStatus
    health_score: float
    queue_depth: int = 0
    seed_triggered: bool = False
    seed_result: Optional[SeedResult] = None
    reconciled: int = 0
    alerts: List[Alert] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "health_score": self.health_score,
            "queue_depth": self.queue_depth,
            "seed_triggered": self.seed_triggered,
            "seed_result": self.seed_result.model_dump() if self.seed_result else None,
            "reconciled": self.reconciled,
            "alerts": [a.model_dump(mode="json") for a in self.alerts],
            "error": self.error,
        }


class Coordinator:
    """Scores pipeline health and keeps the queue fed."""

    def __init__(
        self,
        store: StateStore,
        producer: SeedProducer,
        config: Optional[CoordinatorConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.producer = producer
        self.config = config or CoordinatorConfig()
        self._clock = clock

    def tick(self) -> CoordinatorReport:
        """Run one health check; never raises."""
        now = self._clock()
        try:
            return self._run(now)
        except Exception as exc:
            LOGGER.error("Coordinator error: %s", exc, exc_info=True)
            self._mark_critical(exc, now)
            return CoordinatorReport(
                status=WorkerStatus.CRITICAL,
                health_score=0.0,
                error=str(exc) or exc.__class__.__name__,
            )

    def _run(self, now: datetime) -> CoordinatorReport:
        cfg = self.config

        reconciled = self.store.reconcile_stale_processing(
            now - timedelta(minutes=cfg.reconcile_after_minutes), now
        )

        counters = self.store.get_queue_counters()
        current_depth = counters.current_depth if counters else 0

        seed_result: Optional[SeedResult] = None
        if current_depth < cfg.seed_threshold:
            LOGGER.info(
                "Queue depth %d below threshold %d, triggering seed",
                current_depth,
                cfg.seed_threshold,
            )
            seed_result = self.producer.seed(SeedMode.PRODUCTION)
            self.store.log_processing(
                ProcessingLogEntry(
                    worker_id=COORDINATOR_ID,
                    geo_code="trigger",
                    region_code="ALL",
                    status="seed_triggered",
                    records_found=seed_result.queued,
                    created_at=now,
                )
            )

        workers = self.store.summarize_workers(
            CONSUMER_WORKER_TYPE, now - timedelta(minutes=cfg.heartbeat_stale_minutes)
        )
        stats = self.store.hourly_stats(now - timedelta(hours=1))
        error_rate = stats.error_rate

        alerts = evaluate_alerts(
            error_rate=error_rate,
            workers=workers,
            counters=counters,
            current_depth=current_depth,
            config=cfg,
            now=now,
        )

        score = calculate_health_score(
            HealthMetrics(
                error_rate=error_rate,
                healthy_worker_ratio=workers.healthy_workers / max(workers.total_workers, 1),
                queue_depth_ratio=current_depth / max(cfg.max_queue_depth, 1),
                has_stale_workers=workers.stale_workers > 0,
            )
        )
        status = health_status(score)

        context = self._status_context(
            counters, current_depth, workers, stats, error_rate, score, alerts, reconciled
        )
        self.store.set_worker_status(COORDINATOR_ID, COORDINATOR_ID, status, context, now)

        if alerts:
            LOGGER.warning("Alerts: %s", ", ".join(a.type for a in alerts))
        for alert in alerts:
            self.store.log_error(
                ErrorLogEntry(
                    worker_id=COORDINATOR_ID,
                    error_type=alert.type,
                    error_message=alert.message,
                    context=alert.model_dump(mode="json"),
                    created_at=now,
                )
            )

        LOGGER.info(
            "Coordinator tick: depth=%d healthy_workers=%d error_rate=%.2f%% score=%.2f alerts=%d",
            current_depth,
            workers.healthy_workers,
            error_rate * 100,
            score,
            len(alerts),
        )

        return CoordinatorReport(
            status=status,
            health_score=score,
            queue_depth=current_depth,
            seed_triggered=seed_result is not None,
            seed_result=seed_result,
            reconciled=reconciled,
            alerts=alerts,
            context=context,
        )

    @staticmethod
    def _status_context(
        counters: Optional[QueueCounters],
        current_depth: int,
        workers: WorkerSummary,
        stats: HourlyStats,
        error_rate: float,
        score: float,
        alerts: List[Alert],
        reconciled: int,
    ) -> Dict[str, Any]:
        return {
            "queue_depth": current_depth,
            "queue_status": counters.status if counters else "unknown",
            "worker_stats": {
                "total": workers.total_workers,
                "healthy": workers.healthy_workers,
                "degraded": workers.degraded_workers,
                "stale": workers.stale_workers,
                "avg_processing_time_ms": workers.avg_processing_time or 0,
            },
            "processing_stats": {
                "hourly_processed": stats.total_processed,
                "hourly_records": stats.total_records_saved,
                "avg_time_ms": stats.avg_processing_time or 0,
            },
            "error_stats": {
                "hourly_errors": stats.total_errors,
                "error_rate": error_rate,
                "affected_workers": stats.affected_workers,
            },
            "reconciled": reconciled,
            "health_score": score,
            "alerts": [a.model_dump(mode="json") for a in alerts],
        }

    def _mark_critical(self, exc: Exception, now: datetime) -> None:
        try:
            self.store.log_error(
                ErrorLogEntry(
                    worker_id=COORDINATOR_ID,
                    error_type="coordinator_error",
                    error_message=str(exc) or "Unknown error",
                    stack_trace="".join(
                        traceback.format_exception(type(exc), exc, exc.__traceback__)
                    ),
                    created_at=now,
                )
            )
            self.store.set_worker_status(
                COORDINATOR_ID, COORDINATOR_ID, WorkerStatus.CRITICAL, None, now
            )
        except Exception as inner:
            LOGGER.error("Failed to record coordinator failure: %s", inner)
