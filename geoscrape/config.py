"""Environment-driven settings for every pipeline component."""
from __future__ import annotations

import os
import socket
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _default_worker_id() -> str:
    hostname = os.getenv("HOSTNAME") or socket.gethostname() or "localhost"
    return f"{hostname}-{uuid.uuid4().hex[:8]}"


@dataclass
class Settings:
    """Pipeline settings.

    Use ``Settings.from_env()`` in entry points; construct directly in tests.
    """

    database_url: Optional[str] = None
    version: str = "1.0.0"
    debug: bool = False

    # Seed producer
    default_priority: int = 5
    seed_state_ttl_days: int = 7

    # Consumer
    worker_id: str = field(default_factory=_default_worker_id)
    batch_size: int = 10
    poll_interval: float = 5.0
    max_retries: int = 3
    retry_backoff_base: float = 30.0
    retry_backoff_max: float = 3600.0
    rate_limit_per_second: float = 1.0
    visibility_timeout: Optional[float] = None  # Derived from the batch worst case when unset

    # Render capability
    render_backend: str = "http"  # http | browser
    render_service_url: str = "http://localhost:8787"
    render_timeout_ms: int = 30000
    render_wait_for: str = "table"

    # Coordinator
    max_queue_depth: int = 10000
    seed_threshold: int = 50
    error_rate_threshold: float = 0.1
    stale_minutes: int = 30
    heartbeat_stale_minutes: int = 5
    reconcile_after_minutes: int = 30

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> Settings:
        """Load settings from ``.env`` and the process environment."""
        load_dotenv(env_file or BASE_DIR / ".env")
        return cls(
            database_url=os.getenv("PG_DSN") or os.getenv("DATABASE_URL"),
            version=os.getenv("SEED_VERSION", "1.0.0"),
            debug=_env_bool("DEBUG", False),
            default_priority=_env_int("DEFAULT_PRIORITY", 5),
            seed_state_ttl_days=_env_int("SEED_STATE_TTL_DAYS", 7),
            worker_id=os.getenv("WORKER_ID") or _default_worker_id(),
            batch_size=_env_int("BATCH_SIZE", 10),
            poll_interval=_env_float("POLL_INTERVAL", 5.0),
            max_retries=_env_int("MAX_RETRIES", 3),
            retry_backoff_base=_env_float("RETRY_BACKOFF_BASE", 30.0),
            retry_backoff_max=_env_float("RETRY_BACKOFF_MAX", 3600.0),
            rate_limit_per_second=_env_float("RATE_LIMIT_PER_SECOND", 1.0),
            visibility_timeout=_env_float("VISIBILITY_TIMEOUT", 0.0) or None,
            render_backend=os.getenv("RENDER_BACKEND", "http"),
            render_service_url=os.getenv("RENDER_SERVICE_URL", "http://localhost:8787"),
            render_timeout_ms=_env_int("RENDER_TIMEOUT_MS", 30000),
            render_wait_for=os.getenv("RENDER_WAIT_FOR", "table"),
            max_queue_depth=_env_int("MAX_QUEUE_DEPTH", 10000),
            seed_threshold=_env_int("SEED_THRESHOLD", 50),
            error_rate_threshold=_env_float("ALERT_THRESHOLD_ERROR_RATE", 0.1),
            stale_minutes=_env_int("ALERT_THRESHOLD_QUEUE_STALE_MINUTES", 30),
            heartbeat_stale_minutes=_env_int("HEARTBEAT_STALE_MINUTES", 5),
            reconcile_after_minutes=_env_int("RECONCILE_AFTER_MINUTES", 30),
        )

    def queue_visibility_timeout(self) -> float:
        """Seconds a received batch stays leased.

        Defaults to the time a full batch takes when every render call runs
        to its HTTP timeout (render timeout plus 5s) after a full rate-limit wait.
        """
        if self.visibility_timeout:
            return self.visibility_timeout
        per_item = self.render_timeout_ms / 1000 + 5 + 1 / self.rate_limit_per_second
        return self.batch_size * per_item
