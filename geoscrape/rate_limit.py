"""Per-source request spacing backed by the state store."""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .store import StateStore

LOGGER = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """Best-effort minimum spacing between requests to one source.

    The check is read, then sleep, then write with no lock. Two consumers
    hitting the same source at the same moment can both pass; licensing
    boards tolerate the occasional burst.
    """

    def __init__(
        self,
        store: StateStore,
        default_rps: float = 1.0,
        clock_ms: Callable[[], int] = _now_ms,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize rate limiter.

        Parameters
        ----------
        store : StateStore
            Holds one rate_limits row per source
        default_rps : float
            Requests per second for sources without a row yet
        clock_ms : callable
            Epoch-millisecond clock
        sleep : callable
            Sleep function taking seconds
        """
        if default_rps <= 0:
            raise ValueError("default_rps must be positive")
        self.store = store
        self.default_rps = default_rps
        self._clock_ms = clock_ms
        self._sleep = sleep

    def acquire(self, source_identifier: str) -> float:
        """Wait until a request to ``source_identifier`` is allowed, then record it.

        Returns
        -------
        float
            Seconds slept
        """
        record = self.store.get_rate_limit(source_identifier)
        rps = self.default_rps
        waited = 0.0

        if record is not None:
            if record.requests_per_second > 0:
                rps = record.requests_per_second
            waited = self._wait_seconds(record.last_request_time, rps)
            if waited > 0:
                LOGGER.debug("Rate limiting %s: sleeping %.3fs", source_identifier, waited)
                self._sleep(waited)

        self.store.record_request(source_identifier, self._clock_ms(), rps)
        return waited

    def _wait_seconds(self, last_request_time: Optional[int], rps: float) -> float:
        if last_request_time is None:
            return 0.0
        min_interval_ms = 1000.0 / rps
        elapsed_ms = self._clock_ms() - last_request_time
        if elapsed_ms >= min_interval_ms:
            return 0.0
        return (min_interval_ms - elapsed_ms) / 1000.0
