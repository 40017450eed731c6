"""Retry budget for queue redelivery."""
from __future__ import annotations

import logging
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Retry budget tracker for redelivered work items.

    Unlike an in-process retry loop, the attempt count travels with the
    message (``retry_count``), so the policy itself holds no state.
    """

    max_retries: int = 3
    backoff_base: float = 30.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 3600.0

    def should_retry(self, retry_count: int) -> bool:
        """Check if a message that failed on attempt ``retry_count`` gets another try."""
        return retry_count < self.max_retries

    def get_backoff_delay(self, retry_count: int) -> float:
        """Calculate redelivery delay in seconds for the given attempt."""
        delay = self.backoff_base * (self.backoff_multiplier ** max(retry_count, 0))
        return min(delay, self.max_backoff)
