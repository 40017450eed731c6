"""Worker loop that feeds queue batches to the scrape consumer."""
from __future__ import annotations

import logging
import signal
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .consumer import BatchSummary, ScrapeConsumer
from .queue import WorkQueue

LOGGER = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Worker configuration."""

    worker_id: str
    batch_size: int = 10
    poll_interval: float = 5.0  # Seconds between queue polls
    graceful_shutdown: bool = True
    max_batches: Optional[int] = None  # Stop after N non-empty batches
    exit_when_empty: bool = False  # Stop on the first empty poll


class Worker:
    """Queue worker."""

    def __init__(
        self,
        config: WorkerConfig,
        queue: WorkQueue,
        consumer: ScrapeConsumer,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize worker.

        Parameters
        ----------
        config : WorkerConfig
            Worker configuration
        queue : WorkQueue
            Work queue instance
        consumer : ScrapeConsumer
            Processes each received batch
        """
        self.config = config
        self.queue = queue
        self.consumer = consumer
        self._sleep = sleep
        self.running = False
        self.batches_processed = 0
        self.items_succeeded = 0
        self.items_retried = 0
        self.items_terminal = 0
        self.leases_lost = 0
        self._setup_signal_handlers()

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        if self.config.graceful_shutdown:
            signal.signal(signal.SIGINT, self._handle_shutdown)
            signal.signal(signal.SIGTERM, self._handle_shutdown)

    def _handle_shutdown(self, signum, frame) -> None:
        """Handle shutdown signal."""
        LOGGER.info("Received shutdown signal %s, stopping gracefully...", signum)
        self.running = False

    def run(self) -> None:
        """Run worker loop."""
        LOGGER.info(
            "Starting worker %s (batch_size=%d, poll_interval=%.1fs)",
            self.config.worker_id,
            self.config.batch_size,
            self.config.poll_interval,
        )

        self.running = True

        while self.running:
            try:
                if self.config.max_batches is not None:
                    if self.batches_processed >= self.config.max_batches:
                        LOGGER.info(
                            "Reached max batches limit (%d), shutting down",
                            self.config.max_batches,
                        )
                        break

                if not self.run_once():
                    if self.config.exit_when_empty:
                        LOGGER.info("Queue empty, shutting down")
                        break
                    LOGGER.debug("No messages available, sleeping...")
                    self._sleep(self.config.poll_interval)

            except KeyboardInterrupt:
                LOGGER.info("Keyboard interrupt, shutting down...")
                self.running = False
            except Exception as exc:
                LOGGER.error("Worker error: %s", exc, exc_info=True)
                self._sleep(self.config.poll_interval)

        self._log_stats()

    def run_once(self) -> Optional[BatchSummary]:
        """Receive one batch, process it and settle every message.

        Returns
        -------
        BatchSummary or None
            None when the queue had nothing visible
        """
        messages = self.queue.receive(self.config.batch_size)
        if not messages:
            return None

        summary = self.consumer.process_batch(messages)
        leases = {m.message_id: m.lease_token for m in messages}

        for result in summary.results:
            lease_token = leases.get(result.message_id)
            try:
                if result.should_ack:
                    held = self.queue.ack(result.message_id, lease_token=lease_token)
                else:
                    held = self.queue.retry(
                        result.message_id, result.retry_delay, lease_token=lease_token
                    )
                if not held:
                    # Another receive owns the message now
                    self.leases_lost += 1
            except Exception as exc:
                # Lease expiry redelivers the message
                LOGGER.error("Failed to settle message %s: %s", result.message_id, exc)

        self.batches_processed += 1
        self.items_succeeded += summary.succeeded
        self.items_retried += summary.retried
        self.items_terminal += summary.terminal
        return summary

    def _log_stats(self) -> None:
        """Log worker statistics."""
        LOGGER.info(
            "Worker %s shutting down: batches=%d, succeeded=%d, retried=%d, terminal=%d, "
            "leases_lost=%d",
            self.config.worker_id,
            self.batches_processed,
            self.items_succeeded,
            self.items_retried,
            self.items_terminal,
            self.leases_lost,
        )
