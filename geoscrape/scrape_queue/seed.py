"""Seed producer: walks static ZIP lists and enqueues work that is due."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Union

from ..config import Settings
from ..geo_codes import source_for_region, zip_codes
from ..models import QueueStateRecord, QueueStatus, SeedMode, SeedResult, WorkItem, utcnow
from ..parsers import supported_regions
from ..store import StateStore
from .queue import WorkQueue

LOGGER = logging.getLogger(__name__)

LAST_CRON_RUN_KEY = "last_cron_run"
FAILED_COOLDOWN = timedelta(hours=24)
COMPLETED_COOLDOWN = timedelta(days=7)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_already_queued(record: Optional[QueueStateRecord], now: datetime) -> bool:
    """Decide whether a key should be skipped by the seed producer.

    Queued and processing keys are always skipped. Failed keys cool down for
    24 hours and completed keys for 7 days, measured from the last attempt.
    A failed or completed key with no attempt timestamp is eligible.
    """
    if record is None:
        return False

    if record.status in (QueueStatus.QUEUED, QueueStatus.PROCESSING):
        return True

    if record.last_attempted_at is None:
        return False

    elapsed = _as_utc(now) - _as_utc(record.last_attempted_at)
    if record.status == QueueStatus.FAILED:
        return elapsed < FAILED_COOLDOWN
    if record.status == QueueStatus.COMPLETED:
        return elapsed < COMPLETED_COOLDOWN
    return False


class SeedProducer:
    """Enqueue ZIP codes per region, skipping keys that are in flight or cooling down."""

    def __init__(
        self,
        store: StateStore,
        queue: WorkQueue,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.queue = queue
        self.settings = settings or Settings()
        self._clock = clock

    def seed(
        self,
        mode: Union[SeedMode, str] = SeedMode.TEST,
        regions: Optional[Iterable[str]] = None,
        force: bool = False,
    ) -> SeedResult:
        """Walk the ZIP lists for ``mode`` and enqueue eligible keys.

        Parameters
        ----------
        mode : SeedMode or str
            ``test`` (5 codes per region) or ``production`` (~100 per region)
        regions : iterable of str, optional
            Region codes to seed; every parsed region when omitted. Regions
            without a parser are skipped
        force : bool
            Enqueue even keys that are in flight or cooling down

        Returns
        -------
        SeedResult
            Counts of queued, skipped and errored keys

        Raises
        ------
        ValueError
            If ``mode`` is not a known seed mode
        """
        mode = SeedMode(mode)
        codes = zip_codes(mode)
        supported = set(supported_regions())
        if regions is None:
            selected = [r for r in codes if r in supported]
        else:
            selected = sorted({r.upper() for r in regions})
        now = self._clock()
        result = SeedResult()

        LOGGER.info("Seeding %s mode for regions %s (force=%s)", mode.value, selected, force)

        for region in selected:
            source = source_for_region(region)
            if region not in codes or source is None:
                LOGGER.warning("Unknown region %s, skipping", region)
                continue
            if region not in supported:
                LOGGER.warning("No parser for region %s, skipping", region)
                continue

            for geo_code in codes[region]:
                try:
                    if not force:
                        record = self.store.get_queue_state(geo_code, region, source)
                        if is_already_queued(record, now):
                            result.skipped += 1
                            continue

                    item = WorkItem(
                        geo_code=geo_code,
                        region_code=region,
                        source_identifier=source,
                        priority=self.settings.default_priority,
                        scheduled_at=now,
                    )
                    self.queue.send(item)
                    self.store.mark_queued(item, now)
                    result.queued += 1
                except Exception as exc:
                    LOGGER.error("Failed to seed %s-%s: %s", region, geo_code, exc)
                    result.errors += 1

        if result.queued:
            try:
                self.store.record_seed(result.queued, now)
            except Exception as exc:
                LOGGER.error("Failed to update queue counters after seed: %s", exc)

        LOGGER.info(
            "Seed complete: queued=%d skipped=%d errors=%d",
            result.queued,
            result.skipped,
            result.errors,
        )
        return result

    def scheduled_seed(self) -> SeedResult:
        """Timer entry point: production seed plus a ``last_cron_run`` summary blob."""
        result = self.seed(SeedMode.PRODUCTION)
        now = self._clock()
        try:
            self.store.put_state(
                LAST_CRON_RUN_KEY,
                {"timestamp": now.isoformat(), "result": result.model_dump()},
                expires_at=now + timedelta(days=self.settings.seed_state_ttl_days),
            )
        except Exception as exc:
            LOGGER.error("Failed to persist %s: %s", LAST_CRON_RUN_KEY, exc)
        return result
