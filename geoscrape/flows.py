"""Prefect flow wiring for the timer-driven seed and coordinator runs."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv
from prefect import flow, get_run_logger, serve, task

from geoscrape.config import Settings
from geoscrape.scrape_queue.services import build_coordinator, build_producer

BASE_DIR = Path(__file__).resolve().parents[1]
load_dotenv(BASE_DIR / ".env")

SEED_CRON = "0 */6 * * *"
COORDINATOR_INTERVAL_SECONDS = 300


@task
def seed_task() -> Dict[str, int]:
    """Production seed; stores the ``last_cron_run`` blob."""
    logger = get_run_logger()
    producer = build_producer(Settings.from_env())
    result = producer.scheduled_seed()
    logger.info(
        "seed_task queued=%s skipped=%s errors=%s",
        result.queued,
        result.skipped,
        result.errors,
    )
    return result.model_dump()


@task
def coordinator_task() -> Dict[str, Any]:
    """One coordinator health check."""
    logger = get_run_logger()
    report = build_coordinator(Settings.from_env()).tick()
    logger.info(
        "coordinator_task status=%s score=%.2f alerts=%s",
        report.status.value,
        report.health_score,
        len(report.alerts),
    )
    return report.to_dict()


@flow(name="geoscrape-seed")
def seed_flow() -> Dict[str, int]:
    summary = seed_task()
    get_run_logger().info("seed_flow summary=%s", json.dumps(summary))
    return summary


@flow(name="geoscrape-coordinator")
def coordinator_flow() -> Dict[str, Any]:
    report = coordinator_task()
    get_run_logger().info("coordinator_flow status=%s", report["status"])
    return report


def serve_schedules(
    seed_cron: str = SEED_CRON,
    coordinator_interval: int = COORDINATOR_INTERVAL_SECONDS,
) -> None:
    """Serve both flows on their schedules until interrupted."""
    serve(
        seed_flow.to_deployment(name="geoscrape-seed", cron=seed_cron),
        coordinator_flow.to_deployment(
            name="geoscrape-coordinator", interval=coordinator_interval
        ),
    )
