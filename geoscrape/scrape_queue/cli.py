"""CLI for the scrape queue pipeline."""
from __future__ import annotations

import json
import logging
import sys
from typing import Optional, Tuple

import click

from ..config import Settings
from ..models import SeedMode
from .services import (
    build_consumer,
    build_coordinator,
    build_producer,
    build_queue,
    build_store,
)
from .worker import Worker, WorkerConfig

LOGGER = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )


@click.group()
@click.option("--debug/--no-debug", default=None, help="Verbose logging")
@click.pass_context
def cli(ctx: click.Context, debug: Optional[bool]) -> None:
    """Scrape queue CLI."""
    settings = Settings.from_env()
    if debug is not None:
        settings.debug = debug
    _configure_logging(settings.debug)
    ctx.obj = settings


@cli.command("init-db")
@click.pass_obj
def init_db(settings: Settings) -> None:
    """Create pipeline and queue tables."""
    build_store(settings)
    build_queue(settings)
    click.echo("✅ Schema ready")


@cli.command()
@click.option(
    "--mode",
    type=click.Choice([m.value for m in SeedMode]),
    default=SeedMode.TEST.value,
    show_default=True,
    help="ZIP list to seed",
)
@click.option(
    "--region",
    "regions",
    multiple=True,
    help="Region code (repeatable, e.g. --region FL --region TX)",
)
@click.option("--force", is_flag=True, help="Enqueue even recently attempted keys")
@click.pass_obj
def seed(settings: Settings, mode: str, regions: Tuple[str, ...], force: bool) -> None:
    """Seed the queue from the static ZIP lists."""
    producer = build_producer(settings)
    result = producer.seed(mode, regions=regions or None, force=force)
    click.echo(
        f"✅ Queued {result.queued}, skipped {result.skipped}, errors {result.errors}"
    )


@cli.command()
@click.option("--worker-id", help="Worker ID (defaults to hostname-UUID)")
@click.option("--batch-size", type=int, help="Messages per batch")
@click.option("--poll-interval", type=float, help="Seconds between queue polls")
@click.option("--max-batches", type=int, help="Max batches before shutdown (for testing)")
@click.option("--exit-when-empty", is_flag=True, help="Stop when the queue is drained")
@click.pass_obj
def run(
    settings: Settings,
    worker_id: Optional[str],
    batch_size: Optional[int],
    poll_interval: Optional[float],
    max_batches: Optional[int],
    exit_when_empty: bool,
) -> None:
    """Run a consumer worker."""
    if worker_id:
        settings.worker_id = worker_id
    if batch_size:
        settings.batch_size = batch_size

    click.echo(f"🚀 Starting worker: {settings.worker_id}")

    config = WorkerConfig(
        worker_id=settings.worker_id,
        batch_size=settings.batch_size,
        poll_interval=poll_interval or settings.poll_interval,
        max_batches=max_batches,
        exit_when_empty=exit_when_empty,
    )
    consumer = build_consumer(settings)
    worker = Worker(config, build_queue(settings), consumer)
    try:
        worker.run()
    finally:
        close = getattr(consumer.render_client, "close", None)
        if close is not None:
            close()


@cli.command()
@click.pass_obj
def coordinate(settings: Settings) -> None:
    """Run one coordinator tick."""
    report = build_coordinator(settings).tick()
    click.echo(json.dumps(report.to_dict(), indent=2, default=str))
    if report.error:
        sys.exit(1)


@cli.command()
@click.pass_obj
def stats(settings: Settings) -> None:
    """Show queue statistics."""
    store = build_store(settings)
    queue = build_queue(settings)

    click.echo("\n📊 Queue Statistics\n" + "=" * 40)

    counters = store.get_queue_counters()
    if counters is not None:
        click.echo(f"Total items:     {counters.total_items}")
        click.echo(f"Processed items: {counters.processed_items}")
        click.echo(f"Failed items:    {counters.failed_items}")
        click.echo(f"Current depth:   {counters.current_depth}")

    click.echo(f"Unacked messages: {queue.depth()}")

    click.echo("\nMessages:")
    for name, count in queue.get_stats().items():
        click.echo(f"  {name:15s}: {count:6d}")

    click.echo("\nKeys by status:")
    for row in store.status_breakdown():
        click.echo(
            f"  {row['region_code']:3s} {row['source_identifier']:8s} "
            f"{row['status']:12s}: {row['count']:6d}"
        )

    click.echo()


@cli.command("dead-letters")
@click.option("--limit", default=20, type=int, show_default=True)
@click.pass_obj
def dead_letters(settings: Settings, limit: int) -> None:
    """List unresolved dead-lettered items."""
    entries = build_store(settings).list_dead_letters(limit)
    if not entries:
        click.echo("No unresolved dead letters")
        return
    for entry in entries:
        click.echo(
            f"{entry.failed_at:%Y-%m-%d %H:%M} {entry.region_code}-{entry.geo_code} "
            f"retries={entry.retry_count}: {entry.error_message}"
        )


@cli.command()
@click.option(
    "--days",
    default=7,
    type=int,
    help="Remove messages acked more than N days ago",
)
@click.confirmation_option(prompt="Are you sure you want to purge acked messages?")
@click.pass_obj
def purge(settings: Settings, days: int) -> None:
    """Remove old acknowledged queue messages."""
    count = build_queue(settings).purge_acked(days)
    click.echo(f"✅ Purged {count} acked message(s)")


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
def serve(host: str, port: int) -> None:
    """Run the HTTP status surface."""
    import uvicorn

    uvicorn.run("geoscrape.api:create_app", factory=True, host=host, port=port)


@cli.command()
def schedule() -> None:
    """Serve the seed and coordinator flows on their schedules."""
    from ..flows import serve_schedules

    serve_schedules()


if __name__ == "__main__":
    cli()
