import pytest

from conftest import FIXED_NOW, FL_RESULTS_TEXT, FakeRenderClient, make_item
from geoscrape.models import QueueStatus, WorkerStatus
from geoscrape.rate_limit import RateLimiter
from geoscrape.scrape_queue.consumer import ItemOutcome, ScrapeConsumer
from geoscrape.scrape_queue.queue import QueueMessage
from geoscrape.scrape_queue.render import RenderResponse, RenderTimeout
from geoscrape.scrape_queue.worker import Worker, WorkerConfig


def _consumer(store, render_client, settings, clock, sleeps=None):
    limiter = RateLimiter(
        store,
        default_rps=1.0,
        clock_ms=lambda: int(FIXED_NOW.timestamp() * 1000),
        sleep=(sleeps.append if sleeps is not None else lambda seconds: None),
    )
    return ScrapeConsumer(
        store,
        render_client,
        settings,
        rate_limiter=limiter,
        clock=clock,
        monotonic=lambda: 0.0,
    )


def _queued_message(store, retry_count=0, **item_kwargs):
    item = make_item(**item_kwargs)
    store.mark_queued(item, FIXED_NOW)
    return QueueMessage(item=item, message_id=f"msg-{item.geo_code}", retry_count=retry_count)


def test_successful_item_is_stored_and_acked(store, settings, clock):
    render = FakeRenderClient(RenderResponse(status=200, content=FL_RESULTS_TEXT))
    consumer = _consumer(store, render, settings, clock)
    message = _queued_message(store)

    result = consumer.process_message(message)

    assert result.outcome == ItemOutcome.SUCCESS
    assert result.should_ack
    assert result.records_found == 2
    assert result.records_saved == 2
    assert set(store.professionals) == {("SL3412345", "FL"), ("BK987654", "FL")}

    record = store.states[message.item.key]
    assert record.status == QueueStatus.COMPLETED
    assert record.successful_scrapes == 1
    assert record.last_result_count == 2
    assert record.last_attempted_at == FIXED_NOW

    assert store.counters.processed_items == 1
    assert store.counters.last_process_time == FIXED_NOW
    worker = store.workers["worker-test"]
    assert worker.status == WorkerStatus.HEALTHY
    assert worker.worker_type == "consumer"
    assert store.processing_logs[-1].status == "completed"
    assert store.processing_logs[-1].records_saved == 2
    assert store.rate_limits["FL_DBPR"].request_count == 1
    assert store.error_logs == []


def test_render_request_targets_region_search_url(store, settings, clock):
    render = FakeRenderClient(RenderResponse(status=200, content=""))
    consumer = _consumer(store, render, settings, clock)

    consumer.process_message(_queued_message(store, geo_code="75201", region_code="TX", source_identifier="TX_TREC"))

    request = render.requests[0]
    assert request.target_url == "https://www.trec.texas.gov/apps/license-holder-search/?zip=75201"
    assert request.wait_condition == "table"
    assert request.timeout_ms == 30000


def test_timeout_on_first_attempt_is_retried(store, settings, clock):
    render = FakeRenderClient(error=RenderTimeout("timed out"))
    consumer = _consumer(store, render, settings, clock)
    message = _queued_message(store, retry_count=0)

    result = consumer.process_message(message)

    assert result.outcome == ItemOutcome.RETRY
    assert not result.should_ack
    assert result.retry_delay == 30.0
    assert store.counters.failed_items == 1

    error = store.error_logs[-1]
    assert error.error_type == "RenderTimeout"
    assert error.retry_count == 0
    assert error.max_retries == 3

    assert store.states[message.item.key].status == QueueStatus.QUEUED
    worker = store.workers["worker-test"]
    assert worker.status == WorkerStatus.DEGRADED
    assert worker.errors_count == 1
    assert store.processing_logs[-1].status == "failed"
    assert store.dead_letters == []


def test_exhausted_retries_are_terminal(store, settings, clock):
    render = FakeRenderClient(error=RenderTimeout("timed out"))
    consumer = _consumer(store, render, settings, clock)
    message = _queued_message(store, retry_count=3)

    result = consumer.process_message(message)

    assert result.outcome == ItemOutcome.TERMINAL
    assert result.should_ack
    assert store.states[message.item.key].status == QueueStatus.FAILED
    assert len(store.dead_letters) == 1
    dead = store.dead_letters[0]
    assert dead.message_id == message.message_id
    assert dead.retry_count == 3
    assert dead.worker_version == "test"


def test_non_success_status_fails_the_item(store, settings, clock):
    render = FakeRenderClient(RenderResponse(status=503, content="busy"))
    consumer = _consumer(store, render, settings, clock)

    result = consumer.process_message(_queued_message(store, retry_count=1))

    assert result.outcome == ItemOutcome.RETRY
    assert result.retry_delay == 60.0
    assert "503" in result.error


def test_unsupported_region_is_terminal_without_render(store, settings, clock):
    render = FakeRenderClient(RenderResponse(status=200, content=FL_RESULTS_TEXT))
    consumer = _consumer(store, render, settings, clock)
    message = _queued_message(store, geo_code="98101", region_code="WA", source_identifier="WA_DOL")

    result = consumer.process_message(message)

    assert result.outcome == ItemOutcome.TERMINAL
    assert render.requests == []
    assert store.error_logs[-1].error_type == "UnsupportedRegionError"
    assert store.states[message.item.key].status == QueueStatus.FAILED
    assert len(store.dead_letters) == 1


def test_bookkeeping_failure_does_not_fail_the_item(store, settings, clock):
    store.fail_on = {"log_processing", "record_heartbeat"}
    render = FakeRenderClient(RenderResponse(status=200, content=FL_RESULTS_TEXT))
    consumer = _consumer(store, render, settings, clock)
    message = _queued_message(store)

    result = consumer.process_message(message)

    assert result.outcome == ItemOutcome.SUCCESS
    assert store.states[message.item.key].status == QueueStatus.COMPLETED


def test_sink_failure_is_retryable(store, settings, clock):
    store.fail_on = {"upsert_professionals"}
    render = FakeRenderClient(RenderResponse(status=200, content=FL_RESULTS_TEXT))
    consumer = _consumer(store, render, settings, clock)

    result = consumer.process_message(_queued_message(store))

    assert result.outcome == ItemOutcome.RETRY


def test_redelivered_item_does_not_duplicate_records(store, settings, clock):
    render = FakeRenderClient(RenderResponse(status=200, content=FL_RESULTS_TEXT))
    consumer = _consumer(store, render, settings, clock)

    first = consumer.process_message(_queued_message(store))
    second = consumer.process_message(_queued_message(store))

    assert first.records_saved == 2
    assert second.records_found == 2
    assert second.records_saved == 0
    assert len(store.professionals) == 2


def test_batch_continues_past_failures(store, settings, clock):
    render = FakeRenderClient(RenderResponse(status=200, content=FL_RESULTS_TEXT))
    consumer = _consumer(store, render, settings, clock)
    messages = [
        _queued_message(store, geo_code="98101", region_code="WA", source_identifier="WA_DOL"),
        _queued_message(store, geo_code="33101"),
    ]

    summary = consumer.process_batch(messages)

    assert [r.outcome for r in summary.results] == [ItemOutcome.TERMINAL, ItemOutcome.SUCCESS]
    assert summary.terminal == 1
    assert summary.succeeded == 1
    assert summary.records_saved == 2


def test_rate_limit_spaces_requests_to_same_source(store, settings, clock):
    sleeps = []
    render = FakeRenderClient(RenderResponse(status=200, content=""))
    consumer = _consumer(store, render, settings, clock, sleeps=sleeps)

    consumer.process_batch([_queued_message(store, geo_code="33101"), _queued_message(store, geo_code="33109")])

    assert sleeps == [pytest.approx(1.0)]
    assert store.rate_limits["FL_DBPR"].request_count == 2


def test_worker_settles_each_message(store, queue, settings, clock):
    render = FakeRenderClient(RenderResponse(status=200, content=FL_RESULTS_TEXT))
    consumer = _consumer(store, render, settings, clock)
    queue.send(make_item(geo_code="33101"))
    queue.send(make_item(geo_code="98101", region_code="WA", source_identifier="WA_DOL"))

    worker = Worker(
        WorkerConfig(worker_id="worker-test", graceful_shutdown=False, exit_when_empty=True),
        queue,
        consumer,
        sleep=lambda seconds: None,
    )
    worker.run()

    assert len(queue.acked) == 2
    assert queue.retried == []
    assert worker.items_succeeded == 1
    assert worker.items_terminal == 1
    assert queue.depth() == 0


def test_worker_retries_until_budget_is_spent(store, queue, settings, clock):
    render = FakeRenderClient(error=RenderTimeout("timed out"))
    consumer = _consumer(store, render, settings, clock)
    queue.send(make_item(geo_code="33101"))

    worker = Worker(
        WorkerConfig(worker_id="worker-test", graceful_shutdown=False, exit_when_empty=True),
        queue,
        consumer,
        sleep=lambda seconds: None,
    )
    worker.run()

    # First delivery plus three retries
    assert len(render.requests) == 4
    assert [delay for _, delay in queue.retried] == [30.0, 60.0, 120.0]
    assert len(queue.acked) == 1
    assert len(store.dead_letters) == 1
    assert store.counters.failed_items == 4


def test_worker_stops_after_max_batches(store, queue, settings, clock):
    render = FakeRenderClient(RenderResponse(status=200, content=""))
    consumer = _consumer(store, render, settings, clock)
    for geo_code in ("33101", "33109", "33139"):
        queue.send(make_item(geo_code=geo_code))

    worker = Worker(
        WorkerConfig(worker_id="worker-test", batch_size=1, graceful_shutdown=False, max_batches=2),
        queue,
        consumer,
        sleep=lambda seconds: None,
    )
    worker.run()

    assert worker.batches_processed == 2
    assert queue.depth() == 1


class LeaseExpiringRenderClient(FakeRenderClient):
    """Lets the queue lease lapse while the render call is in progress."""

    def __init__(self, queue):
        super().__init__(RenderResponse(status=200, content=""))
        self.queue = queue

    def render(self, request):
        self.queue.expire_leases()
        return super().render(request)


def test_worker_does_not_settle_a_message_after_its_lease_lapsed(store, queue, settings, clock):
    consumer = _consumer(store, LeaseExpiringRenderClient(queue), settings, clock)
    queue.send(make_item(geo_code="33101"))

    worker = Worker(
        WorkerConfig(worker_id="worker-test", graceful_shutdown=False),
        queue,
        consumer,
        sleep=lambda seconds: None,
    )
    summary = worker.run_once()

    assert summary.succeeded == 1
    assert worker.leases_lost == 1
    assert queue.acked == []
    # The redelivered copy is left for whoever receives it next
    assert queue.depth() == 1
    assert queue.pending[0].retry_count == 1


def test_worker_settles_with_the_lease_it_received(store, queue, settings, clock):
    consumer = _consumer(store, FakeRenderClient(RenderResponse(status=200, content="")), settings, clock)
    queue.send(make_item(geo_code="33101"))

    worker = Worker(
        WorkerConfig(worker_id="worker-test", graceful_shutdown=False),
        queue,
        consumer,
        sleep=lambda seconds: None,
    )
    worker.run_once()

    assert worker.leases_lost == 0
    assert len(queue.acked) == 1
