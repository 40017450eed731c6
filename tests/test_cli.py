from click.testing import CliRunner

from conftest import FIXED_NOW, make_item
from geoscrape.scrape_queue import cli as cli_module


def test_stats_reports_counters_and_unacked_messages(monkeypatch, store, queue):
    item = make_item(geo_code="33101")
    queue.send(item)
    store.mark_queued(item, FIXED_NOW)
    store.record_seed(1, FIXED_NOW)
    monkeypatch.setattr(cli_module, "build_store", lambda settings: store)
    monkeypatch.setattr(cli_module, "build_queue", lambda settings: queue)

    result = CliRunner().invoke(cli_module.cli, ["stats"])

    assert result.exit_code == 0, result.output
    assert "Total items:     1" in result.output
    assert "Unacked messages: 1" in result.output
    assert "FL  FL_DBPR  queued" in result.output


def test_seed_command_uses_selected_regions(monkeypatch, store, queue, settings, clock):
    from geoscrape.scrape_queue.seed import SeedProducer

    monkeypatch.setattr(
        cli_module,
        "build_producer",
        lambda s: SeedProducer(store, queue, settings, clock=clock),
    )

    result = CliRunner().invoke(cli_module.cli, ["seed", "--region", "tx"])

    assert result.exit_code == 0, result.output
    assert "Queued 5, skipped 0, errors 0" in result.output
    assert {m.item.region_code for m in queue.sent} == {"TX"}
