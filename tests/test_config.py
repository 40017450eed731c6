import pytest

from geoscrape.config import Settings


def test_lease_covers_a_batch_of_timed_out_renders():
    settings = Settings(batch_size=10, render_timeout_ms=30000, rate_limit_per_second=1.0)

    # (30s render + 5s round trip + 1s rate-limit wait) per item
    assert settings.queue_visibility_timeout() == pytest.approx(360.0)


def test_lease_scales_with_batch_size_and_rate():
    settings = Settings(batch_size=4, render_timeout_ms=10000, rate_limit_per_second=0.5)

    assert settings.queue_visibility_timeout() == pytest.approx(4 * (10 + 5 + 2))


def test_explicit_lease_wins():
    assert Settings(visibility_timeout=90).queue_visibility_timeout() == 90


def test_visibility_timeout_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("VISIBILITY_TIMEOUT", "900")
    monkeypatch.setenv("BATCH_SIZE", "3")

    settings = Settings.from_env(tmp_path / "missing.env")

    assert settings.visibility_timeout == 900
    assert settings.batch_size == 3
    assert settings.queue_visibility_timeout() == 900
