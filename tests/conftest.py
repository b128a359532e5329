"""
Shared fixtures for collector tests.
"""

import pytest

from orderbook_collector.config.settings import Settings


@pytest.fixture
def fast_settings(tmp_path):
    """Settings with short intervals so lifecycle tests finish quickly."""
    return Settings(
        _env_file=None,
        tickers_config_path=str(tmp_path / "config.json"),
        output_dir=str(tmp_path / "data"),
        snapshot_interval=0.05,
        cancel_poll_interval=0.02,
        stop_timeout=1.0,
        feed_retry_limit=2,
        feed_retry_window=60.0,
        feed_backoff_base=0.01,
        feed_backoff_max=0.02,
        config_poll_interval=0.02,
        bitkub_poll_interval=0.05,
        collector_restart_delay=0.05,
    )
