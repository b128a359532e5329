"""
Tests for the command-line entry point.
"""

import json
from unittest.mock import patch

import pytest

from orderbook_collector.config.settings import Settings
from orderbook_collector.runner import build_settings, main, parse_args, run_service


@pytest.fixture
def base_settings(tmp_path):
    return Settings(_env_file=None, output_dir=str(tmp_path / "data"))


class TestArguments:
    """Tests for argument parsing and overrides."""

    def test_defaults_keep_environment(self, base_settings):
        settings = build_settings(parse_args([]), base_settings)
        assert settings == base_settings

    def test_overrides(self, base_settings):
        args = parse_args(["--config", "tickers.yaml", "--output-dir", "/srv/books", "--api", "--log-level", "debug"])
        settings = build_settings(args, base_settings)
        assert settings.tickers_config_path == "tickers.yaml"
        assert settings.output_dir == "/srv/books"
        assert settings.api_enabled is True
        assert settings.log_level == "debug"

    def test_no_api(self, base_settings):
        settings = build_settings(parse_args(["--no-api"]), base_settings.model_copy(update={"api_enabled": True}))
        assert settings.api_enabled is False


class TestRunService:
    """Tests for startup failures."""

    async def test_missing_config_exits_nonzero(self, fast_settings):
        assert await run_service(fast_settings) == 1

    async def test_invalid_config_exits_nonzero(self, fast_settings, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({"cex": "NOPE", "tickers": []}))
        assert await run_service(fast_settings) == 1

    def test_main_returns_exit_code(self, tmp_path):
        with patch("orderbook_collector.runner.setup_logging"):
            assert main(["--config", str(tmp_path / "missing.json"), "--no-api"]) == 1
