"""
Tests for the read-only status API.
"""

from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from orderbook_collector import __version__
from orderbook_collector.api.main import create_app
from orderbook_collector.config.tickers import Exchange


def collector_status(symbol, health="running", managed=True):
    return {
        "symbol": symbol,
        "exchange": "BINANCE",
        "health": health,
        "book_state": "consistent",
        "last_sequence": 100,
        "best_bid": "99",
        "best_ask": "101",
        "last_error": None,
        "managed": managed,
    }


@pytest.fixture
def orchestrator():
    """Mock orchestrator with two healthy collectors."""
    orch = Mock()
    orch.exchange = Exchange.BINANCE
    orch.running = True
    orch.handles = {"BTC_USDT": object(), "ETH_USDT": object()}
    orch.status.return_value = [collector_status("BTC_USDT"), collector_status("ETH_USDT")]
    return orch


@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(orchestrator)) as c:
        yield c


class TestHealth:
    """Tests for /health."""

    def test_healthy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["exchange"] == "BINANCE"
        assert body["collectors"] == 2
        assert body["failed"] == 0

    def test_degraded_on_failure(self, client, orchestrator):
        orchestrator.status.return_value = [
            collector_status("BTC_USDT"),
            collector_status("ETH_USDT", health="failed", managed=False),
        ]
        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["failed"] == 1

    def test_degraded_when_not_running(self, client, orchestrator):
        orchestrator.running = False
        assert client.get("/health").json()["status"] == "degraded"


class TestCollectors:
    """Tests for /api/collectors."""

    def test_list(self, client):
        response = client.get("/api/collectors")
        assert response.status_code == 200
        assert [c["symbol"] for c in response.json()] == ["BTC_USDT", "ETH_USDT"]

    def test_get_one(self, client):
        response = client.get("/api/collectors/eth_usdt")
        assert response.status_code == 200
        assert response.json()["symbol"] == "ETH_USDT"

    def test_unknown_symbol(self, client):
        assert client.get("/api/collectors/SOL_USDT").status_code == 404


def test_root(client):
    body = client.get("/").json()
    assert body["version"] == __version__
