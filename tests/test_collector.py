"""
Tests for the per-symbol collector.

Tests:
- Applying feed messages and periodic persistence
- Final flush on stop
- Resync on anomalies
- Retry budget and FAILED health
- Persistence failures are not fatal
"""

import asyncio
from decimal import Decimal

import pytest

from orderbook_collector.book.models import Side
from orderbook_collector.book.orderbook import BookState, OrderBook
from orderbook_collector.collectors.collector import Collector, CollectorHealth, RetryBudget
from orderbook_collector.config.tickers import Exchange
from orderbook_collector.errors import FeedError

from tests.fakes import FakeFeed, RecordingSink, wait_until
from tests.helpers import BTC, snapshot, update

BASE = snapshot(bids=[(99, 1)], asks=[(101, 1)], sequence=100)


def make_collector(feed, sink, settings):
    stop = asyncio.Event()
    collector = Collector(Exchange.BINANCE, OrderBook(BTC), feed, sink, stop, settings)
    return collector, stop


class TestRetryBudget:
    """Tests for the sliding-window failure counter."""

    def test_exhausted_after_limit(self):
        clock = iter([0.0, 1.0, 2.0])
        budget = RetryBudget(limit=2, window=10.0, clock=lambda: next(clock))
        assert budget.record() is False
        assert budget.record() is False
        assert budget.record() is True

    def test_old_failures_expire(self):
        clock = iter([0.0, 1.0, 20.0])
        budget = RetryBudget(limit=2, window=10.0, clock=lambda: next(clock))
        budget.record()
        budget.record()
        assert budget.record() is False
        assert budget.recent_failures == 1


class TestCollector:
    """Tests for the collector lifecycle."""

    async def test_applies_and_persists(self, fast_settings):
        feed = FakeFeed(BTC, bases=[BASE])
        sink = RecordingSink()
        collector, stop = make_collector(feed, sink, fast_settings)
        task = asyncio.create_task(collector.run())

        feed.push([update(Side.BID, 100, 2, sequence=101, prev_sequence=100)])
        await wait_until(lambda: collector.stats["updates_applied"] == 1)
        assert collector.health is CollectorHealth.RUNNING
        assert collector.book.best_bid == Decimal("100")

        await wait_until(lambda: any(s.sequence == 101 for s in sink.snapshots))
        assert collector.last_snapshot_at is not None

        stop.set()
        await asyncio.wait_for(task, timeout=1)
        assert collector.health is CollectorHealth.STOPPED
        assert feed.closes >= 1

    async def test_final_flush_on_stop(self, fast_settings):
        """Stopping writes the latest state even between snapshot ticks."""
        settings = fast_settings.model_copy(update={"snapshot_interval": 3600.0})
        feed = FakeFeed(BTC, bases=[BASE])
        sink = RecordingSink()
        collector, stop = make_collector(feed, sink, settings)
        task = asyncio.create_task(collector.run())

        feed.push([update(Side.ASK, 100.5, 1, sequence=101, prev_sequence=100)])
        await wait_until(lambda: collector.stats["updates_applied"] == 1)
        assert sink.snapshots == []

        stop.set()
        await asyncio.wait_for(task, timeout=1)
        assert len(sink.snapshots) == 1
        assert sink.snapshots[0].best_ask == Decimal("100.5")

    async def test_persisted_depth(self, fast_settings):
        settings = fast_settings.model_copy(update={"book_depth": 2})
        base = snapshot(bids=[(99, 1), (98, 1), (97, 1)], asks=[(101, 1), (102, 1), (103, 1)])
        feed = FakeFeed(BTC, bases=[base])
        sink = RecordingSink()
        collector, stop = make_collector(feed, sink, settings)
        task = asyncio.create_task(collector.run())

        await wait_until(lambda: sink.snapshots)
        stop.set()
        await asyncio.wait_for(task, timeout=1)
        assert all(len(s.bids) == 2 and len(s.asks) == 2 for s in sink.snapshots)

    async def test_anomaly_triggers_resync(self, fast_settings):
        fresh = snapshot(bids=[(199, 1)], asks=[(201, 1)], sequence=500)
        feed = FakeFeed(BTC, bases=[BASE, fresh])
        sink = RecordingSink()
        collector, stop = make_collector(feed, sink, fast_settings)
        task = asyncio.create_task(collector.run())

        feed.push([update(Side.BID, 150, 1, sequence=101, prev_sequence=100)])  # crosses
        await wait_until(lambda: collector.stats["resyncs"] == 1)
        await wait_until(lambda: collector.book.last_sequence == 500)
        assert collector.book.state is BookState.CONSISTENT
        assert collector.health is CollectorHealth.RUNNING

        stop.set()
        await asyncio.wait_for(task, timeout=1)
        assert all(s.best_bid is None or s.best_ask is None or s.best_bid < s.best_ask for s in sink.snapshots)

    async def test_repeated_anomalies_fail(self, fast_settings):
        """Anomalies count against the retry budget."""
        feed = FakeFeed(BTC, bases=[BASE])
        collector, stop = make_collector(feed, RecordingSink(), fast_settings)
        for _ in range(3):
            feed.push([update(Side.BID, 200, 1, sequence=101)])

        await asyncio.wait_for(collector.run(), timeout=2)
        assert collector.health is CollectorHealth.FAILED
        assert "BookConsistencyError" in collector.last_error

    async def test_retry_budget_exhausted(self, fast_settings):
        """Connection keeps failing: reconnect with backoff, then give up."""
        feed = FakeFeed(BTC, bases=[BASE], connect_error=FeedError("refused"))
        collector, stop = make_collector(feed, RecordingSink(), fast_settings)

        await asyncio.wait_for(collector.run(), timeout=2)
        assert collector.health is CollectorHealth.FAILED
        assert feed.connects == fast_settings.feed_retry_limit + 1
        assert collector.stats["reconnects"] == feed.connects
        assert feed.closes == feed.connects
        assert "refused" in collector.last_error

    async def test_reconnects_after_stream_error(self, fast_settings):
        feed = FakeFeed(BTC, bases=[BASE])
        collector, stop = make_collector(feed, RecordingSink(), fast_settings)
        task = asyncio.create_task(collector.run())

        feed.push(FeedError("stream closed"))
        await wait_until(lambda: feed.connects == 2 and collector.health is CollectorHealth.RUNNING)
        assert collector.stats["reconnects"] == 1

        stop.set()
        await asyncio.wait_for(task, timeout=1)
        assert collector.health is CollectorHealth.STOPPED

    async def test_stop_during_backoff(self, fast_settings):
        settings = fast_settings.model_copy(
            update={"feed_backoff_base": 30.0, "feed_backoff_max": 30.0, "feed_retry_limit": 10}
        )
        feed = FakeFeed(BTC, bases=[BASE], connect_error=FeedError("refused"))
        collector, stop = make_collector(feed, RecordingSink(), settings)
        task = asyncio.create_task(collector.run())

        await wait_until(lambda: feed.connects == 1)
        stop.set()
        await asyncio.wait_for(task, timeout=1)
        assert collector.health is CollectorHealth.STOPPED

    async def test_persist_failure_not_fatal(self, fast_settings):
        feed = FakeFeed(BTC, bases=[BASE])
        collector, stop = make_collector(feed, RecordingSink(fail=True), fast_settings)
        task = asyncio.create_task(collector.run())

        await wait_until(lambda: collector.stats["persist_errors"] >= 2)
        assert collector.health is CollectorHealth.RUNNING
        assert "disk full" in collector.last_error

        stop.set()
        await asyncio.wait_for(task, timeout=1)
        assert collector.health is CollectorHealth.STOPPED

    async def test_unexpected_error_propagates(self, fast_settings):
        feed = FakeFeed(BTC, bases=[BASE])
        collector, stop = make_collector(feed, RecordingSink(), fast_settings)
        feed.push(RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await asyncio.wait_for(collector.run(), timeout=1)
        assert collector.health is CollectorHealth.FAILED

    def test_status(self, fast_settings):
        collector, _ = make_collector(FakeFeed(BTC), RecordingSink(), fast_settings)
        status = collector.status()
        assert status["symbol"] == "BTC_USDT"
        assert status["health"] == "starting"
        assert status["book_state"] == "empty"
        assert status["updates_applied"] == 0
