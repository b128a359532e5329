"""
Per-symbol order book collector.

A Collector owns one ExchangeFeed and one OrderBook. It:
1. Connects the feed and loads a base snapshot (resync)
2. Applies every feed message to the book, in delivery order
3. Persists a snapshot on every wall-clock multiple of snapshot_interval
4. Resyncs when the book turns ANOMALOUS
5. Reconnects with exponential backoff on feed errors

It runs until its stop event is set or the retry budget is exhausted
(health FAILED). It holds no reference to whoever started it.
"""

import asyncio
import time
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Protocol

import structlog

from orderbook_collector.book.models import OrderBookUpdate, Snapshot
from orderbook_collector.book.orderbook import BookState, OrderBook
from orderbook_collector.config.settings import Settings
from orderbook_collector.config.tickers import Exchange
from orderbook_collector.errors import BookConsistencyError, FeedError, PersistenceError
from orderbook_collector.feeds.base import ExchangeFeed, calculate_backoff, next_boundary

logger = structlog.get_logger()


class CollectorHealth(Enum):
    """Collector lifecycle/health states."""
    STARTING = "starting"
    RUNNING = "running"
    RESYNCING = "resyncing"  # waiting for a fresh base snapshot
    BACKOFF = "backoff"  # waiting before reconnecting
    STOPPED = "stopped"  # clean stop after a stop signal
    FAILED = "failed"  # retry budget exhausted or unexpected error


class SnapshotSink(Protocol):
    async def persist(self, snapshot: Snapshot) -> Any: ...


class RetryBudget:
    """
    Sliding-window failure counter.

    record() returns True once more than `limit` failures happened within
    the last `window` seconds.
    """

    def __init__(self, limit: int, window: float, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._failures: deque[float] = deque()

    def record(self) -> bool:
        now = self._clock()
        self._failures.append(now)
        while self._failures and now - self._failures[0] > self.window:
            self._failures.popleft()
        return len(self._failures) > self.limit

    @property
    def recent_failures(self) -> int:
        return len(self._failures)


class Collector:
    """Keeps one symbol's order book live and periodically persisted."""

    def __init__(
        self,
        exchange: Exchange,
        book: OrderBook,
        feed: ExchangeFeed,
        persister: SnapshotSink,
        stop_event: asyncio.Event,
        settings: Optional[Settings] = None,
    ):
        self.exchange = exchange
        self.book = book
        self.feed = feed
        self.persister = persister
        self.settings = settings or Settings()
        self._stop = stop_event
        self._retry = RetryBudget(self.settings.feed_retry_limit, self.settings.feed_retry_window)
        self._next_snapshot_at = 0.0

        self.health = CollectorHealth.STARTING
        self.last_error: Optional[str] = None
        self.last_snapshot_at: Optional[datetime] = None
        self.started_at: Optional[datetime] = None
        self.stats = {
            "messages": 0,
            "updates_applied": 0,
            "snapshots_written": 0,
            "persist_errors": 0,
            "resyncs": 0,
            "reconnects": 0,
        }

    @property
    def symbol(self) -> str:
        return str(self.book.symbol)

    async def run(self) -> None:
        """Collect until stopped or failed. Returns normally in both cases."""
        self.started_at = datetime.now(timezone.utc)
        self._next_snapshot_at = next_boundary(time.time(), self.settings.snapshot_interval)
        logger.info("Collector starting", symbol=self.symbol, exchange=self.exchange.value)

        try:
            while not self._stop.is_set():
                try:
                    await self._session()
                except FeedError as e:
                    self.stats["reconnects"] += 1
                    self.book.clear()  # stale until the next base snapshot
                    if self._record_failure(e):
                        return
                    await self._backoff()
                except BookConsistencyError as e:
                    self._fail(e)
                    return
        except Exception as e:
            self._fail(e)
            raise

        # Stop requested: flush once more before acknowledging
        await self._persist_snapshot()
        self.health = CollectorHealth.STOPPED
        logger.info(
            "Collector stopped",
            symbol=self.symbol,
            updates_applied=self.stats["updates_applied"],
            snapshots_written=self.stats["snapshots_written"],
        )

    async def _session(self) -> None:
        """One connection's worth of collection. Always releases the feed."""
        pending: Optional[asyncio.Task] = None
        stop_waiter = asyncio.create_task(self._stop.wait())
        try:
            await self.feed.connect()
            await self._resync()

            while not self._stop.is_set():
                if pending is None:
                    pending = asyncio.create_task(self.feed.recv())

                timeout = min(
                    self.settings.cancel_poll_interval,
                    max(0.0, self._next_snapshot_at - time.time()),
                )
                done, _ = await asyncio.wait(
                    {pending, stop_waiter},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if pending in done:
                    task, pending = pending, None
                    await self._apply(task.result())

                if time.time() >= self._next_snapshot_at:
                    self._next_snapshot_at = next_boundary(time.time(), self.settings.snapshot_interval)
                    await self._persist_snapshot()
        finally:
            for task in (pending, stop_waiter):
                if task is not None and not task.done():
                    task.cancel()
            await asyncio.gather(*(t for t in (pending, stop_waiter) if t is not None), return_exceptions=True)
            await self.feed.close()

    async def _resync(self) -> None:
        """Reload the book from a fresh base snapshot."""
        self.health = CollectorHealth.RESYNCING
        self.book.clear()
        base = await self.feed.resync()
        state = self.book.reset(base)
        if state is BookState.ANOMALOUS:
            raise FeedError(f"base snapshot for {self.symbol} is anomalous: {self.book.anomaly}")
        self.health = CollectorHealth.RUNNING
        logger.info(
            "Order book synced",
            symbol=self.symbol,
            sequence=base.sequence,
            state=state.value,
        )

    async def _apply(self, updates: list[OrderBookUpdate]) -> None:
        self.stats["messages"] += 1
        if not updates:
            return

        state = self.book.apply_batch(updates)
        if state is not BookState.ANOMALOUS:
            self.stats["updates_applied"] += len(updates)
            return

        self.stats["resyncs"] += 1
        anomaly = BookConsistencyError(f"{self.symbol}: {self.book.anomaly}")
        if self._record_failure(anomaly):
            raise anomaly
        logger.warning("Resyncing order book", symbol=self.symbol, reason=self.book.anomaly)
        await self._resync()

    async def _persist_snapshot(self) -> None:
        """Hand the current book to the persister. Failures are logged, not raised."""
        if self.book.state not in (BookState.PARTIAL, BookState.CONSISTENT):
            return

        snapshot = self.book.snapshot(self.exchange, depth=self.settings.book_depth)
        try:
            await self.persister.persist(snapshot)
        except PersistenceError as e:
            self.stats["persist_errors"] += 1
            self.last_error = str(e)
            logger.error("Snapshot write failed", symbol=self.symbol, error=str(e))
            return

        self.stats["snapshots_written"] += 1
        self.last_snapshot_at = snapshot.captured_at

    def _record_failure(self, error: Exception) -> bool:
        """Count a failure against the retry budget. True when it is exhausted."""
        self.last_error = f"{type(error).__name__}: {error}"
        exhausted = self._retry.record()
        logger.warning(
            "Collector error",
            symbol=self.symbol,
            error=str(error),
            error_type=type(error).__name__,
            recent_failures=self._retry.recent_failures,
            limit=self.settings.feed_retry_limit,
        )
        if exhausted:
            self._fail(error)
        return exhausted

    def _fail(self, error: Exception) -> None:
        self.health = CollectorHealth.FAILED
        self.last_error = f"{type(error).__name__}: {error}"
        logger.error(
            "Collector failed",
            symbol=self.symbol,
            error=str(error),
            error_type=type(error).__name__,
        )

    async def _backoff(self) -> None:
        """Sleep before reconnecting, waking early if stopped."""
        self.health = CollectorHealth.BACKOFF
        delay = calculate_backoff(
            self._retry.recent_failures - 1,
            base=self.settings.feed_backoff_base,
            max_delay=self.settings.feed_backoff_max,
        )
        logger.info("Reconnecting in seconds", symbol=self.symbol, delay=round(delay, 2))
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def status(self) -> dict:
        """Status snapshot for health endpoints and logs."""
        return {
            "symbol": self.symbol,
            "exchange": self.exchange.value,
            "health": self.health.value,
            "book_state": self.book.state.value,
            "last_sequence": self.book.last_sequence,
            "best_bid": str(self.book.best_bid) if self.book.best_bid is not None else None,
            "best_ask": str(self.book.best_ask) if self.book.best_ask is not None else None,
            "last_error": self.last_error,
            "last_snapshot_at": self.last_snapshot_at.isoformat() if self.last_snapshot_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            **self.stats,
        }
