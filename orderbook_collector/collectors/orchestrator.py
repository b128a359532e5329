"""
Collector orchestrator.

Owns the ticker -> CollectorHandle map and keeps it in line with the latest
tickers config:
- added tickers get a fresh OrderBook, feed and Collector task
- removed tickers are signalled to stop and awaited (bounded by stop_timeout)
- unchanged tickers are never touched
- tickers whose collector failed are restarted after collector_restart_delay
  as long as the config still lists them

Config changes, collector exits and restarts arrive on one queue and are
handled one at a time by run(), which is the only code that mutates the
handle map.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Optional, Protocol, Union

import structlog

from orderbook_collector.book.orderbook import OrderBook
from orderbook_collector.collectors.collector import Collector, CollectorHealth, SnapshotSink
from orderbook_collector.config.settings import Settings
from orderbook_collector.config.tickers import Exchange, Ticker, TickerConfig
from orderbook_collector.errors import ExchangeChangedError, FatalStartupError
from orderbook_collector.feeds import FeedFactory
from orderbook_collector.feeds.base import calculate_backoff

logger = structlog.get_logger()


class ConfigSource(Protocol):
    def watch(self) -> AsyncIterator[TickerConfig]: ...


@dataclass
class CollectorHandle:
    """Orchestrator-side view of one running collector."""

    symbol: Ticker
    collector: Collector
    stop_event: asyncio.Event
    task: asyncio.Task
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def health(self) -> CollectorHealth:
        return self.collector.health

    def request_stop(self) -> None:
        self.stop_event.set()


@dataclass
class ConfigChanged:
    config: TickerConfig


@dataclass
class CollectorExited:
    handle: CollectorHandle


@dataclass
class RestartDue:
    symbol: Ticker


@dataclass
class WatcherFailed:
    error: BaseException


@dataclass
class StopRequested:
    pass


Event = Union[ConfigChanged, CollectorExited, RestartDue, WatcherFailed, StopRequested]


class Orchestrator:
    """Reconciles the live collector pool against the tickers config."""

    def __init__(
        self,
        exchange: Exchange,
        persister: SnapshotSink,
        feed_factory: FeedFactory,
        settings: Optional[Settings] = None,
    ):
        """
        Args:
            exchange: Exchange fixed for the process lifetime
            persister: Snapshot sink shared by all collectors (one file per symbol)
            feed_factory: Builds the exchange's feed for a ticker
            settings: Service settings
        """
        self.exchange = exchange
        self.persister = persister
        self.feed_factory = feed_factory
        self.settings = settings or Settings()
        self.handles: dict[Ticker, CollectorHandle] = {}
        self.failures: dict[Ticker, dict] = {}  # last status of reaped collectors
        self.restarts: dict[Ticker, int] = {}
        self.config_errors = 0
        self.watcher_restarts = 0
        self.running = False
        self.reconciliations = 0
        self._target: frozenset[Ticker] = frozenset()
        self._restart_timers: dict[Ticker, asyncio.TimerHandle] = {}
        self._events: asyncio.Queue[Event] = asyncio.Queue()

    @property
    def active_symbols(self) -> set[Ticker]:
        return set(self.handles)

    async def run(self, source: ConfigSource) -> None:
        """
        Consume config changes until stop() is called.

        Raises:
            FatalStartupError: the initial config could not be loaded
        """
        self.running = True
        logger.info("Orchestrator starting", exchange=self.exchange.value)
        pump = asyncio.create_task(self._pump(source), name="config-watcher")

        try:
            while True:
                event = await self._events.get()

                if isinstance(event, StopRequested):
                    logger.info("Orchestrator stop requested")
                    break
                if isinstance(event, WatcherFailed):
                    raise event.error
                if isinstance(event, ConfigChanged):
                    await self.reconcile(event.config)
                elif isinstance(event, CollectorExited):
                    self._reap(event.handle)
                elif isinstance(event, RestartDue):
                    self._restart(event.symbol)
        finally:
            self.running = False
            for timer in self._restart_timers.values():
                timer.cancel()
            self._restart_timers.clear()
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
            await self.shutdown()
            logger.info("Orchestrator stopped")

    async def _pump(self, source: ConfigSource) -> None:
        """
        Forward watcher output onto the event queue.

        A watcher that fails after startup is entered again with backoff; it
        resumes from its last good config. FatalStartupError ends the run.
        """
        attempt = 0
        while True:
            try:
                first = True
                async for config in source.watch():
                    if not first:
                        attempt = 0
                    first = False
                    self._events.put_nowait(ConfigChanged(config))
                return
            except asyncio.CancelledError:
                raise
            except FatalStartupError as e:
                self._events.put_nowait(WatcherFailed(e))
                return
            except Exception as e:
                delay = calculate_backoff(
                    attempt,
                    base=self.settings.config_poll_interval,
                    max_delay=self.settings.feed_backoff_max,
                )
                attempt += 1
                self.watcher_restarts += 1
                logger.error(
                    "Config watcher failed, restarting",
                    error=repr(e),
                    attempt=attempt,
                    delay=round(delay, 2),
                )
                await asyncio.sleep(delay)

    def stop(self) -> None:
        """Ask run() to stop all collectors and return."""
        self._events.put_nowait(StopRequested())

    async def reconcile(self, config: TickerConfig) -> None:
        """Start collectors for added tickers, stop collectors for removed ones."""
        if config.exchange != self.exchange:
            self.config_errors += 1
            error = ExchangeChangedError(self.exchange.value, config.exchange.value)
            logger.error("Ignoring config for another exchange", error=str(error))
            return

        target = config.symbols
        active = set(self.handles)
        added = target - active
        removed = active - target
        self._target = target
        self.reconciliations += 1

        for symbol in [s for s in self._restart_timers if s not in target]:
            self._restart_timers.pop(symbol).cancel()

        logger.info(
            "Reconciling collectors",
            active=len(active),
            target=len(target),
            added=sorted(str(s) for s in added),
            removed=sorted(str(s) for s in removed),
        )

        stopping = [self.handles[symbol] for symbol in removed]
        for handle in stopping:
            handle.request_stop()

        for symbol in sorted(added):
            self._start(symbol)

        if stopping:
            await self._await_stopped(stopping)
            for handle in stopping:
                if self.handles.get(handle.symbol) is handle:
                    del self.handles[handle.symbol]

    def _start(self, symbol: Ticker, restart: bool = False) -> CollectorHandle:
        stop_event = asyncio.Event()
        collector = Collector(
            exchange=self.exchange,
            book=OrderBook(symbol),
            feed=self.feed_factory(symbol),
            persister=self.persister,
            stop_event=stop_event,
            settings=self.settings,
        )
        task = asyncio.create_task(collector.run(), name=f"collector:{symbol}")
        handle = CollectorHandle(symbol=symbol, collector=collector, stop_event=stop_event, task=task)
        task.add_done_callback(lambda _task: self._events.put_nowait(CollectorExited(handle)))

        self.handles[symbol] = handle
        timer = self._restart_timers.pop(symbol, None)
        if timer is not None:
            timer.cancel()
        if not restart:
            # Started from the config: forget earlier failures
            self.failures.pop(symbol, None)
            self.restarts.pop(symbol, None)
        logger.info("Collector started", symbol=str(symbol), restart=restart)
        return handle

    def _restart(self, symbol: Ticker) -> None:
        self._restart_timers.pop(symbol, None)
        if symbol not in self._target or symbol in self.handles:
            return
        self.restarts[symbol] = self.restarts.get(symbol, 0) + 1
        logger.info("Restarting failed collector", symbol=str(symbol), restarts=self.restarts[symbol])
        self._start(symbol, restart=True)

    async def _await_stopped(self, handles: list[CollectorHandle]) -> None:
        """Wait for stop acknowledgements concurrently."""
        await asyncio.gather(*(self._await_one(h) for h in handles))

    async def _await_one(self, handle: CollectorHandle) -> None:
        done, _ = await asyncio.wait({handle.task}, timeout=self.settings.stop_timeout)
        if not done:
            logger.error(
                "Collector did not acknowledge stop, cancelling",
                symbol=str(handle.symbol),
                timeout=self.settings.stop_timeout,
            )
            handle.task.cancel()
            await asyncio.gather(handle.task, return_exceptions=True)
            return

        if not handle.task.cancelled() and handle.task.exception() is not None:
            logger.error(
                "Collector crashed while stopping",
                symbol=str(handle.symbol),
                error=repr(handle.task.exception()),
            )
        else:
            logger.info("Collector stopped", symbol=str(handle.symbol), health=handle.health.value)

    def _reap(self, handle: CollectorHandle) -> None:
        """Handle a collector that exited without being asked to."""
        if self.handles.get(handle.symbol) is not handle:
            return  # already stopped and discarded by reconcile/shutdown

        del self.handles[handle.symbol]
        self.failures[handle.symbol] = handle.collector.status()
        task = handle.task

        if task.cancelled():
            logger.error("Collector cancelled unexpectedly", symbol=str(handle.symbol))
        elif task.exception() is not None:
            logger.error(
                "Collector crashed",
                symbol=str(handle.symbol),
                error=repr(task.exception()),
            )
        else:
            logger.error(
                "Collector exited",
                symbol=str(handle.symbol),
                health=handle.health.value,
                error=handle.collector.last_error,
            )

        if handle.symbol in self._target and self.running:
            self._schedule_restart(handle.symbol)

    def _schedule_restart(self, symbol: Ticker) -> None:
        delay = self.settings.collector_restart_delay
        loop = asyncio.get_running_loop()
        self._restart_timers[symbol] = loop.call_later(
            delay, self._events.put_nowait, RestartDue(symbol)
        )
        logger.info("Collector restart scheduled", symbol=str(symbol), delay=delay)

    async def shutdown(self) -> None:
        """Stop every collector and wait for all of them."""
        handles = list(self.handles.values())
        if not handles:
            return

        logger.info("Stopping all collectors", count=len(handles))
        for handle in handles:
            handle.request_stop()
        await self._await_stopped(handles)
        for handle in handles:
            if self.handles.get(handle.symbol) is handle:
                del self.handles[handle.symbol]

    def status(self) -> list[dict]:
        """Status of every managed collector, plus reaped failures not yet restarted."""
        statuses = []
        for symbol, handle in self.handles.items():
            status = dict(handle.collector.status(), managed=True, restarts=self.restarts.get(symbol, 0))
            if symbol in self.failures:
                status["last_failure"] = self.failures[symbol]["last_error"]
            statuses.append(status)
        statuses += [
            dict(s, managed=False, restarts=self.restarts.get(symbol, 0))
            for symbol, s in self.failures.items()
            if symbol not in self.handles
        ]
        return sorted(statuses, key=lambda s: s["symbol"])
