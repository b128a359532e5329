"""
Bitkub order book feed.

Bitkub has no public diff depth stream, so the REST depth endpoint is
polled on wall-clock aligned intervals. Each poll is diffed against the
previous one and emitted as level updates (removed levels with quantity 0)
under a locally increasing sequence.
"""

import asyncio
import time
from decimal import Decimal
from typing import Any, Optional

import structlog

from orderbook_collector.book.models import OrderBookUpdate, Side, Snapshot
from orderbook_collector.config.tickers import Exchange
from orderbook_collector.errors import FeedError
from orderbook_collector.feeds.base import ExchangeFeed, build_snapshot, next_boundary, parse_levels

logger = structlog.get_logger()

Levels = dict[Decimal, Decimal]


def diff_levels(old: Levels, new: Levels) -> list[tuple[Decimal, Decimal]]:
    """Level changes that turn `old` into `new`, removals as quantity 0."""
    changes = [(price, Decimal(0)) for price in old if price not in new]
    changes += [(price, qty) for price, qty in new.items() if old.get(price) != qty]
    return changes


class BitkubFeed(ExchangeFeed):
    """Polling REST feed for one Bitkub symbol."""

    exchange = Exchange.BITKUB

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._sequence = 0
        self._bids: Levels = {}
        self._asks: Levels = {}
        self._next_poll_at: Optional[float] = None

    @property
    def symbol(self) -> str:
        # Bitkub spells pairs quote first: BTC_THB -> THB_BTC
        return f"{self.ticker.quote}_{self.ticker.base}"

    @property
    def base_url(self) -> str:
        return self.settings.bitkub_rest_url

    async def _fetch_depth(self) -> tuple[Levels, Levels]:
        data = await self._get_json(
            "/api/market/depth",
            params={"sym": self.symbol, "lmt": self.settings.book_depth},
        )
        return self.parse_depth(data)

    def parse_depth(self, data: Any) -> tuple[Levels, Levels]:
        """Validate a depth response and return (bids, asks)."""
        if not isinstance(data, dict):
            raise FeedError(f"unexpected Bitkub depth response for {self.symbol}: {str(data)[:100]}")
        if "result" in data and data["result"] is None:
            raise FeedError(f"Bitkub returned null result for {self.symbol} (error={data.get('error')})")
        if data.get("error", 0) != 0:
            raise FeedError(f"Bitkub error {data['error']} for {self.symbol}")
        if "bids" not in data or "asks" not in data:
            raise FeedError(f"Bitkub depth response for {self.symbol} has no bids/asks")

        bids = {p: q for p, q in parse_levels(data["bids"]) if q > 0}
        asks = {p: q for p, q in parse_levels(data["asks"]) if q > 0}
        return bids, asks

    async def _wait_for_poll(self) -> None:
        interval = self.settings.bitkub_poll_interval
        if self._next_poll_at is None:
            self._next_poll_at = next_boundary(time.time(), interval)
        delay = self._next_poll_at - time.time()
        if delay > 0:
            await asyncio.sleep(delay)
        self._next_poll_at = next_boundary(time.time(), interval)

    async def resync(self) -> Snapshot:
        bids, asks = await self._fetch_depth()
        self._sequence += 1
        self._bids, self._asks = bids, asks
        return build_snapshot(self.exchange, self.ticker, self._sequence, list(bids.items()), list(asks.items()))

    async def recv(self) -> list[OrderBookUpdate]:
        await self._wait_for_poll()
        bids, asks = await self._fetch_depth()

        changes = [(Side.BID, p, q) for p, q in diff_levels(self._bids, bids)]
        changes += [(Side.ASK, p, q) for p, q in diff_levels(self._asks, asks)]
        self._bids, self._asks = bids, asks
        if not changes:
            return []

        prev_sequence = self._sequence
        self._sequence += 1
        return [
            OrderBookUpdate(
                symbol=self.ticker,
                side=side,
                price=price,
                quantity=quantity,
                sequence=self._sequence,
                prev_sequence=prev_sequence if i == 0 else None,
            )
            for i, (side, price, quantity) in enumerate(changes)
        ]

    async def close(self) -> None:
        self._next_poll_at = None
        await super().close()
