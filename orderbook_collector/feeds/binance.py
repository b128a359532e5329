"""
Binance order book feed.

Follows Binance's local order book procedure:
1. Open the diff depth stream <symbol>@depth@100ms
2. Fetch a REST depth snapshot (lastUpdateId)
3. Drop stream events whose final id `u` <= lastUpdateId
4. Every later event must continue the previous one (U == last u + 1)

Contiguous events chain onto the last sequence handed to the book. A
non-contiguous event is passed through with prev_sequence = U - 1, which
the OrderBook flags as a gap and the Collector answers with a resync.
"""

import json
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx
import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from orderbook_collector.book.models import OrderBookUpdate, Side, Snapshot
from orderbook_collector.config.settings import Settings
from orderbook_collector.config.tickers import Exchange, Ticker
from orderbook_collector.errors import FeedError
from orderbook_collector.feeds.base import ExchangeFeed, build_snapshot, parse_levels

logger = structlog.get_logger()


class BinanceFeed(ExchangeFeed):
    """Diff depth websocket + REST snapshot feed for one Binance symbol."""

    exchange = Exchange.BINANCE

    def __init__(
        self,
        ticker: Ticker,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        ws_connect: Callable[..., Any] = websockets.connect,
    ):
        super().__init__(ticker, settings, transport)
        self._ws_connect = ws_connect
        self.ws = None
        self._last_update_id: Optional[int] = None  # last `u` seen on the stream
        self._emitted_sequence: Optional[int] = None  # last sequence handed out

    @property
    def symbol(self) -> str:
        return f"{self.ticker.base}{self.ticker.quote}"

    @property
    def base_url(self) -> str:
        return self.settings.binance_rest_url

    @property
    def stream_url(self) -> str:
        return f"{self.settings.binance_ws_url}/{self.symbol.lower()}@depth@100ms"

    async def connect(self) -> None:
        await super().connect()
        try:
            self.ws = await self._ws_connect(
                self.stream_url,
                ping_interval=30,
                ping_timeout=10,
                close_timeout=5,
            )
        except (OSError, WebSocketException, TimeoutError) as e:
            raise FeedError(f"cannot open Binance stream for {self.symbol}: {e!r}") from e
        logger.info("Binance stream connected", symbol=str(self.ticker), url=self.stream_url)

    async def resync(self) -> Snapshot:
        data = await self._get_json(
            "/api/v3/depth",
            params={"symbol": self.symbol, "limit": self.settings.binance_snapshot_limit},
        )
        if not isinstance(data, dict) or "code" in data:
            message = data.get("msg") if isinstance(data, dict) else data
            raise FeedError(f"Binance rejected depth request for {self.symbol}: {message}")

        try:
            last_update_id = int(data["lastUpdateId"])
        except (KeyError, TypeError, ValueError) as e:
            raise FeedError(f"Binance depth snapshot without lastUpdateId for {self.symbol}") from e

        snapshot = build_snapshot(
            self.exchange,
            self.ticker,
            last_update_id,
            parse_levels(data.get("bids")),
            parse_levels(data.get("asks")),
        )
        self._last_update_id = last_update_id
        self._emitted_sequence = last_update_id
        return snapshot

    async def recv(self) -> list[OrderBookUpdate]:
        if self.ws is None:
            raise FeedError(f"Binance stream for {self.symbol} is not connected")
        if self._last_update_id is None:
            raise FeedError("resync() must be called before recv()")

        while True:
            try:
                raw = await self.ws.recv()
            except ConnectionClosed as e:
                raise FeedError(f"Binance stream closed for {self.symbol}: {e}") from e

            updates = self.parse_message(raw)
            if updates is not None:
                return updates

    def parse_message(self, raw: str | bytes) -> Optional[list[OrderBookUpdate]]:
        """
        Turn one depthUpdate event into level updates.

        Returns None for events that carry nothing for the book (stale or
        empty events, other event types).
        """
        try:
            event = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise FeedError(f"invalid JSON on Binance stream for {self.symbol}: {e}") from e

        if not isinstance(event, dict):
            raise FeedError(f"unexpected Binance message for {self.symbol}: {str(raw)[:100]}")
        if event.get("e") != "depthUpdate":
            logger.debug("Ignoring Binance event", symbol=str(self.ticker), event_type=event.get("e"))
            return None

        try:
            first_id = int(event["U"])
            final_id = int(event["u"])
            event_time = datetime.fromtimestamp(int(event["E"]) / 1000, tz=timezone.utc)
        except (KeyError, TypeError, ValueError) as e:
            raise FeedError(f"malformed Binance depthUpdate for {self.symbol}: {e}") from e

        if final_id <= self._last_update_id:
            return None  # already covered by the snapshot

        contiguous = first_id <= self._last_update_id + 1
        prev_sequence = self._emitted_sequence if contiguous else first_id - 1
        self._last_update_id = final_id

        levels = [(Side.BID, p, q) for p, q in parse_levels(event.get("b", []))]
        levels += [(Side.ASK, p, q) for p, q in parse_levels(event.get("a", []))]
        if not levels and contiguous:
            return None

        if not levels:
            # Nothing to apply, but the gap must still reach the book
            raise FeedError(f"Binance stream gap for {self.symbol}: {prev_sequence} -> {first_id}")

        updates = [
            OrderBookUpdate(
                symbol=self.ticker,
                side=side,
                price=price,
                quantity=quantity,
                sequence=final_id,
                prev_sequence=prev_sequence if i == 0 else None,
                timestamp=event_time,
            )
            for i, (side, price, quantity) in enumerate(levels)
        ]
        self._emitted_sequence = final_id
        return updates

    async def close(self) -> None:
        if self.ws is not None:
            try:
                await self.ws.close()
            except WebSocketException as e:
                logger.debug("Binance stream close failed", symbol=str(self.ticker), error=str(e))
            self.ws = None
        self._last_update_id = None
        self._emitted_sequence = None
        await super().close()
