"""
Exchange feed capability and shared reliability helpers.

Every exchange variant exposes the same four operations:

- connect(): open network resources
- resync(): fetch a full base snapshot (also resets the feed's sequencing)
- recv(): wait for the next feed message, as a list of level updates
- close(): release network resources

Network and protocol failures are raised as FeedError; the Collector owns
the reconnect policy.
"""

import math
import random
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar, Optional

import httpx
import structlog

from orderbook_collector.book.models import OrderBookUpdate, PriceLevel, Snapshot
from orderbook_collector.config.settings import Settings
from orderbook_collector.config.tickers import Exchange, Ticker
from orderbook_collector.errors import FeedError

logger = structlog.get_logger()


def calculate_backoff(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff with full jitter.

    Full jitter prevents thundering herd by randomizing the entire delay.
    Formula: random(0, min(cap, base * 2^attempt))
    """
    exp_backoff = min(max_delay, base * (2 ** attempt))
    return random.uniform(0, exp_backoff)


def next_boundary(now: float, interval: float) -> float:
    """Next wall-clock multiple of `interval` strictly after `now`."""
    return (math.floor(now / interval) + 1) * interval


def parse_levels(raw: Any) -> list[tuple[Decimal, Decimal]]:
    """
    Parse [[price, quantity], ...] as sent by exchanges (strings or numbers).

    Extra trailing fields in a level are ignored.
    """
    if not isinstance(raw, list):
        raise FeedError(f"expected list of levels, got {type(raw).__name__}")
    try:
        return [(Decimal(str(level[0])), Decimal(str(level[1]))) for level in raw]
    except (IndexError, TypeError, KeyError, InvalidOperation) as e:
        raise FeedError(f"malformed price level: {e}") from e


def build_snapshot(
    exchange: Exchange,
    ticker: Ticker,
    sequence: int,
    bids: list[tuple[Decimal, Decimal]],
    asks: list[tuple[Decimal, Decimal]],
) -> Snapshot:
    """Build a base snapshot with levels sorted in book order."""
    return Snapshot(
        exchange=exchange,
        symbol=str(ticker),
        sequence=sequence,
        captured_at=datetime.now(timezone.utc),
        bids=tuple(PriceLevel(price=p, quantity=q) for p, q in sorted(bids, reverse=True) if q > 0),
        asks=tuple(PriceLevel(price=p, quantity=q) for p, q in sorted(asks) if q > 0),
    )


class ExchangeFeed(ABC):
    """Live order book feed for one symbol on one exchange."""

    exchange: ClassVar[Exchange]

    def __init__(
        self,
        ticker: Ticker,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            ticker: Symbol to follow
            settings: Service settings (endpoints, timeouts, depth)
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.ticker = ticker
        self.settings = settings or Settings()
        self._transport = transport
        self.http: Optional[httpx.AsyncClient] = None

    @property
    def name(self) -> str:
        return self.exchange.value

    @property
    @abstractmethod
    def symbol(self) -> str:
        """Exchange-specific spelling of the ticker."""

    @property
    @abstractmethod
    def base_url(self) -> str:
        """REST base URL."""

    async def connect(self) -> None:
        """Open the REST client. Subclasses open their streams on top."""
        if self.http is not None:
            return
        timeout = httpx.Timeout(
            connect=self.settings.http_connect_timeout,
            read=self.settings.http_read_timeout,
            write=self.settings.http_read_timeout,
            pool=self.settings.http_connect_timeout,
        )
        self.http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Accept": "application/json", "User-Agent": "orderbook-collector/1.0"},
            transport=self._transport,
        )

    @abstractmethod
    async def recv(self) -> list[OrderBookUpdate]:
        """Wait for the next message and return its updates in delivery order."""

    @abstractmethod
    async def resync(self) -> Snapshot:
        """Fetch a full base snapshot."""

    async def close(self) -> None:
        """Release network resources. Safe to call more than once."""
        if self.http is not None:
            await self.http.aclose()
            self.http = None

    async def _get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        """GET a JSON document, mapping every transport problem to FeedError."""
        if self.http is None:
            raise FeedError(f"{self.name} feed for {self.ticker} is not connected")

        try:
            response = await self.http.get(path, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise FeedError(
                f"{self.name} HTTP {e.response.status_code} for {self.symbol}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise FeedError(f"{self.name} request failed for {self.symbol}: {e!r}") from e
        except ValueError as e:
            raise FeedError(f"{self.name} sent invalid JSON for {self.symbol}: {e}") from e
