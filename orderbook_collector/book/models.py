"""
Order book data types.

OrderBookUpdate is the unit handed from a feed to an OrderBook. Snapshot is
the immutable point-in-time copy that gets persisted, and also what a feed
returns from resync() as the base for a fresh book.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from orderbook_collector.config.tickers import Exchange, Ticker


class Side(str, Enum):
    """Book side."""
    BID = "bid"
    ASK = "ask"


@dataclass(frozen=True)
class OrderBookUpdate:
    """
    Single price level change.

    quantity == 0 removes the level. `sequence` must never go backwards for a
    symbol; `prev_sequence`, when set, must equal the book's last applied
    sequence (otherwise updates were lost in between).
    """

    symbol: Ticker
    side: Side
    price: Decimal
    quantity: Decimal
    sequence: int
    prev_sequence: Optional[int] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PriceLevel(BaseModel):
    """Price level in a snapshot."""

    model_config = ConfigDict(frozen=True)

    price: Decimal
    quantity: Decimal


class Snapshot(BaseModel):
    """Immutable copy of one order book at `captured_at`."""

    model_config = ConfigDict(frozen=True)

    exchange: Exchange
    symbol: str
    sequence: int
    captured_at: datetime
    bids: tuple[PriceLevel, ...] = ()  # best (highest) first
    asks: tuple[PriceLevel, ...] = ()  # best (lowest) first

    @property
    def ticker(self) -> Ticker:
        return Ticker.parse(self.symbol)

    @property
    def best_bid(self) -> Optional[Decimal]:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> Optional[Decimal]:
        return self.asks[0].price if self.asks else None
