"""
In-memory order book with an explicit state machine.

States:
- EMPTY: no levels on either side
- PARTIAL: only one side populated
- CONSISTENT: both sides populated, best bid < best ask
- ANOMALOUS: crossed book, sequence gap, out-of-order or foreign update

ANOMALOUS is sticky: every further apply is rejected with
BookConsistencyError until reset() loads a fresh base snapshot from the feed.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from itertools import islice
from typing import Iterable, Optional

import structlog
from sortedcontainers import SortedDict

from orderbook_collector.book.models import OrderBookUpdate, PriceLevel, Side, Snapshot
from orderbook_collector.config.tickers import Exchange, Ticker
from orderbook_collector.errors import BookConsistencyError

logger = structlog.get_logger()


class BookState(Enum):
    """Order book states."""
    EMPTY = "empty"
    PARTIAL = "partial"
    CONSISTENT = "consistent"
    ANOMALOUS = "anomalous"


def _descending(price: Decimal) -> Decimal:
    return -price


class OrderBook:
    """
    Bid/ask state for a single symbol.

    Mutated by exactly one Collector. Reads (snapshot, best_bid, ...) never
    change state.
    """

    def __init__(self, symbol: Ticker):
        self.symbol = symbol
        self._bids: SortedDict = SortedDict(_descending)  # highest first
        self._asks: SortedDict = SortedDict()  # lowest first
        self.state = BookState.EMPTY
        self.last_sequence: Optional[int] = None
        self.last_update: Optional[datetime] = None
        self.anomaly: Optional[str] = None

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------

    def apply(self, update: OrderBookUpdate) -> BookState:
        """Apply one level update and return the resulting state."""
        return self.apply_batch((update,))

    def apply_batch(self, updates: Iterable[OrderBookUpdate]) -> BookState:
        """
        Apply the updates of one feed message in order.

        The crossed-book check runs once after the whole message, since a
        message may legitimately cross the book half way through.

        Raises:
            BookConsistencyError: the book is already ANOMALOUS
        """
        if self.state is BookState.ANOMALOUS:
            raise BookConsistencyError(
                f"{self.symbol}: book is anomalous ({self.anomaly}), resync required"
            )

        for update in updates:
            reason = self._check(update)
            if reason is not None:
                return self._mark_anomalous(reason)

            levels = self._bids if update.side is Side.BID else self._asks
            if update.quantity == 0:
                levels.pop(update.price, None)  # removing an absent level is fine
            else:
                levels[update.price] = update.quantity

            self.last_sequence = update.sequence
            self.last_update = update.timestamp

        return self._refresh_state()

    def reset(self, snapshot: Snapshot) -> BookState:
        """Replace all state with a full base snapshot (resync)."""
        self.clear()
        if snapshot.symbol != str(self.symbol):
            return self._mark_anomalous(f"base snapshot for unknown symbol {snapshot.symbol}")

        for level in snapshot.bids:
            if level.quantity > 0:
                self._bids[level.price] = level.quantity
        for level in snapshot.asks:
            if level.quantity > 0:
                self._asks[level.price] = level.quantity

        self.last_sequence = snapshot.sequence
        self.last_update = snapshot.captured_at
        return self._refresh_state()

    def clear(self) -> None:
        """Drop all levels and go back to EMPTY."""
        self._bids.clear()
        self._asks.clear()
        self.state = BookState.EMPTY
        self.last_sequence = None
        self.last_update = None
        self.anomaly = None

    def _check(self, update: OrderBookUpdate) -> Optional[str]:
        """Return the anomaly reason for an update, or None if it is acceptable."""
        if update.symbol != self.symbol:
            return f"update for unknown symbol {update.symbol}"
        if update.quantity < 0:
            return f"negative quantity {update.quantity} at {update.price}"
        if self.last_sequence is None:
            return None
        if update.prev_sequence is not None and update.prev_sequence != self.last_sequence:
            return f"sequence gap: expected {self.last_sequence}, got {update.prev_sequence}"
        if update.sequence < self.last_sequence:
            return f"out of sequence: {update.sequence} after {self.last_sequence}"
        return None

    def _refresh_state(self) -> BookState:
        best_bid = self.best_bid
        best_ask = self.best_ask

        if best_bid is not None and best_ask is not None:
            if best_bid >= best_ask:
                return self._mark_anomalous(f"crossed book: bid {best_bid} >= ask {best_ask}")
            self.state = BookState.CONSISTENT
        elif best_bid is not None or best_ask is not None:
            self.state = BookState.PARTIAL
        else:
            self.state = BookState.EMPTY
        return self.state

    def _mark_anomalous(self, reason: str) -> BookState:
        self.state = BookState.ANOMALOUS
        self.anomaly = reason
        logger.warning("Order book anomalous", symbol=str(self.symbol), reason=reason)
        return self.state

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    @property
    def is_anomalous(self) -> bool:
        return self.state is BookState.ANOMALOUS

    @property
    def best_bid(self) -> Optional[Decimal]:
        """Best bid price (highest buy order)."""
        return self._bids.peekitem(0)[0] if self._bids else None

    @property
    def best_ask(self) -> Optional[Decimal]:
        """Best ask price (lowest sell order)."""
        return self._asks.peekitem(0)[0] if self._asks else None

    @property
    def spread(self) -> Optional[Decimal]:
        if self.best_bid is not None and self.best_ask is not None:
            return self.best_ask - self.best_bid
        return None

    @property
    def mid_price(self) -> Optional[Decimal]:
        if self.best_bid is not None and self.best_ask is not None:
            return (self.best_bid + self.best_ask) / 2
        return None

    def depth(self, side: Side) -> int:
        """Number of price levels on one side."""
        return len(self._bids if side is Side.BID else self._asks)

    def quantity_at(self, side: Side, price: Decimal) -> Optional[Decimal]:
        levels = self._bids if side is Side.BID else self._asks
        return levels.get(price)

    def snapshot(
        self,
        exchange: Exchange,
        captured_at: Optional[datetime] = None,
        depth: Optional[int] = None,
    ) -> Snapshot:
        """
        Point-in-time copy of the book. Does not mutate anything.

        Args:
            exchange: Exchange the book belongs to
            captured_at: Capture time (defaults to now, UTC)
            depth: Keep only the best `depth` levels per side
        """
        return Snapshot(
            exchange=exchange,
            symbol=str(self.symbol),
            sequence=self.last_sequence if self.last_sequence is not None else 0,
            captured_at=captured_at or datetime.now(timezone.utc),
            bids=tuple(PriceLevel(price=p, quantity=q) for p, q in islice(self._bids.items(), depth)),
            asks=tuple(PriceLevel(price=p, quantity=q) for p, q in islice(self._asks.items(), depth)),
        )
