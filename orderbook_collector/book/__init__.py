"""
Order book state.

- OrderBook: per-symbol bid/ask state machine
- OrderBookUpdate: single level change from a feed
- Snapshot: immutable point-in-time copy of a book
"""

from orderbook_collector.book.models import OrderBookUpdate, PriceLevel, Side, Snapshot
from orderbook_collector.book.orderbook import BookState, OrderBook

__all__ = [
    "BookState",
    "OrderBook",
    "OrderBookUpdate",
    "PriceLevel",
    "Side",
    "Snapshot",
]
