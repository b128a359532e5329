"""
Builders shared by the test modules.
"""

import json
import os
from datetime import datetime, timezone
from decimal import Decimal

from orderbook_collector.book.models import OrderBookUpdate, PriceLevel, Snapshot
from orderbook_collector.config.tickers import Exchange, Ticker

BTC = Ticker("BTC", "USDT")
ETH = Ticker("ETH", "USDT")
SOL = Ticker("SOL", "USDT")


def update(side, price, quantity, sequence, prev_sequence=None, symbol=BTC):
    """Build an OrderBookUpdate from plain numbers."""
    return OrderBookUpdate(
        symbol=symbol,
        side=side,
        price=Decimal(str(price)),
        quantity=Decimal(str(quantity)),
        sequence=sequence,
        prev_sequence=prev_sequence,
    )


def snapshot(bids=(), asks=(), sequence=100, symbol=BTC, exchange=Exchange.BINANCE):
    """Build a base Snapshot from (price, quantity) pairs."""
    return Snapshot(
        exchange=exchange,
        symbol=str(symbol),
        sequence=sequence,
        captured_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        bids=tuple(PriceLevel(price=Decimal(str(p)), quantity=Decimal(str(q))) for p, q in bids),
        asks=tuple(PriceLevel(price=Decimal(str(p)), quantity=Decimal(str(q))) for p, q in asks),
    )


class TickersFile:
    """Writes the tickers file with a strictly increasing mtime."""

    def __init__(self, path):
        self.path = path
        self._mtime_ns = 1_700_000_000_000_000_000

    def write(self, content, bump_mtime=True):
        if not isinstance(content, str):
            content = json.dumps(content)
        self.path.write_text(content)
        if bump_mtime:
            self._mtime_ns += 1_000_000_000
        os.utime(self.path, ns=(self._mtime_ns, self._mtime_ns))
