"""
Exchange feeds.

- ExchangeFeed: common capability (connect, recv, resync, close)
- BinanceFeed: diff depth websocket + REST snapshot
- BitkubFeed: polled REST depth, diffed into level updates

The variant is picked once at startup from the tickers file's `cex`.
"""

from typing import Callable, Optional

from orderbook_collector.config.settings import Settings
from orderbook_collector.config.tickers import Exchange, Ticker
from orderbook_collector.feeds.base import ExchangeFeed, calculate_backoff, next_boundary
from orderbook_collector.feeds.binance import BinanceFeed
from orderbook_collector.feeds.bitkub import BitkubFeed

FEEDS: dict[Exchange, type[ExchangeFeed]] = {
    Exchange.BINANCE: BinanceFeed,
    Exchange.BITKUB: BitkubFeed,
}

FeedFactory = Callable[[Ticker], ExchangeFeed]


def create_feed(exchange: Exchange, ticker: Ticker, settings: Optional[Settings] = None) -> ExchangeFeed:
    """Create the feed variant for an exchange."""
    return FEEDS[exchange](ticker, settings)


def feed_factory(exchange: Exchange, settings: Optional[Settings] = None) -> FeedFactory:
    """Bind the exchange once; the Orchestrator only supplies tickers."""
    def factory(ticker: Ticker) -> ExchangeFeed:
        return create_feed(exchange, ticker, settings)
    return factory


__all__ = [
    "ExchangeFeed",
    "BinanceFeed",
    "BitkubFeed",
    "FEEDS",
    "FeedFactory",
    "create_feed",
    "feed_factory",
    "calculate_backoff",
    "next_boundary",
]
