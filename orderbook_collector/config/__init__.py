"""
Configuration.

- Settings: service settings from environment variables
- TickerConfig: validated content of the hot-reloaded tickers file
- ConfigWatcher: polls the tickers file and yields ticker-set changes
"""

from orderbook_collector.config.settings import Settings, get_settings
from orderbook_collector.config.tickers import (
    Exchange,
    Ticker,
    TickerConfig,
    load_tickers_config,
    parse_tickers_config,
)
from orderbook_collector.config.watcher import ConfigWatcher

__all__ = [
    "Settings",
    "get_settings",
    "Exchange",
    "Ticker",
    "TickerConfig",
    "load_tickers_config",
    "parse_tickers_config",
    "ConfigWatcher",
]
