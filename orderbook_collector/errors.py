"""
Error taxonomy for the collector service.

Recoverable errors (config, feed, book, persistence) are handled inside the
component that raised them and surfaced as logs/health. Only
FatalStartupError reaches the process entry point.
"""


class CollectorError(Exception):
    """Base class for all collector service errors."""
    pass


class ConfigError(CollectorError):
    """Malformed or unsupported tickers configuration. Previous config is kept."""
    pass


class ExchangeChangedError(ConfigError):
    """The `cex` field changed after startup, which is not supported."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"exchange change {current} -> {requested} is not supported")
        self.current = current
        self.requested = requested


class FatalStartupError(CollectorError):
    """Invalid initial configuration. The process exits non-zero."""
    pass


class FeedError(CollectorError):
    """Exchange connection dropped or sent something we could not parse."""
    pass


class BookConsistencyError(CollectorError):
    """Update rejected because the order book is in the ANOMALOUS state."""
    pass


class PersistenceError(CollectorError):
    """Snapshot could not be written to (or read from) storage."""
    pass
