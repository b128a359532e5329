"""
Dynamic order book collector.

Tracks live order books for a hot-reloaded set of tickers on one exchange
and persists per-ticker snapshots to disk.
"""

__version__ = "1.0.0"
