"""
Durable storage for order book snapshots.

- SnapshotPersister: atomic per-symbol JSON files
"""

from orderbook_collector.storage.persister import SnapshotPersister

__all__ = ["SnapshotPersister"]
