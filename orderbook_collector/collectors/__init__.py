"""
Order book collectors.

- Collector: keeps one symbol's book live and persisted
- Orchestrator: reconciles the collector pool against the tickers config
"""

from orderbook_collector.collectors.collector import Collector, CollectorHealth, RetryBudget
from orderbook_collector.collectors.orchestrator import CollectorHandle, Orchestrator

__all__ = [
    "Collector",
    "CollectorHealth",
    "CollectorHandle",
    "Orchestrator",
    "RetryBudget",
]
