"""
Snapshot persistence.

One JSON file per symbol under <output_dir>/<EXCHANGE>/<SYMBOL>.json,
last write wins. Writes go to a temp file in the same directory and are
moved into place with os.replace, so readers see either the old or the new
file, never a partial one.
"""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Union

import structlog
from pydantic import ValidationError

from orderbook_collector.book.models import Snapshot
from orderbook_collector.config.tickers import Exchange, Ticker
from orderbook_collector.errors import PersistenceError

logger = structlog.get_logger()


class SnapshotPersister:
    """Atomic JSON snapshot writer/reader."""

    def __init__(self, output_dir: Union[str, Path]):
        self.output_dir = Path(output_dir)

    def path_for(self, exchange: Exchange, symbol: Union[Ticker, str]) -> Path:
        """Storage key for a symbol."""
        return self.output_dir / exchange.value / f"{symbol}.json"

    def write(self, snapshot: Snapshot) -> Path:
        """
        Write a snapshot atomically (blocking).

        Raises:
            PersistenceError: directory creation, write or rename failed
        """
        path = self.path_for(snapshot.exchange, snapshot.symbol)
        data = snapshot.model_dump_json().encode("utf-8")
        tmp_name = None

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=path.parent, prefix=f".{snapshot.symbol}.", suffix=".tmp"
            )
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass
                except OSError as cleanup_error:
                    logger.warning("Failed to remove temp snapshot", path=tmp_name, error=str(cleanup_error))
            raise PersistenceError(f"failed to write snapshot {path}: {e}") from e

        logger.debug("Snapshot written", symbol=snapshot.symbol, path=str(path), sequence=snapshot.sequence)
        return path

    async def persist(self, snapshot: Snapshot) -> Path:
        """Write a snapshot without blocking the event loop."""
        return await asyncio.to_thread(self.write, snapshot)

    def read(self, exchange: Exchange, symbol: Union[Ticker, str]) -> Snapshot:
        """
        Read the latest snapshot for a symbol.

        Raises:
            PersistenceError: file missing, unreadable or not a valid snapshot
        """
        path = self.path_for(exchange, symbol)
        try:
            raw = path.read_bytes()
        except OSError as e:
            raise PersistenceError(f"failed to read snapshot {path}: {e}") from e

        try:
            return Snapshot.model_validate_json(raw)
        except ValidationError as e:
            raise PersistenceError(f"corrupt snapshot {path}: {e}") from e
