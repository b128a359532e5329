"""
Tickers file watcher with hot-reload.

Polls the file and re-parses it whenever its content differs from the last
read. Emits a new TickerConfig only when the ticker set actually changed.
Invalid edits are logged and the last good config is kept; an edit that
changes `cex` is rejected as a whole until the exchange is reverted.

Content is compared byte for byte rather than by mtime, so two quick
same-size edits on a filesystem with coarse timestamps are still seen.
"""

import asyncio
from pathlib import Path
from typing import AsyncIterator, Optional, Union

import structlog

from orderbook_collector.config.tickers import TickerConfig, parse_tickers_config
from orderbook_collector.errors import ConfigError, ExchangeChangedError, FatalStartupError

logger = structlog.get_logger()


class ConfigWatcher:
    """Watches the tickers file and yields changed configurations."""

    def __init__(self, path: Union[str, Path], poll_interval: float = 1.0):
        self.path = Path(path)
        self.poll_interval = poll_interval
        self.current: Optional[TickerConfig] = None
        self.last_error: Optional[ConfigError] = None
        self.error_count = 0
        self._content: Optional[bytes] = None  # None while the file is missing

    def _read(self) -> Optional[bytes]:
        try:
            return self.path.read_bytes()
        except OSError:
            return None

    def _report(self, error: ConfigError) -> None:
        self.last_error = error
        self.error_count += 1
        if isinstance(error, ExchangeChangedError):
            logger.error(
                "Exchange change rejected, ticker edits ignored until reverted",
                path=str(self.path),
                current=error.current,
                requested=error.requested,
            )
        else:
            logger.warning(
                "Invalid tickers config, keeping previous",
                path=str(self.path),
                error=str(error),
            )

    def load_initial(self) -> TickerConfig:
        """
        Load the startup configuration.

        Raises:
            FatalStartupError: file missing or invalid at launch
        """
        content = self._read()
        if content is None:
            raise FatalStartupError(f"tickers config {self.path} is missing or unreadable")
        try:
            config = parse_tickers_config(content, self.path.suffix)
        except ConfigError as e:
            raise FatalStartupError(f"invalid initial config {self.path}: {e}") from e

        self._content = content
        self.current = config
        logger.info(
            "Loaded tickers config",
            path=str(self.path),
            exchange=config.exchange.value,
            tickers=sorted(str(t) for t in config.symbols),
        )
        return config

    def poll(self) -> Optional[TickerConfig]:
        """
        Check the file once.

        Returns:
            The new config if the ticker set changed, else None
        """
        if self.current is None:
            raise RuntimeError("load_initial() must be called before poll()")

        content = self._read()
        if content == self._content:
            return None
        self._content = content

        if content is None:
            self._report(ConfigError(f"{self.path} is missing"))
            return None

        try:
            config = parse_tickers_config(content, self.path.suffix)
        except ConfigError as e:
            self._report(e)
            return None

        if config.exchange != self.current.exchange:
            self._report(ExchangeChangedError(self.current.exchange.value, config.exchange.value))
            return None

        self.last_error = None
        if config.symbols == self.current.symbols:
            logger.debug("Tickers file rewritten, ticker set unchanged", path=str(self.path))
            return None

        self.current = config
        logger.info(
            "Tickers config changed",
            path=str(self.path),
            tickers=sorted(str(t) for t in config.symbols),
        )
        return config

    async def watch(self) -> AsyncIterator[TickerConfig]:
        """
        Yield the current config, then one config per detected ticker-set change.

        Loads the file on first use. Calling watch() again after a failure
        resumes from the last good config instead of reloading it.
        """
        if self.current is None:
            await asyncio.to_thread(self.load_initial)
        yield self.current

        while True:
            await asyncio.sleep(self.poll_interval)
            config = await asyncio.to_thread(self.poll)
            if config is not None:
                yield config
