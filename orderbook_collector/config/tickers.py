"""
Tickers file model.

The watched file looks like:

    { "cex": "BINANCE", "tickers": ["BTC_USDT", "ETH_USDT"] }

JSON is the canonical format; .yaml/.yml files with the same keys are
accepted as well.
"""

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Union

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from orderbook_collector.errors import ConfigError


class Exchange(str, Enum):
    """Supported exchanges. Chosen once at startup."""
    BINANCE = "BINANCE"
    BITKUB = "BITKUB"


@dataclass(frozen=True, order=True)
class Ticker:
    """
    A trading pair such as BTC_USDT.

    BTC is the base currency, USDT the quote currency. Exchange-specific
    spellings (BTCUSDT, THB_BTC, ...) are built by the feeds.
    """
    base: str
    quote: str

    @classmethod
    def parse(cls, symbol: str) -> "Ticker":
        """Parse a BASE_QUOTE string. Raises ValueError on bad format."""
        base, sep, quote = symbol.strip().upper().partition("_")
        if not sep or not base or not quote:
            raise ValueError(f"invalid ticker format: {symbol!r}")
        if not base.isalnum() or not quote.isalnum():
            raise ValueError(f"invalid ticker format: {symbol!r}")
        return cls(base=base, quote=quote)

    def __str__(self) -> str:
        return f"{self.base}_{self.quote}"


class TickerConfig(BaseModel):
    """Validated content of the tickers file."""

    model_config = ConfigDict(frozen=True)

    cex: Exchange
    tickers: frozenset[Ticker]

    @field_validator("cex", mode="before")
    @classmethod
    def validate_cex(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("tickers", mode="before")
    @classmethod
    def validate_tickers(cls, v):
        if not isinstance(v, (list, tuple, set, frozenset)):
            raise ValueError("tickers must be a list of BASE_QUOTE strings")
        parsed = set()
        for item in v:
            if isinstance(item, Ticker):
                parsed.add(item)
            elif isinstance(item, str):
                parsed.add(Ticker.parse(item))
            else:
                raise ValueError(f"ticker must be a string, got {type(item).__name__}")
        return frozenset(parsed)

    @property
    def exchange(self) -> Exchange:
        return self.cex

    @property
    def symbols(self) -> frozenset[Ticker]:
        return self.tickers


def parse_tickers_config(raw: Union[str, bytes], suffix: str = ".json") -> TickerConfig:
    """
    Parse and validate tickers file content.

    Raises:
        ConfigError: content is not valid JSON/YAML or fails validation
    """
    try:
        if suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(raw)
        else:
            data = json.loads(raw)
    except (ValueError, RecursionError, yaml.YAMLError) as e:
        # ValueError covers JSONDecodeError and UnicodeDecodeError; RecursionError
        # comes from pathologically nested documents
        raise ConfigError(f"cannot parse tickers file: {type(e).__name__}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError("tickers file must contain an object with 'cex' and 'tickers'")

    try:
        return TickerConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid tickers file: {e.errors()[0]['msg']}") from e


def load_tickers_config(path: Union[str, Path]) -> TickerConfig:
    """
    Load the tickers file from disk.

    Raises:
        ConfigError: file missing, unreadable or invalid
    """
    path = Path(path)
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}") from e
    return parse_tickers_config(raw, path.suffix)
