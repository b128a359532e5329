"""
Service configuration using Pydantic Settings.

All settings loaded from environment variables (prefix OBC_) with sensible
defaults. The tickers file itself is hot-reloaded separately by ConfigWatcher.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="OBC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===========================================
    # Tickers file (hot-reloaded)
    # ===========================================
    tickers_config_path: str = "config.json"
    config_poll_interval: float = 1.0  # seconds between file checks

    # ===========================================
    # Snapshots
    # ===========================================
    output_dir: str = "data"
    snapshot_interval: float = 1.0  # aligned to wall-clock multiples
    book_depth: int = 10  # levels per side in persisted snapshots and Bitkub polls
    binance_snapshot_limit: int = 1000  # REST base for the diff stream needs a deep book

    # ===========================================
    # Collector lifecycle
    # ===========================================
    cancel_poll_interval: float = 0.5  # max delay before a stop signal is seen
    stop_timeout: float = 10.0  # wait for stop acknowledgement before force-cancel

    # Retry budget: N failures within a sliding window marks the collector FAILED
    feed_retry_limit: int = 5
    feed_retry_window: float = 60.0
    feed_backoff_base: float = 1.0
    feed_backoff_max: float = 30.0
    collector_restart_delay: float = 30.0  # cooldown before a FAILED collector still in config restarts

    # ===========================================
    # Exchange endpoints
    # ===========================================
    binance_rest_url: str = "https://api.binance.com"
    binance_ws_url: str = "wss://stream.binance.com:9443/ws"
    bitkub_rest_url: str = "https://api.bitkub.com"
    bitkub_poll_interval: float = 2.0  # Bitkub has no depth stream, poll REST

    http_connect_timeout: float = 10.0
    http_read_timeout: float = 30.0

    # ===========================================
    # Status API
    # ===========================================
    api_enabled: bool = False
    api_host: str = "127.0.0.1"
    api_port: int = 8080

    # ===========================================
    # Application
    # ===========================================
    log_level: str = "INFO"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
