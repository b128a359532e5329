"""
Order book collector runner.

Main entry point that wires together:
1. Tickers file watcher (hot reload)
2. Orchestrator and its per-symbol collectors
3. Snapshot persister
4. Optional status API
"""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from typing import Optional

import structlog
import uvicorn

from orderbook_collector.collectors.orchestrator import Orchestrator
from orderbook_collector.config.settings import Settings, get_settings
from orderbook_collector.config.watcher import ConfigWatcher
from orderbook_collector.errors import FatalStartupError
from orderbook_collector.feeds import feed_factory
from orderbook_collector.storage.persister import SnapshotPersister

logger = structlog.get_logger()


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the collector."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    # Basic logging
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )

    # Structlog
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Reduce noise from client libraries
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


class ApiServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the runner."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


async def run_service(settings: Settings) -> int:
    """
    Run the collector until SIGINT/SIGTERM.

    Returns:
        Process exit code: 0 on clean shutdown, 1 if startup failed
    """
    watcher = ConfigWatcher(settings.tickers_config_path, poll_interval=settings.config_poll_interval)
    try:
        config = await asyncio.to_thread(watcher.load_initial)
    except FatalStartupError as e:
        logger.error("Startup failed", error=str(e))
        return 1

    orchestrator = Orchestrator(
        exchange=config.exchange,
        persister=SnapshotPersister(settings.output_dir),
        feed_factory=feed_factory(config.exchange, settings),
        settings=settings,
    )

    server: Optional[ApiServer] = None
    api_task: Optional[asyncio.Task] = None
    if settings.api_enabled:
        from orderbook_collector.api.main import create_app

        server = ApiServer(
            uvicorn.Config(
                create_app(orchestrator),
                host=settings.api_host,
                port=settings.api_port,
                log_level="warning",
            )
        )
        api_task = asyncio.create_task(server.serve(), name="status-api")
        logger.info("Status API enabled", host=settings.api_host, port=settings.api_port)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def shutdown_handler():
        logger.info("Shutdown signal received")
        orchestrator.stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_handler)

    try:
        await orchestrator.run(watcher)
    except FatalStartupError as e:
        logger.error("Startup failed", error=str(e))
        return 1
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        if server is not None and api_task is not None:
            server.should_exit = True
            await asyncio.gather(api_task, return_exceptions=True)

    logger.info("Collector service stopped")
    return 0


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="orderbook-collector",
        description="Collect live order books for the tickers listed in a hot-reloaded config file",
    )
    parser.add_argument("--config", help="Tickers file (JSON or YAML)")
    parser.add_argument("--output-dir", help="Directory for snapshot files")
    parser.add_argument(
        "--api",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Serve the read-only status API",
    )
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, WARNING, ...)")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
    """Apply command-line overrides on top of environment settings."""
    overrides = {
        "tickers_config_path": args.config,
        "output_dir": args.output_dir,
        "api_enabled": args.api,
        "log_level": args.log_level,
    }
    base = base or get_settings()
    return base.model_copy(update={k: v for k, v in overrides.items() if v is not None})


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point. Returns the process exit code."""
    settings = build_settings(parse_args(argv))
    setup_logging(settings.log_level)
    logger.info(
        "Starting order book collector",
        config=settings.tickers_config_path,
        output_dir=settings.output_dir,
    )
    return asyncio.run(run_service(settings))


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
