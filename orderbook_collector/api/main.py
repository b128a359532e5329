"""
FastAPI application for the order book collector.

Read-only monitoring endpoints:
- Service health
- Per-collector status
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
import structlog

from orderbook_collector import __version__
from orderbook_collector.api.routes import collectors, health
from orderbook_collector.collectors.orchestrator import Orchestrator

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting status API")
    yield
    logger.info("Shutting down status API")


def create_app(orchestrator: Orchestrator) -> FastAPI:
    """Build the status API bound to a running orchestrator."""
    app = FastAPI(
        title="Order Book Collector",
        description="Status API for the dynamic order book collector",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    app.include_router(health.router, tags=["Health"])
    app.include_router(collectors.router, prefix="/api", tags=["Collectors"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Order Book Collector",
            "version": __version__,
            "docs": "/docs",
        }

    return app
