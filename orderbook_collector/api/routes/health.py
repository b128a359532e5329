"""
Health check endpoints.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from orderbook_collector.collectors.collector import CollectorHealth

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Service health.

    Degraded when the orchestrator is not running or any collector has
    failed or is reconnecting.
    """
    orchestrator = request.app.state.orchestrator
    statuses = orchestrator.status()
    failed = sum(1 for s in statuses if s["health"] == CollectorHealth.FAILED.value)
    backoff = sum(1 for s in statuses if s["health"] == CollectorHealth.BACKOFF.value)

    healthy = orchestrator.running and failed == 0 and backoff == 0
    return {
        "status": "healthy" if healthy else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "exchange": orchestrator.exchange.value,
        "collectors": len(orchestrator.handles),
        "failed": failed,
        "reconnecting": backoff,
    }
