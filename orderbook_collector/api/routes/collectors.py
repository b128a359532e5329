"""
Collector status endpoints.
"""
from fastapi import APIRouter, HTTPException, Request

router = APIRouter()


@router.get("/collectors")
async def list_collectors(request: Request):
    """Status of every collector, including reaped failures."""
    return request.app.state.orchestrator.status()


@router.get("/collectors/{symbol}")
async def get_collector(symbol: str, request: Request):
    """Status of one collector by BASE_QUOTE symbol."""
    wanted = symbol.upper()
    for status in request.app.state.orchestrator.status():
        if status["symbol"] == wanted:
            return status
    raise HTTPException(status_code=404, detail=f"No collector for {wanted}")
