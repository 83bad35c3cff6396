"""Health check endpoint (no auth)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..app_state import GatewayState
from ..deps import get_gateway_state

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/api/agent/health")
async def health_check(state: GatewayState = Depends(get_gateway_state)):
    """Report healthy with queue stats, or 503 when the stats cannot be produced."""
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        stats = state.jobs.get_stats()
    except Exception as exc:
        logger.error("Health check failed: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "timestamp": timestamp, "error": "Queue service unavailable"},
        )
    return {
        "status": "healthy",
        "version": "0.1.0",
        "timestamp": timestamp,
        "queue": stats.model_dump(),
        "max_concurrent": state.max_concurrent,
    }
