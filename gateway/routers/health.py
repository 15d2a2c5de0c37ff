"""Unauthenticated health endpoint for operators and clients."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from flixor.database import ping
from gateway.dependencies import get_gateway
from gateway.state import GatewayState

logger = structlog.get_logger()
router = APIRouter(tags=["health"])


@router.get("/health")
async def health(gateway: GatewayState = Depends(get_gateway)) -> JSONResponse:
    """Report storage connectivity and secret persistence.

    A volatile (unpersisted) secret is reported as ``degraded`` so it is
    noticed before a restart invalidates every session. An unreachable
    database returns 503.
    """
    database_ok = await ping(gateway.engine)
    key_store = gateway.secret_store.status()
    status = "healthy"
    if not database_ok:
        status = "unhealthy"
    elif key_store["degraded"]:
        status = "degraded"
    body = {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": "connected" if database_ok else "unreachable",
        "secret": {
            "source": key_store["source"],
            "degraded": key_store["degraded"],
        },
        "cache": {"entries": gateway.cache.stats()["entries"]},
    }
    return JSONResponse(status_code=200 if database_ok else 503, content=body)
