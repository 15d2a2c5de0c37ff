"""Cache introspection and per-user flush."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends

from flixor.cache import owner_prefix
from flixor.identity import Identity
from gateway.dependencies import get_gateway, require_identity
from gateway.state import GatewayState

logger = structlog.get_logger()

router = APIRouter(prefix="/api/cache", tags=["cache"])


@router.get("/stats")
async def cache_stats(
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
) -> dict:
    stats = gateway.cache.stats()
    stats["user_entries"] = gateway.cache.count(owner_prefix(identity.user_id))
    return stats


@router.delete("")
async def flush_user_cache(
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
) -> dict:
    """Drop every cached entry owned by the caller. Other users are untouched."""
    removed = await gateway.cache.invalidate(owner_prefix(identity.user_id), prefix=True)
    logger.info("user_cache_flushed", user_id=str(identity.user_id), removed=removed)
    return {"success": True, "removed": removed}
