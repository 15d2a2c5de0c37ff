"""Cached media server proxy.

Reads go through the response cache under a fingerprint that folds in the
caller's user id and the configured server's id, so the stored credential
is only decrypted on a miss. Every mutating route is listed in
``INVALIDATIONS`` together with the resource classes it can make stale.
"""

from __future__ import annotations

import uuid
from typing import Literal

import structlog
from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field

from flixor.cache import RESOURCE_TTLS, fingerprint, owner_prefix
from flixor.errors import ServerNotConfigured
from flixor.identity import Identity
from gateway.dependencies import get_gateway, require_identity
from gateway.services.accounts import get_active_user, load_server_credential
from gateway.services.plex_client import UpstreamResponse
from gateway.state import GatewayState

logger = structlog.get_logger()

router = APIRouter(prefix="/api/plex", tags=["plex"])

LIBRARY_IDENTIFIER = "com.plexapp.plugins.library"

_WATCH_STATE = (
    "metadata",
    "children",
    "library_items",
    "on_deck",
    "recently_added",
    "search",
)

# Mutating route name -> resource classes whose cached entries it makes stale
INVALIDATIONS: dict[str, tuple[str, ...]] = {
    "scrobble": _WATCH_STATE,
    "unscrobble": _WATCH_STATE,
    "timeline": ("metadata", "children", "on_deck", "sessions"),
}


def _upstream_response(result: UpstreamResponse, hit: bool | None = None) -> Response:
    headers = {}
    if hit is not None:
        headers["X-Cache"] = "hit" if hit else "miss"
    return Response(
        content=result.body,
        status_code=result.status_code,
        media_type=result.content_type,
        headers=headers,
    )


async def _cached_get(
    gateway: GatewayState,
    identity: Identity,
    resource: str,
    path: str,
    params: dict | None = None,
) -> Response:
    user = await get_active_user(gateway, identity.user_id)
    if user.plex_server_id is None:
        raise ServerNotConfigured(f"user {user.id} has no media server configured")
    key = fingerprint(
        resource,
        path,
        params,
        user_id=identity.user_id,
        server_id=user.plex_server_id,
    )

    async def fetch() -> UpstreamResponse:
        credential = await load_server_credential(gateway, identity)
        return await gateway.plex.fetch(credential, path, params)

    result, hit = await gateway.cache.get_or_fetch(key, RESOURCE_TTLS[resource], fetch)
    return _upstream_response(result, hit)


async def invalidate_after(
    gateway: GatewayState, user_id: uuid.UUID, server_id: str | None, route: str
) -> int:
    """Drop the caller's cached entries that ``route`` can make stale."""
    removed = 0
    for resource in INVALIDATIONS[route]:
        removed += await gateway.cache.invalidate(
            owner_prefix(user_id, server_id, resource), prefix=True
        )
    return removed


async def _mutate(
    gateway: GatewayState,
    identity: Identity,
    route: str,
    path: str,
    params: dict,
) -> Response | dict:
    credential = await load_server_credential(gateway, identity)
    try:
        result = await gateway.plex.send(credential, path, params)
    finally:
        # The upstream may have applied the change even when the call failed.
        removed = await invalidate_after(gateway, identity.user_id, credential.server_id, route)
        logger.info(
            "upstream_mutation",
            route=route,
            user_id=str(identity.user_id),
            cache_removed=removed,
        )
    if not 200 <= result.status_code < 300:
        return _upstream_response(result)
    return {"success": True}


# --------------- Cached reads ---------------


@router.get("/libraries")
async def libraries(
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
) -> Response:
    return await _cached_get(gateway, identity, "libraries", "/library/sections")


@router.get("/libraries/{section}/items")
async def library_items(
    section: str,
    sort: str | None = None,
    type: int | None = None,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
) -> Response:
    params = {
        "sort": sort,
        "type": type,
        "X-Plex-Container-Start": offset,
        "X-Plex-Container-Size": limit,
    }
    return await _cached_get(
        gateway, identity, "library_items", f"/library/sections/{section}/all", params
    )


@router.get("/metadata/{rating_key}")
async def metadata(
    rating_key: str,
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
) -> Response:
    return await _cached_get(gateway, identity, "metadata", f"/library/metadata/{rating_key}")


@router.get("/metadata/{rating_key}/children")
async def children(
    rating_key: str,
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
) -> Response:
    return await _cached_get(
        gateway, identity, "children", f"/library/metadata/{rating_key}/children"
    )


@router.get("/on-deck")
async def on_deck(
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
) -> Response:
    return await _cached_get(gateway, identity, "on_deck", "/library/onDeck")


@router.get("/recently-added")
async def recently_added(
    limit: int = Query(50, ge=1, le=500),
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
) -> Response:
    params = {"X-Plex-Container-Start": 0, "X-Plex-Container-Size": limit}
    return await _cached_get(
        gateway, identity, "recently_added", "/library/recentlyAdded", params
    )


@router.get("/search")
async def search(
    query: str = Query(..., min_length=1),
    limit: int = Query(10, ge=1, le=100),
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
) -> Response:
    return await _cached_get(
        gateway, identity, "search", "/hubs/search", {"query": query, "limit": limit}
    )


@router.get("/sessions")
async def now_playing(
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
) -> Response:
    return await _cached_get(gateway, identity, "sessions", "/status/sessions")


# --------------- Mutations ---------------


class TimelineRequest(BaseModel):
    state: Literal["playing", "paused", "stopped", "buffering"]
    time: int = Field(ge=0)
    duration: int = Field(ge=0)


@router.post("/scrobble/{rating_key}")
async def scrobble(
    rating_key: str,
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
):
    """Mark an item watched."""
    params = {"key": rating_key, "identifier": LIBRARY_IDENTIFIER}
    return await _mutate(gateway, identity, "scrobble", "/:/scrobble", params)


@router.post("/unscrobble/{rating_key}")
async def unscrobble(
    rating_key: str,
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
):
    """Mark an item unwatched."""
    params = {"key": rating_key, "identifier": LIBRARY_IDENTIFIER}
    return await _mutate(gateway, identity, "unscrobble", "/:/unscrobble", params)


@router.post("/timeline/{rating_key}")
async def timeline(
    rating_key: str,
    body: TimelineRequest,
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
):
    """Report playback progress (resume position)."""
    params = {
        "ratingKey": rating_key,
        "key": f"/library/metadata/{rating_key}",
        "state": body.state,
        "time": body.time,
        "duration": body.duration,
        "identifier": LIBRARY_IDENTIFIER,
    }
    return await _mutate(gateway, identity, "timeline", "/:/timeline", params)
