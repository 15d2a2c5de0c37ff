"""Per-user media server settings.

The connection parameters and token are stored as one sealed blob on the
user row. Changing or clearing them drops everything cached for the user,
since the cached data may belong to the previous server.
"""

from __future__ import annotations

from typing import Literal

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator

from flixor.cache import owner_prefix
from flixor.credentials import PlexCredential
from flixor.identity import Identity
from gateway.dependencies import get_gateway, require_identity
from gateway.services.accounts import get_active_user, load_credential, store_credential
from gateway.state import GatewayState

logger = structlog.get_logger()

router = APIRouter(prefix="/api/settings", tags=["settings"])


class PlexSettingsRequest(BaseModel):
    host: str = Field(min_length=1, max_length=255)
    port: int = Field(ge=1, le=65535)
    protocol: Literal["http", "https"] = "http"
    token: str = Field(min_length=1)
    manual: bool = True

    @field_validator("host")
    @classmethod
    def _bare_host(cls, value: str) -> str:
        value = value.strip()
        if not value or "/" in value or " " in value:
            raise ValueError("host must be a bare hostname or address")
        return value


async def _invalidate_user(gateway: GatewayState, identity: Identity) -> int:
    return await gateway.cache.invalidate(owner_prefix(identity.user_id), prefix=True)


@router.get("/plex")
async def get_plex_settings(
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
) -> dict:
    """Return the caller's own server configuration, token included.

    A blob that no longer decrypts is reported as ``credential_invalid``
    rather than as "not configured".
    """
    user = await get_active_user(gateway, identity.user_id)
    if not user.plex_credential:
        return {"configured": False}
    credential = await load_credential(gateway, user)
    return {
        "configured": credential.has_server,
        "server_id": credential.server_id,
        "config": credential.model_dump(),
    }


@router.post("/plex")
async def update_plex_settings(
    body: PlexSettingsRequest,
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
) -> dict:
    await get_active_user(gateway, identity.user_id)
    credential = PlexCredential(**body.model_dump())
    await store_credential(gateway, identity.user_id, credential)
    removed = await _invalidate_user(gateway, identity)
    logger.info(
        "server_settings_updated",
        user_id=str(identity.user_id),
        server_id=credential.server_id,
        cache_removed=removed,
    )
    return {"success": True, "server_id": credential.server_id}


@router.delete("/plex")
async def clear_plex_settings(
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
) -> dict:
    await get_active_user(gateway, identity.user_id)
    await store_credential(gateway, identity.user_id, None)
    removed = await _invalidate_user(gateway, identity)
    logger.info("server_settings_cleared", user_id=str(identity.user_id), cache_removed=removed)
    return {"success": True}
