"""User lookups and upstream credential access for request handlers."""

from __future__ import annotations

import uuid

import bcrypt
import structlog
from sqlalchemy import select

from flixor.credentials import PlexCredential, open_credential, seal_credential
from flixor.errors import AuthenticationRequired, CredentialInvalid, ServerNotConfigured
from flixor.identity import Identity
from flixor.models.user import User
from gateway.state import GatewayState

logger = structlog.get_logger()


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


async def get_active_user(gateway: GatewayState, user_id: uuid.UUID) -> User:
    """Load the user row; unknown or disabled users are unauthenticated."""
    async with gateway.session_factory() as session:
        result = await session.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
    if user is None or user.disabled:
        raise AuthenticationRequired(f"user {user_id} missing or disabled")
    return user


async def load_credential(gateway: GatewayState, user: User) -> PlexCredential:
    """Decrypt the user's stored credential.

    Legacy plaintext blobs are re-sealed on the way through.

    Raises:
        ServerNotConfigured: If the user has no stored credential.
        CredentialInvalid: If the blob does not decrypt for this user.
    """
    if not user.plex_credential:
        raise ServerNotConfigured(f"user {user.id} has no stored credential")
    try:
        credential, needs_migration = open_credential(
            gateway.cipher, user.id, user.plex_credential
        )
    except CredentialInvalid as e:
        logger.warning("credential_decrypt_failed", user_id=str(user.id), reason=e.detail)
        raise
    if needs_migration:
        await store_credential(gateway, user.id, credential)
        logger.info("credential_migrated", user_id=str(user.id))
    return credential


async def load_server_credential(gateway: GatewayState, identity: Identity) -> PlexCredential:
    """Credential for the caller's configured media server."""
    user = await get_active_user(gateway, identity.user_id)
    credential = await load_credential(gateway, user)
    if not credential.has_server:
        raise ServerNotConfigured(f"user {user.id} has no media server address")
    return credential


async def store_credential(
    gateway: GatewayState, user_id: uuid.UUID, credential: PlexCredential | None
) -> None:
    """Seal and save (or clear, when ``credential`` is None) the user's blob."""
    async with gateway.session_factory() as session:
        result = await session.execute(select(User).where(User.id == user_id))
        user = result.scalar_one()
        if credential is None:
            user.plex_credential = None
            user.plex_server_id = None
        else:
            user.plex_credential = seal_credential(gateway.cipher, user_id, credential)
            user.plex_server_id = credential.server_id
        await session.commit()
