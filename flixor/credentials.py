"""Sealed upstream credential blobs stored on the user row.

A blob holds the media server token together with its connection
parameters. Rows written before encryption was introduced hold either a
bare token string or plaintext JSON; those still open, are flagged for
migration, and get re-sealed by the caller.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from typing import Literal

import structlog
from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flixor.crypto import CredentialCipher
from flixor.errors import CredentialInvalid
from flixor.models.user import User

logger = structlog.get_logger()


class PlexCredential(BaseModel):
    token: str
    host: str | None = None
    port: int | None = None
    protocol: Literal["http", "https"] = "http"
    manual: bool = True

    @property
    def has_server(self) -> bool:
        return bool(self.host and self.port)

    @property
    def base_url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    @property
    def server_id(self) -> str | None:
        """Short stable digest of the server address; safe to log and to key caches on."""
        if not self.has_server:
            return None
        return hashlib.sha256(self.base_url.lower().encode()).hexdigest()[:16]


def seal_credential(
    cipher: CredentialCipher, user_id: uuid.UUID, credential: PlexCredential
) -> str:
    return cipher.encrypt(user_id, credential.model_dump_json())


def _parse_plaintext(value: str) -> PlexCredential:
    stripped = value.strip()
    if stripped.startswith("{"):
        try:
            return PlexCredential.model_validate(json.loads(stripped))
        except (ValueError, ValidationError) as e:
            raise CredentialInvalid("legacy credential is not valid JSON") from e
    if not stripped:
        raise CredentialInvalid("legacy credential is empty")
    return PlexCredential(token=stripped, manual=False)


def open_credential(
    cipher: CredentialCipher, user_id: uuid.UUID, stored: str
) -> tuple[PlexCredential, bool]:
    """Return ``(credential, needs_migration)`` for a stored blob.

    Raises:
        CredentialInvalid: If an envelope fails to decrypt or parse.
    """
    if not cipher.is_encrypted(stored):
        return _parse_plaintext(stored), True
    plaintext = cipher.decrypt(user_id, stored)
    try:
        return PlexCredential.model_validate_json(plaintext), False
    except ValidationError as e:
        raise CredentialInvalid("decrypted credential has an unexpected shape") from e


async def migrate_legacy_credentials(
    session_factory: async_sessionmaker[AsyncSession],
    cipher: CredentialCipher,
) -> int:
    """Re-seal every plaintext credential blob. Returns the number migrated."""
    migrated = 0
    async with session_factory() as session:
        result = await session.execute(select(User).where(User.plex_credential.is_not(None)))
        for user in result.scalars().all():
            if cipher.is_encrypted(user.plex_credential):
                continue
            try:
                credential, _ = open_credential(cipher, user.id, user.plex_credential)
            except CredentialInvalid as e:
                logger.warning("credential_migration_skipped", user_id=str(user.id), reason=e.detail)
                continue
            user.plex_credential = seal_credential(cipher, user.id, credential)
            user.plex_server_id = credential.server_id
            migrated += 1
        await session.commit()
    logger.info("credential_migration_complete", migrated=migrated)
    return migrated
