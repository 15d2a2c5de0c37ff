"""Identity resolution for browser sessions and bearer tokens.

Browsers authenticate with the HTTP-only session cookie; mobile and other
non-browser clients hold a signed bearer token obtained once at login.
Both resolve to the same ``Identity`` so handlers never branch on the
client type.

Bearer tokens are stateless. There is no server-side revocation list: a
token dies at its ``exp`` or when the process secret is rotated (which
revokes every token at once).
"""

from __future__ import annotations

import secrets
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Protocol

import jwt
import structlog

from flixor.crypto import derive_key
from flixor.errors import AuthenticationRequired
from flixor.secret_store import SecretStore
from flixor.sessions import CookieSigner, SessionStore

logger = structlog.get_logger()

JWT_ALGORITHM = "HS256"


class IdentitySource(str, Enum):
    SESSION = "session"
    TOKEN = "token"


@dataclass(frozen=True)
class Identity:
    """Authenticated caller. Never carries an upstream credential."""

    user_id: uuid.UUID
    username: str
    source: IdentitySource
    plex_account_id: int | None = None
    session_id: str | None = None
    token_id: str | None = None


class RequestLike(Protocol):
    cookies: Mapping[str, str]
    headers: Mapping[str, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _bearer_key(secret_store: SecretStore) -> bytes:
    return derive_key(secret_store.get_secret(), "bearer-token")


def issue_bearer_token(
    secret_store: SecretStore,
    *,
    user_id: uuid.UUID,
    username: str,
    plex_account_id: int | None,
    ttl: timedelta,
    now: datetime | None = None,
) -> str:
    """Sign a bearer token for non-browser clients."""
    now = now or _utcnow()
    payload = {
        "sub": str(user_id),
        "username": username,
        "plex_account_id": plex_account_id,
        "iat": now,
        "exp": now + ttl,
        "jti": secrets.token_hex(16),
    }
    return jwt.encode(payload, _bearer_key(secret_store), algorithm=JWT_ALGORITHM)


class IdentityResolver:
    """Resolve a request to an ``Identity`` or raise ``AuthenticationRequired``."""

    def __init__(
        self,
        secret_store: SecretStore,
        sessions: SessionStore,
        cookie_name: str,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._secret_store = secret_store
        self._sessions = sessions
        self._signer = CookieSigner(secret_store)
        self.cookie_name = cookie_name
        self._clock = clock

    def cookie_value(self, session_id: str) -> str:
        return self._signer.sign(session_id)

    def session_id_from(self, request: RequestLike) -> str | None:
        raw = request.cookies.get(self.cookie_name)
        if not raw:
            return None
        return self._signer.unsign(raw)

    async def resolve(self, request: RequestLike) -> Identity:
        identity = await self._from_session(request)
        if identity is not None:
            return identity
        identity = self._from_bearer(request)
        if identity is not None:
            return identity
        raise AuthenticationRequired("no valid session cookie or bearer token")

    async def _from_session(self, request: RequestLike) -> Identity | None:
        session_id = self.session_id_from(request)
        if session_id is None:
            return None
        record = await self._sessions.get(session_id)
        if record is None:
            return None
        return Identity(
            user_id=record.user_id,
            username=record.username,
            source=IdentitySource.SESSION,
            plex_account_id=record.plex_account_id,
            session_id=record.id,
        )

    def _from_bearer(self, request: RequestLike) -> Identity | None:
        header = request.headers.get("authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        try:
            payload = jwt.decode(
                token.strip(),
                _bearer_key(self._secret_store),
                algorithms=[JWT_ALGORITHM],
                options={"require": ["sub", "exp", "iat"], "verify_iat": False},
            )
        except jwt.InvalidTokenError as e:
            logger.info("bearer_token_rejected", reason=type(e).__name__)
            return None
        # pyjwt checks exp against wall time; this honours the injected clock too.
        if payload["exp"] <= self._clock().timestamp():
            logger.info("bearer_token_rejected", reason="ExpiredSignatureError")
            return None
        try:
            user_id = uuid.UUID(str(payload["sub"]))
        except ValueError:
            logger.info("bearer_token_rejected", reason="InvalidSubject")
            return None
        return Identity(
            user_id=user_id,
            username=payload.get("username") or "user",
            source=IdentitySource.TOKEN,
            plex_account_id=payload.get("plex_account_id"),
            token_id=payload.get("jti"),
        )
