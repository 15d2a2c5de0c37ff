"""Server-side browser sessions and signed session cookies."""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flixor.crypto import derive_key
from flixor.models.login_session import LoginSession
from flixor.secret_store import SecretStore

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; every stored time is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CookieSigner:
    """HMAC-sign session ids so forged cookies never reach the database."""

    def __init__(self, secret_store: SecretStore) -> None:
        self._secret_store = secret_store

    def _mac(self, session_id: str) -> str:
        key = derive_key(self._secret_store.get_secret(), "session-cookie")
        digest = hmac.new(key, session_id.encode(), hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()

    def sign(self, session_id: str) -> str:
        return f"{session_id}.{self._mac(session_id)}"

    def unsign(self, cookie_value: str) -> str | None:
        """Return the session id, or None when the signature does not match."""
        session_id, sep, mac = cookie_value.rpartition(".")
        if not sep or not session_id:
            return None
        if not hmac.compare_digest(mac, self._mac(session_id)):
            return None
        return session_id


class SessionStore:
    """Create, look up and expire ``sessions`` rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl: timedelta,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.ttl = ttl
        self._clock = clock

    async def create(
        self, user_id: uuid.UUID, username: str, plex_account_id: int | None = None
    ) -> LoginSession:
        now = self._clock()
        record = LoginSession(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            username=username,
            plex_account_id=plex_account_id,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()
        logger.info("session_created", user_id=str(user_id), expires_at=record.expires_at.isoformat())
        return record

    async def get(self, session_id: str) -> LoginSession | None:
        """Return the live session, or None if it is unknown or expired."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(LoginSession).where(LoginSession.id == session_id)
            )
            record = result.scalar_one_or_none()
        if record is None:
            return None
        if _as_utc(record.expires_at) <= self._clock():
            return None
        return record

    async def destroy(self, session_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(LoginSession).where(LoginSession.id == session_id))
            await session.commit()

    async def purge_expired(self) -> int:
        """Delete expired rows. Returns the number removed."""
        now = self._clock()
        async with self._session_factory() as session:
            result = await session.execute(select(LoginSession.id, LoginSession.expires_at))
            expired = [sid for sid, expires_at in result.all() if _as_utc(expires_at) <= now]
            if expired:
                await session.execute(delete(LoginSession).where(LoginSession.id.in_(expired)))
                await session.commit()
        logger.info("sessions_purged", removed=len(expired))
        return len(expired)
