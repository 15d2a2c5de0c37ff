"""Process-scoped component container.

``build_gateway`` wires every component from one ``Settings`` without
touching disk or network; ``start`` performs the startup I/O (secret
bootstrap, table creation, cache rehydration) and ``stop`` releases pools
and the cache mirror.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from flixor.cache import ResponseCache
from flixor.config import Settings
from flixor.crypto import CredentialCipher
from flixor.database import create_engine, create_session_factory, init_models
from flixor.identity import IdentityResolver
from flixor.secret_store import SecretStore
from flixor.sessions import SessionStore
from gateway.services.plex_client import PlexClient

logger = structlog.get_logger()


@dataclass
class GatewayState:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    secret_store: SecretStore
    cipher: CredentialCipher
    sessions: SessionStore
    resolver: IdentityResolver
    cache: ResponseCache
    plex: PlexClient

    @property
    def bearer_token_ttl(self) -> timedelta:
        return timedelta(days=self.settings.bearer_token_ttl_days)


def build_gateway(
    settings: Settings,
    *,
    plex: PlexClient | None = None,
    cache: ResponseCache | None = None,
) -> GatewayState:
    engine = create_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    secret_store = SecretStore(settings.secret_path, override=settings.session_secret)
    sessions = SessionStore(session_factory, ttl=timedelta(days=settings.session_ttl_days))
    return GatewayState(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        secret_store=secret_store,
        cipher=CredentialCipher(secret_store),
        sessions=sessions,
        resolver=IdentityResolver(secret_store, sessions, settings.session_cookie_name),
        cache=cache
        or ResponseCache(settings.cache_path, max_entries=settings.cache_max_entries),
        plex=plex or PlexClient(settings),
    )


async def start(state: GatewayState) -> None:
    Path(state.settings.config_directory).mkdir(parents=True, exist_ok=True)
    await asyncio.to_thread(state.secret_store.get_secret)
    await init_models(state.engine)
    loaded = await asyncio.to_thread(state.cache.load)
    logger.info(
        "gateway_started",
        key_source=state.secret_store.status()["source"],
        cache_entries=loaded,
    )


async def stop(state: GatewayState) -> None:
    await asyncio.to_thread(state.cache.close)
    await state.engine.dispose()
    logger.info("gateway_stopped")
