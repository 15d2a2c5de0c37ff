"""FastAPI app fronting the media server for every client."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from flixor.cache import ResponseCache
from flixor.config import Settings, get_settings
from flixor.logging_setup import configure_logging
from gateway.errors import register_exception_handlers
from gateway.routers import auth, cache, health, plex, settings
from gateway.services.plex_client import PlexClient
from gateway.state import build_gateway, start, stop

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    await start(app.state.gateway)
    try:
        yield
    finally:
        await stop(app.state.gateway)


def create_app(
    config: Settings | None = None,
    *,
    plex_client: PlexClient | None = None,
    response_cache: ResponseCache | None = None,
) -> FastAPI:
    """Build the app. Components are wired here; startup I/O runs in ``lifespan``."""
    config = config or get_settings()
    configure_logging(config.log_level, json=config.log_json)

    app = FastAPI(title="Flixor Gateway", version="1.0.0", lifespan=lifespan)
    app.state.gateway = build_gateway(config, plex=plex_client, cache=response_cache)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --------------- Routers ---------------

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(settings.router)
    app.include_router(plex.router)
    app.include_router(cache.router)

    register_exception_handlers(app)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start_time) * 1000.0, 2),
        )
        return response

    return app


app = create_app()
