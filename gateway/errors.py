"""Exception handlers that render the gateway error taxonomy."""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from flixor.errors import GatewayError, UpstreamUnavailable

logger = structlog.get_logger()


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Render a ``GatewayError``. Only the generic message reaches the client."""
    log = logger.warning if exc.status_code >= 500 else logger.info
    log(
        "request_failed",
        code=exc.code,
        status=exc.status_code,
        path=request.url.path,
        detail=exc.detail,
    )
    headers = None
    if isinstance(exc, UpstreamUnavailable):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": GatewayError.code,
            "message": GatewayError.public_message,
            "retryable": False,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
