"""FastAPI dependencies shared by the routers."""

from __future__ import annotations

from fastapi import Depends, Request

from flixor.identity import Identity
from gateway.state import GatewayState


def get_gateway(request: Request) -> GatewayState:
    return request.app.state.gateway


async def require_identity(
    request: Request, gateway: GatewayState = Depends(get_gateway)
) -> Identity:
    """Resolve the caller from the session cookie or bearer token.

    Raises ``AuthenticationRequired`` (rendered as 401) when neither is valid.
    """
    identity = await gateway.resolver.resolve(request)
    request.state.identity = identity
    return identity
