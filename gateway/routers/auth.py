"""Login, registration and logout for browser and non-browser clients.

``mode="cookie"`` (browsers) starts a server-side session and sets the
HTTP-only session cookie; the body never carries a token. ``mode="token"``
(mobile, CLI-style integrations) returns a signed bearer token and sets no
cookie.
"""

from __future__ import annotations

from typing import Literal

import structlog
from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from flixor.credentials import PlexCredential, open_credential
from flixor.errors import AuthenticationRequired, Conflict, CredentialInvalid, LoginFailed
from flixor.identity import Identity, issue_bearer_token
from flixor.models.user import User
from gateway.dependencies import get_gateway, require_identity
from gateway.services.accounts import (
    check_password,
    get_active_user,
    hash_password,
    store_credential,
)
from gateway.services.plex_client import PlexAccount
from gateway.state import GatewayState

logger = structlog.get_logger()

router = APIRouter(prefix="/api/auth", tags=["auth"])

LoginMode = Literal["cookie", "token"]


class RegisterRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=8)
    email: str | None = None
    mode: LoginMode = "cookie"


class LoginRequest(BaseModel):
    username: str
    password: str
    mode: LoginMode = "cookie"


class PlexLoginRequest(BaseModel):
    token: str = Field(min_length=1)
    mode: LoginMode = "cookie"


def _user_payload(user: User) -> dict:
    return {
        "id": str(user.id),
        "username": user.username,
        "email": user.email,
        "plex_account_id": user.plex_account_id,
        "has_password": user.has_password,
        "server_configured": user.plex_server_id is not None,
        "subscription": user.subscription,
    }


async def _complete_login(
    gateway: GatewayState, response: Response, user: User, mode: LoginMode
) -> dict:
    """Start a cookie session or mint a bearer token for ``user``."""
    body: dict = {"user": _user_payload(user)}
    if mode == "token":
        ttl = gateway.bearer_token_ttl
        body["token"] = issue_bearer_token(
            gateway.secret_store,
            user_id=user.id,
            username=user.username,
            plex_account_id=user.plex_account_id,
            ttl=ttl,
        )
        body["token_type"] = "bearer"
        body["expires_in"] = int(ttl.total_seconds())
    else:
        record = await gateway.sessions.create(user.id, user.username, user.plex_account_id)
        settings = gateway.settings
        response.set_cookie(
            key=gateway.resolver.cookie_name,
            value=gateway.resolver.cookie_value(record.id),
            max_age=int(gateway.sessions.ttl.total_seconds()),
            httponly=True,
            secure=settings.cookie_secure,
            samesite=settings.cookie_samesite,
            path="/",
        )
    logger.info("login", user_id=str(user.id), mode=mode)
    return body


async def _registration_taken(session: AsyncSession, username: str, email: str | None) -> bool:
    clauses = [User.username == username]
    if email:
        clauses.append(User.email == email)
    result = await session.execute(select(User.id).where(or_(*clauses)))
    return result.first() is not None


async def _find_plex_user(session: AsyncSession, plex_account_id: int) -> User | None:
    result = await session.execute(select(User).where(User.plex_account_id == plex_account_id))
    return result.scalar_one_or_none()


async def _upsert_plex_user(gateway: GatewayState, account: PlexAccount) -> User:
    """Return the user bound to ``account``, creating it on first sign-in.

    The plex.tv username is used when free, else ``<username>-<account id>``.
    A concurrent first sign-in for the same account resolves to the row the
    other request inserted.
    """
    async with gateway.session_factory() as session:
        user = await _find_plex_user(session, account.id)
        if user is not None:
            return user
        for username in (account.username, f"{account.username}-{account.id}"):
            taken = await session.execute(select(User.id).where(User.username == username))
            if taken.first() is not None:
                continue
            user = User(username=username, email=None, plex_account_id=account.id)
            session.add(user)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await _find_plex_user(session, account.id)
                if existing is not None:
                    return existing
                continue
            logger.info("user_registered", user_id=str(user.id), provider="plex")
            return user
    raise Conflict(f"no free username for plex account {account.id}")


@router.post("/register")
async def register(
    body: RegisterRequest,
    response: Response,
    gateway: GatewayState = Depends(get_gateway),
) -> dict:
    """Create a local account and sign it in."""
    async with gateway.session_factory() as session:
        if await _registration_taken(session, body.username, body.email):
            raise Conflict(f"username or email already registered: {body.username}")
        user = User(
            username=body.username,
            email=body.email,
            password_hash=hash_password(body.password),
        )
        session.add(user)
        try:
            await session.commit()
        except IntegrityError as e:
            raise Conflict(f"username or email registered concurrently: {body.username}") from e
    logger.info("user_registered", user_id=str(user.id))
    return await _complete_login(gateway, response, user, body.mode)


@router.post("/login")
async def login(
    body: LoginRequest,
    response: Response,
    gateway: GatewayState = Depends(get_gateway),
) -> dict:
    """Sign in with a local username and password."""
    async with gateway.session_factory() as session:
        result = await session.execute(select(User).where(User.username == body.username))
        user = result.scalar_one_or_none()
    if user is None or user.disabled or not check_password(body.password, user.password_hash):
        logger.info("login_failed", username=body.username)
        raise LoginFailed(f"password login rejected for {body.username}")
    return await _complete_login(gateway, response, user, body.mode)


@router.post("/plex")
async def plex_login(
    body: PlexLoginRequest,
    response: Response,
    gateway: GatewayState = Depends(get_gateway),
) -> dict:
    """Sign in with a plex.tv token, creating the account on first use.

    The token is sealed into the user's credential blob. Connection
    parameters already configured for the account are kept.
    """
    account = await gateway.plex.get_account(body.token)
    user = await _upsert_plex_user(gateway, account)
    if user.disabled:
        raise AuthenticationRequired(f"user {user.id} is disabled")

    credential = PlexCredential(token=body.token, manual=False)
    if user.plex_credential:
        try:
            previous, _ = open_credential(gateway.cipher, user.id, user.plex_credential)
        except CredentialInvalid:
            logger.warning("credential_replaced_after_decrypt_failure", user_id=str(user.id))
        else:
            credential = previous.model_copy(update={"token": body.token})
    await store_credential(gateway, user.id, credential)
    user = await get_active_user(gateway, user.id)

    return await _complete_login(gateway, response, user, body.mode)


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    gateway: GatewayState = Depends(get_gateway),
) -> dict:
    """End the cookie session. Bearer tokens stay valid until they expire."""
    session_id = gateway.resolver.session_id_from(request)
    if session_id is not None:
        await gateway.sessions.destroy(session_id)
        logger.info("logout", session=session_id[:8])
    response.delete_cookie(gateway.resolver.cookie_name, path="/")
    return {"success": True}


@router.get("/me")
async def me(
    identity: Identity = Depends(require_identity),
    gateway: GatewayState = Depends(get_gateway),
) -> dict:
    """Return the caller's identity and account summary."""
    user = await get_active_user(gateway, identity.user_id)
    return {
        **_user_payload(user),
        "auth_source": identity.source.value,
    }
