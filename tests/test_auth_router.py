"""Tests for /api/auth endpoints."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from flixor.models.user import User
from gateway.routers import auth as auth_router


# ---------------------------------------------------------------------------
# Local accounts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_register_with_cookie_mode_sets_cookie_and_no_token(client, register, settings):
    body = await register(client)

    assert body["user"]["username"] == "alice"
    assert body["user"]["has_password"] is True
    assert "token" not in body
    assert settings.session_cookie_name in client.cookies

    me = await client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.json()["auth_source"] == "session"


@pytest.mark.asyncio
async def test_session_cookie_attributes(client, settings):
    resp = await client.post(
        "/api/auth/register", json={"username": "alice", "password": "correct-horse"}
    )

    header = resp.headers["set-cookie"].lower()
    assert header.startswith(f"{settings.session_cookie_name}=")
    assert "httponly" in header
    assert "samesite=lax" in header
    assert "; secure" not in header
    assert "max-age=604800" in header


@pytest.mark.asyncio
async def test_token_mode_returns_bearer_and_no_cookie(client, register):
    body = await register(client, mode="token")

    assert body["token_type"] == "bearer"
    assert body["expires_in"] == 30 * 86400
    assert not client.cookies

    me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
    assert me.status_code == 200
    assert me.json()["auth_source"] == "token"
    assert me.json()["username"] == "alice"


@pytest.mark.asyncio
async def test_duplicate_registration_conflicts(client, make_client, register):
    await register(client)

    resp = await make_client().post(
        "/api/auth/register", json={"username": "alice", "password": "another-password"}
    )

    assert resp.status_code == 409
    assert resp.json()["error"] == "conflict"


@pytest.mark.asyncio
async def test_registration_race_on_unique_username_conflicts(client, make_client, register, monkeypatch):
    await register(client)
    monkeypatch.setattr(auth_router, "_registration_taken", AsyncMock(return_value=False))

    resp = await make_client().post(
        "/api/auth/register", json={"username": "alice", "password": "another-password"}
    )

    assert resp.status_code == 409
    assert resp.json()["error"] == "conflict"


@pytest.mark.asyncio
async def test_register_rejects_short_password(client):
    resp = await client.post("/api/auth/register", json={"username": "alice", "password": "short"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_password_login(client, make_client, register):
    await register(client)
    other = make_client()

    resp = await other.post(
        "/api/auth/login",
        json={"username": "alice", "password": "correct-horse", "mode": "token"},
    )

    assert resp.status_code == 200
    assert resp.json()["token"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "username,password",
    [("alice", "wrong-password"), ("nobody", "correct-horse")],
)
async def test_bad_login_is_generic(client, make_client, register, username, password):
    await register(client)

    resp = await make_client().post(
        "/api/auth/login", json={"username": username, "password": password}
    )

    assert resp.status_code == 401
    assert resp.json() == {
        "error": "invalid_login",
        "message": "Invalid username or password",
        "retryable": False,
    }


@pytest.mark.asyncio
async def test_disabled_user_cannot_log_in_or_use_session(client, make_client, register, gateway):
    await register(client)
    async with gateway.session_factory() as session:
        user = (await session.execute(select(User).where(User.username == "alice"))).scalar_one()
        user.disabled = True
        await session.commit()

    login = await make_client().post(
        "/api/auth/login", json={"username": "alice", "password": "correct-horse"}
    )
    me = await client.get("/api/auth/me")

    assert login.status_code == 401
    assert me.status_code == 401


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_me_requires_authentication(client):
    resp = await client.get("/api/auth/me")

    assert resp.status_code == 401
    assert resp.json()["error"] == "authentication_required"


@pytest.mark.asyncio
async def test_logout_destroys_session(client, register, settings):
    await register(client)
    cookie = client.cookies[settings.session_cookie_name]

    resp = await client.post("/api/auth/logout")
    assert resp.status_code == 200

    # Replaying the old cookie no longer works
    me = await client.get(
        "/api/auth/me", headers={"Cookie": f"{settings.session_cookie_name}={cookie}"}
    )
    assert me.status_code == 401


@pytest.mark.asyncio
async def test_logout_without_session_is_harmless(client):
    resp = await client.post("/api/auth/logout")
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_forged_cookie_is_rejected(client, settings):
    forged = f"{settings.session_cookie_name}=made-up-session.bad-signature"

    resp = await client.get("/api/auth/me", headers={"Cookie": forged})

    assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Plex sign-in
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_plex_login_creates_user_and_seals_token(client, gateway):
    resp = await client.post("/api/auth/plex", json={"token": "plex-token-a", "mode": "token"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["user"]["plex_account_id"] == 1001
    assert body["user"]["has_password"] is False
    assert "plex-token-a" not in resp.text

    async with gateway.session_factory() as session:
        user = (await session.execute(select(User).where(User.plex_account_id == 1001))).scalar_one()
    assert gateway.cipher.is_encrypted(user.plex_credential)
    assert "plex-token-a" not in user.plex_credential


@pytest.mark.asyncio
async def test_plex_login_twice_reuses_account(client, make_client):
    first = await client.post("/api/auth/plex", json={"token": "plex-token-a"})
    second = await make_client().post("/api/auth/plex", json={"token": "plex-token-a"})

    assert first.json()["user"]["id"] == second.json()["user"]["id"]


@pytest.mark.asyncio
async def test_plex_login_keeps_configured_server(client, configure_server, gateway):
    await client.post("/api/auth/plex", json={"token": "plex-token-a"})
    await configure_server(client)

    again = await client.post("/api/auth/plex", json={"token": "plex-token-a"})

    assert again.json()["user"]["server_configured"] is True
    settings_resp = await client.get("/api/settings/plex")
    config = settings_resp.json()["config"]
    assert config["host"] == "pms-a.test"
    assert config["token"] == "plex-token-a"


@pytest.mark.asyncio
async def test_plex_login_with_rejected_token(client):
    resp = await client.post("/api/auth/plex", json={"token": "not-a-real-token"})

    assert resp.status_code == 401
    assert resp.json()["error"] == "credential_invalid"


@pytest.mark.asyncio
async def test_plex_username_collision_gets_suffix(client, make_client, register):
    await register(client, username="alice")

    resp = await make_client().post("/api/auth/plex", json={"token": "plex-token-a"})

    assert resp.status_code == 200
    assert resp.json()["user"]["username"] == "alice-1001"


@pytest.mark.asyncio
async def test_plex_login_fails_cleanly_when_suffixed_username_is_taken(client, make_client, register):
    await register(client, username="alice")
    await register(make_client(), username="alice-1001")

    resp = await make_client().post("/api/auth/plex", json={"token": "plex-token-a"})

    assert resp.status_code == 409
    assert resp.json()["error"] == "conflict"


@pytest.mark.asyncio
async def test_concurrent_first_plex_login_reuses_inserted_user(client, make_client, monkeypatch):
    first = await client.post("/api/auth/plex", json={"token": "plex-token-a"})
    real_find = auth_router._find_plex_user
    lookups = []

    async def not_yet_visible(session, plex_account_id):
        lookups.append(plex_account_id)
        if len(lookups) == 1:
            return None
        return await real_find(session, plex_account_id)

    monkeypatch.setattr(auth_router, "_find_plex_user", not_yet_visible)

    second = await make_client().post("/api/auth/plex", json={"token": "plex-token-a"})

    assert second.status_code == 200
    assert second.json()["user"]["id"] == first.json()["user"]["id"]
    assert lookups == [1001, 1001]
