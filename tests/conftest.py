"""Shared test fixtures for the gateway test suite.

Provides settings rooted in ``tmp_path``, a fake Plex upstream served through
httpx ``MockTransport``, and an app + client pair that runs the real startup
path against a throwaway SQLite file.
"""

from __future__ import annotations

import httpx
import pytest

from flixor.config import Settings
from gateway.main import create_app
from gateway.services.plex_client import PlexClient

PLEX_TV_HOST = "plex.test"


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------


class FakeClock:
    """Seconds-since-epoch clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'flixor.db'}",
        config_directory=str(tmp_path / "config"),
        session_secret="",
        plex_tv_url=f"https://{PLEX_TV_HOST}",
        upstream_timeout_seconds=2.0,
        log_level="WARNING",
        log_json=False,
    )


# ---------------------------------------------------------------------------
# Fake Plex upstream
# ---------------------------------------------------------------------------


class FakePlex:
    """In-process stand-in for plex.tv and any number of media servers.

    Every request is recorded. Media server responses echo the host and path
    so tests can tell whose data they received.
    """

    def __init__(self) -> None:
        self.accounts: dict[str, dict] = {}
        self.calls: list[httpx.Request] = []
        self.status_overrides: dict[str, int] = {}
        self.errors: dict[str, Exception] = {}

    def add_account(self, token: str, account_id: int, username: str) -> None:
        self.accounts[token] = {
            "id": account_id,
            "username": username,
            "email": f"{username}@example.com",
            "title": username.title(),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path
        if path in self.errors:
            raise self.errors[path]
        token = request.headers.get("X-Plex-Token")
        if request.url.host == PLEX_TV_HOST:
            account = self.accounts.get(token or "")
            if account is None:
                return httpx.Response(401, json={"error": "unauthorized"})
            return httpx.Response(200, json=account)
        if path in self.status_overrides:
            return httpx.Response(self.status_overrides[path], json={"error": "override"})
        return httpx.Response(
            200,
            json={
                "MediaContainer": {
                    "host": request.url.host,
                    "path": path,
                    "query": dict(request.url.params),
                }
            },
        )

    def calls_to(self, path: str, host: str | None = None) -> list[httpx.Request]:
        return [
            c
            for c in self.calls
            if c.url.path == path and (host is None or c.url.host == host)
        ]


@pytest.fixture
def fake_plex():
    plex = FakePlex()
    plex.add_account("plex-token-a", 1001, "alice")
    plex.add_account("plex-token-b", 1002, "bob")
    return plex


@pytest.fixture
def plex_client(settings, fake_plex):
    return PlexClient(settings, transport=httpx.MockTransport(fake_plex.handler))


# ---------------------------------------------------------------------------
# App + clients
# ---------------------------------------------------------------------------


@pytest.fixture
async def app(settings, plex_client):
    application = create_app(settings, plex_client=plex_client)
    async with application.router.lifespan_context(application):
        yield application


@pytest.fixture
def gateway(app):
    return app.state.gateway


@pytest.fixture
async def make_client(app):
    """Factory for independent clients (separate cookie jars) against one app."""
    clients: list[httpx.AsyncClient] = []

    def _make() -> httpx.AsyncClient:
        c = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
        clients.append(c)
        return c

    yield _make
    for c in clients:
        await c.aclose()


@pytest.fixture
async def client(make_client):
    return make_client()


@pytest.fixture
def register():
    """Register a local account on ``client`` and return the response body."""

    async def _register(client, username="alice", password="correct-horse", mode="cookie"):
        resp = await client.post(
            "/api/auth/register",
            json={"username": username, "password": password, "mode": mode},
        )
        assert resp.status_code == 200, resp.text
        return resp.json()

    return _register


@pytest.fixture
def configure_server():
    """Point the signed-in user of ``client`` at a media server."""

    async def _configure(client, host="pms-a.test", port=32400, token="server-token-a", headers=None):
        resp = await client.post(
            "/api/settings/plex",
            json={"host": host, "port": port, "protocol": "http", "token": token},
            headers=headers,
        )
        assert resp.status_code == 200, resp.text
        return resp.json()

    return _configure
