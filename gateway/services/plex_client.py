"""HTTP client for plex.tv and Plex Media Server endpoints.

Timeouts, network errors and 5xx become ``UpstreamUnavailable``; 401/403
become ``CredentialInvalid``. Any other status is handed back to the caller
unchanged. Retries are left to callers.
"""

from __future__ import annotations

import json
from dataclasses import dataclass

import httpx
import structlog

from flixor.config import Settings
from flixor.credentials import PlexCredential
from flixor.errors import CredentialInvalid, UpstreamUnavailable

logger = structlog.get_logger()


@dataclass
class UpstreamResponse:
    status_code: int
    body: str
    content_type: str


@dataclass
class PlexAccount:
    id: int
    username: str
    email: str | None = None
    thumb: str | None = None
    title: str | None = None


class PlexClient:
    """Async client for the Plex APIs the gateway proxies."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.plex_tv_url = settings.plex_tv_url.rstrip("/")
        self.timeout = settings.upstream_timeout_seconds
        self.client_identifier = settings.plex_client_identifier
        self.product = settings.plex_product
        self._transport = transport

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "X-Plex-Token": token,
            "X-Plex-Client-Identifier": self.client_identifier,
            "X-Plex-Product": self.product,
            "X-Plex-Version": "1.0.0",
            "X-Plex-Device-Name": "Flixor Gateway",
        }

    async def _request(
        self,
        method: str,
        url: str,
        token: str,
        params: dict | None = None,
    ) -> UpstreamResponse:
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.request(
                    method, url, params=params, headers=self._headers(token)
                )
        except httpx.TimeoutException as e:
            logger.warning("upstream_timeout", method=method, url=url)
            raise UpstreamUnavailable(f"timeout calling {url}") from e
        except httpx.RequestError as e:
            logger.warning("upstream_request_error", method=method, url=url, error=str(e))
            raise UpstreamUnavailable(f"request to {url} failed") from e

        if resp.status_code in (401, 403):
            logger.warning("upstream_rejected_token", method=method, url=url, status=resp.status_code)
            raise CredentialInvalid(f"upstream returned {resp.status_code}")
        if resp.status_code >= 500:
            logger.warning("upstream_server_error", method=method, url=url, status=resp.status_code)
            raise UpstreamUnavailable(f"upstream returned {resp.status_code}")

        logger.debug("upstream_call", method=method, url=url, status=resp.status_code)
        return UpstreamResponse(
            status_code=resp.status_code,
            body=resp.text,
            content_type=resp.headers.get("content-type", "application/json"),
        )

    async def get_account(self, token: str) -> PlexAccount:
        """Look up the plex.tv account that owns ``token``."""
        resp = await self._request("GET", f"{self.plex_tv_url}/api/v2/user", token)
        if resp.status_code != 200:
            raise UpstreamUnavailable(f"account lookup returned {resp.status_code}")
        try:
            data = json.loads(resp.body)
            return PlexAccount(
                id=int(data["id"]),
                username=str(data.get("username") or data.get("title") or "user"),
                email=data.get("email"),
                thumb=data.get("thumb"),
                title=data.get("title"),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise UpstreamUnavailable("account lookup returned an unexpected body") from e

    async def fetch(
        self, credential: PlexCredential, path: str, params: dict | None = None
    ) -> UpstreamResponse:
        """GET a media server path."""
        return await self._request("GET", credential.base_url + path, credential.token, params)

    async def send(
        self,
        credential: PlexCredential,
        path: str,
        params: dict | None = None,
        method: str = "GET",
    ) -> UpstreamResponse:
        """Issue a state-changing call. Plex exposes scrobble and timeline as GET."""
        return await self._request(method, credential.base_url + path, credential.token, params)
