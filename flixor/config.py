"""Configuration management using Pydantic Settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict

SAMESITE_VALUES = ("lax", "strict", "none")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./config/flixor.db"

    # Persistent config volume (secret file, cache mirror)
    config_directory: str = "./config"

    # Explicit secret override. Takes priority over the persisted file.
    session_secret: str = ""

    # Session cookie
    session_cookie_name: str = "flixor.sid"
    # lax | strict | none; empty derives from frontend_url
    session_samesite: str = ""
    # true | false; empty derives from frontend_url
    session_secure: str = ""
    session_ttl_days: int = 7

    # Bearer tokens for non-browser clients
    bearer_token_ttl_days: int = 30

    frontend_url: str = "http://localhost:5173"

    # Response cache
    cache_directory: str = ""
    cache_max_entries: int = 5000

    # Upstream
    upstream_timeout_seconds: float = 15.0
    plex_tv_url: str = "https://plex.tv"
    plex_client_identifier: str = "flixor-gateway"
    plex_product: str = "Flixor"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def secret_path(self) -> Path:
        return Path(self.config_directory) / "secret.key"

    @property
    def cache_path(self) -> Path:
        if self.cache_directory:
            return Path(self.cache_directory)
        return Path(self.config_directory) / "cache"

    @property
    def frontend_is_https(self) -> bool:
        return urlparse(self.frontend_url).scheme == "https"

    @property
    def cookie_samesite(self) -> str:
        """SameSite policy for the session cookie.

        An explicit ``SESSION_SAMESITE`` wins. Otherwise a cross-site HTTPS
        frontend needs ``none`` and everything else gets ``lax``.
        """
        value = self.session_samesite.strip().lower()
        if value in SAMESITE_VALUES:
            return value
        return "none" if self.frontend_is_https else "lax"

    @property
    def cookie_secure(self) -> bool:
        value = self.session_secure.strip().lower()
        if value == "true":
            return True
        if value == "false":
            return False
        return self.frontend_is_https


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
