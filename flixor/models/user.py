"""User model: local account plus the sealed upstream credential."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from flixor.models.base import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    username: Mapped[str] = mapped_column(String(255), unique=True)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, default=None)
    password_hash: Mapped[str | None] = mapped_column(String(255), default=None)
    plex_account_id: Mapped[int | None] = mapped_column(
        unique=True, index=True, default=None
    )
    # Non-secret discriminator of the configured media server, used in cache keys
    plex_server_id: Mapped[str | None] = mapped_column(String(64), default=None)
    # Sealed credential blob (see flixor.credentials); legacy rows may hold plaintext
    plex_credential: Mapped[str | None] = mapped_column(Text, default=None)
    subscription: Mapped[dict | None] = mapped_column(JSON, default=None)
    disabled: Mapped[bool] = mapped_column(default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def has_password(self) -> bool:
        return self.password_hash is not None
