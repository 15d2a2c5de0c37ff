"""SQLAlchemy models."""

from flixor.models.base import Base
from flixor.models.login_session import LoginSession
from flixor.models.user import User

__all__ = [
    "Base",
    "LoginSession",
    "User",
]
