"""
Models package — import every model so SQLAlchemy's Base.metadata
knows about all tables (critical for `create_all`).
"""

from app.models.base import Base, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin
from app.models.session import SessionSuspicionEvent, SessionType, UserSession
from app.models.user import User, UserRole

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "UUIDPrimaryKeyMixin",
    "User",
    "UserRole",
    "UserSession",
    "SessionType",
    "SessionSuspicionEvent",
]
