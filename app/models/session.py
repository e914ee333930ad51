"""
User session model — one row per logical login.

Tracks every login a user holds, enabling:
- Refresh-token rotation (`refresh_token_id` is the refresh token's `jti`)
- Device fingerprinting & suspicious-activity flags
- Per-user concurrency caps with least-recently-used eviction
- Soft invalidation (`invalidated_at`) with scheduled hard delete

A session is *active* iff `invalidated_at IS NULL AND expires_at > now`.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, Enum, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin, utcnow


class SessionType(str, enum.Enum):
    WEB = "web"
    MOBILE = "mobile"
    API = "api"


class UserSession(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "user_sessions"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    refresh_token_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    device_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    geo_country: Mapped[str | None] = mapped_column(String(64), nullable=True)
    geo_city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    session_type: Mapped[SessionType] = mapped_column(
        Enum(SessionType, name="session_type", values_callable=lambda e: [m.value for m in e]),
        default=SessionType.WEB,
        nullable=False,
    )
    last_activity: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
        index=True,
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, index=True)
    invalidated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
        index=True,
    )
    max_concurrent_sessions: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    suspicious_activity: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    login_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    suspicion_events: Mapped[list["SessionSuspicionEvent"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SessionSuspicionEvent.created_at",
    )

    __table_args__ = (
        Index("ix_user_sessions_user_live", "user_id", "invalidated_at", "expires_at"),
        Index("ix_user_sessions_user_device", "user_id", "device_fingerprint"),
    )

    @property
    def geo_location(self) -> dict[str, str | None]:
        return {"country": self.geo_country, "city": self.geo_city, "ip": self.ip_address}

    def is_active(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.invalidated_at is None and self.expires_at > now

    def __repr__(self) -> str:
        return f"<UserSession user={self.user_id} jti={self.refresh_token_id} type={self.session_type.value}>"


class SessionSuspicionEvent(Base, UUIDPrimaryKeyMixin):
    """Append-only log entry explaining why a session was flagged."""

    __tablename__ = "session_suspicion_events"

    session_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("user_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    reason: Mapped[str] = mapped_column(String(512), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
        index=True,
    )

    session: Mapped[UserSession] = relationship(back_populates="suspicion_events")

    def __repr__(self) -> str:
        return f"<SessionSuspicionEvent session={self.session_id} reason={self.reason!r}>"
