"""
Pydantic schemas for request / response serialization.

Kept in a single file for now — split per-domain when it grows.
Schemas are deliberately decoupled from SQLAlchemy models so the
API surface can evolve independently of the DB layer.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, EmailStr, Field

from app.core.config import settings


# ── Auth ─────────────────────────────────────────────────────────────
class LoginRequest(BaseModel):
    email: str
    password: str


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    first_name: str = Field(min_length=1, max_length=128)
    last_name: str = Field(min_length=1, max_length=128)


class UserOut(BaseModel):
    id: uuid.UUID
    email: str
    first_name: str
    last_name: str
    role: str
    is_active: bool
    created_at: datetime


class TokenResponse(BaseModel):
    """Refresh tokens travel only in the HTTP-only cookie, never here."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int = settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60
    user: UserOut


class CurrentUserOut(BaseModel):
    user_id: str
    email: str
    role: str
    session_id: str | None = None
    suspicious_activity: bool = False


# ── Sessions ─────────────────────────────────────────────────────────
class GeoLocationOut(BaseModel):
    country: str | None = None
    city: str | None = None
    ip: str | None = None


class SessionOut(BaseModel):
    id: uuid.UUID
    session_type: str
    user_agent: str | None = None
    geo_location: GeoLocationOut
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    suspicious_activity: bool
    is_current: bool = False


class SecuritySettingsRequest(BaseModel):
    max_concurrent_sessions: int = Field(
        ge=settings.MIN_CONCURRENT_SESSIONS,
        le=settings.MAX_CONCURRENT_SESSIONS,
    )


class SecuritySettingsOut(BaseModel):
    max_concurrent_sessions: int
    sessions_evicted: int


class SecurityStatusOut(BaseModel):
    active_sessions: int
    suspicious_sessions: int
    sessions_last_24h: int
    unique_devices: int
    unique_locations: int
    max_concurrent_sessions: int
    current_session_suspicious: bool = False


class RevokeResult(BaseModel):
    detail: str
    revoked: int


# ── Admin / monitoring ───────────────────────────────────────────────
class MetricsOut(BaseModel):
    total_active_sessions: int
    suspicious_sessions_count: int
    expired_sessions_count: int
    sessions_per_user: dict[str, int]
    device_types: dict[str, int]
    geo_distribution: dict[str, int]


class AlertOut(BaseModel):
    type: str
    user_id: str
    session_id: str
    details: str
    timestamp: datetime
    severity: str


class CleanupOut(BaseModel):
    cleaned_count: int
    expired: int
    invalidated: int
    suspicious: int


class ForceLogoutRequest(BaseModel):
    reason: str = Field(default="Administrative action", max_length=256)


# ── Generic ──────────────────────────────────────────────────────────
class MessageResponse(BaseModel):
    detail: str
