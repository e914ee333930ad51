"""
Session lifecycle manager.

Handles:
- Creating sessions (fingerprint + geo + concurrency cap + TTL)
- Least-recently-used eviction when a user exceeds the cap
- Activity tracking, suspicion flags and anomaly heuristics
- Invalidation: logout, sign-out-everywhere, rotation, forced logout
- The scheduled hard-delete sweep

Invalidation policy: sessions are always soft-invalidated
(`invalidated_at = now`) in response to user or admin actions and on
rotation.  Rows are only hard-deleted by `cleanup_expired`, after a
retention window, so flagged sessions remain available for review.
"""

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.device import ClientInfo
from app.core.geo import GeoResolver, StaticGeoResolver
from app.models.base import utcnow
from app.models.session import UserSession
from app.services import session_service

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

_default_geo_resolver = StaticGeoResolver()


@dataclass(frozen=True)
class SuspiciousActivityCheck:
    new_device: bool = False
    new_location: bool = False
    rapid_sessions: bool = False
    unusual_hours: bool = False

    @property
    def signal_count(self) -> int:
        return sum(asdict(self).values())

    def as_dict(self) -> dict[str, bool]:
        return asdict(self)


@dataclass(frozen=True)
class CleanupResult:
    expired: int = 0
    invalidated: int = 0
    suspicious: int = 0

    @property
    def total(self) -> int:
        return self.expired + self.invalidated + self.suspicious


# ── Creation & caps ──────────────────────────────────────────────────


async def _resolve_session_cap(user_id: uuid.UUID, db: AsyncSession, now: datetime) -> int:
    """The user's current cap, carried on their live sessions."""
    latest = await session_service.get_latest_active_session(user_id, db, now=now)
    if latest is not None:
        return latest.max_concurrent_sessions
    return settings.DEFAULT_MAX_CONCURRENT_SESSIONS


async def enforce_concurrency_limit(
    db: AsyncSession,
    user_id: uuid.UUID,
    max_sessions: int,
    *,
    reserve_slot: bool = False,
    keep_session_id: str | None = None,
    now: datetime | None = None,
) -> int:
    """
    Invalidate the least-recently-active sessions above the cap.

    With `reserve_slot` the cap is applied as `max_sessions - 1` so that a
    session about to be inserted fits.  `keep_session_id` is never evicted
    and takes one of the `max_sessions` slots.  Idempotent: a second call
    with the same arguments evicts nothing.  Returns the number evicted.
    """
    keep = max_sessions - 1 if reserve_slot or keep_session_id else max_sessions
    evicted = await session_service.evict_lru_sessions(
        user_id, keep, db, spare_refresh_id=keep_session_id, now=now or utcnow(),
    )
    if evicted:
        logger.info(
            "Evicted %d session(s) for user %s (cap %d)", evicted, user_id, max_sessions,
        )
    return evicted


async def create_session(
    db: AsyncSession,
    user_id: uuid.UUID,
    session_id: str,
    client: ClientInfo,
    *,
    geo_resolver: GeoResolver | None = None,
    max_concurrent_sessions: int | None = None,
    now: datetime | None = None,
) -> UserSession:
    """
    Persist a new session whose `refresh_token_id` is `session_id`.

    The row is flushed before this returns; callers commit it before
    handing out tokens bound to `session_id`.

    The cap is enforced after the insert, under a per-user lock, so two
    logins racing for the last slot cannot both keep their session alongside
    a full set of older ones.
    """
    now = now or utcnow()
    geo = (geo_resolver or _default_geo_resolver).resolve(client.ip_address)

    await session_service.lock_user_sessions(user_id, db)
    cap = max_concurrent_sessions or await _resolve_session_cap(user_id, db, now)

    session = UserSession(
        user_id=user_id,
        refresh_token_id=session_id,
        device_fingerprint=client.fingerprint,
        user_agent=client.user_agent,
        ip_address=client.ip_address,
        geo_country=geo.country,
        geo_city=geo.city,
        session_type=client.session_type,
        last_activity=now,
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(days=settings.SESSION_TTL_DAYS),
        max_concurrent_sessions=cap,
        suspicious_activity=False,
        login_attempts=0,
    )
    await session_service.insert_session(session, db)
    await enforce_concurrency_limit(db, user_id, cap, keep_session_id=session_id, now=now)
    return session


# ── Activity & anomalies ─────────────────────────────────────────────


async def record_activity(
    db: AsyncSession,
    session_id: str,
    *,
    now: datetime | None = None,
) -> bool:
    """Bump `last_activity`.  Stale writers never move it backwards."""
    return await session_service.touch_session(session_id, now or utcnow(), db) > 0


def _local_hour(now: datetime) -> int:
    return now.astimezone().hour


async def detect_suspicious_activity(
    db: AsyncSession,
    user_id: uuid.UUID,
    fingerprint: str,
    ip_address: str,
    *,
    exclude_session_id: str | None = None,
    now: datetime | None = None,
) -> SuspiciousActivityCheck:
    """
    Compare a request against the user's recent session history.

    History is the last `SUSPICIOUS_HISTORY_LIMIT` sessions created within
    `SUSPICIOUS_LOOKBACK_DAYS`, excluding the session being checked.  With
    no history there is nothing to compare against and every flag is False.
    Read-only; failures are logged and reported as "nothing suspicious".
    """
    now = now or utcnow()
    try:
        history = await session_service.get_recent_sessions(
            user_id,
            now - timedelta(days=settings.SUSPICIOUS_LOOKBACK_DAYS),
            settings.SUSPICIOUS_HISTORY_LIMIT,
            db,
            exclude_refresh_id=exclude_session_id,
        )
    except Exception:
        logger.exception("Suspicious-activity lookup failed for user %s", user_id)
        return SuspiciousActivityCheck()

    if not history:
        return SuspiciousActivityCheck()

    hour_ago = now - timedelta(hours=1)
    created_last_hour = sum(1 for s in history if s.created_at > hour_ago)
    local_hour = _local_hour(now)

    return SuspiciousActivityCheck(
        new_device=fingerprint not in {s.device_fingerprint for s in history},
        new_location=ip_address not in {s.ip_address for s in history},
        rapid_sessions=created_last_hour > settings.RAPID_SESSION_THRESHOLD,
        unusual_hours=settings.UNUSUAL_HOURS_START <= local_hour < settings.UNUSUAL_HOURS_END,
    )


async def mark_suspicious(
    db: AsyncSession,
    session_id: str,
    reason: str,
    *,
    now: datetime | None = None,
) -> bool:
    flagged = await session_service.flag_suspicious(session_id, reason, now or utcnow(), db)
    if flagged:
        security_logger.warning("Session %s marked suspicious: %s", session_id, reason)
    return flagged


# ── Invalidation ─────────────────────────────────────────────────────


async def invalidate_session(
    db: AsyncSession,
    session_id: str,
    *,
    user_id: uuid.UUID | None = None,
) -> bool:
    """Terminate one session (logout / revoke)."""
    return await session_service.invalidate_by_refresh_id(session_id, db, user_id=user_id) > 0


async def invalidate_all_except(
    db: AsyncSession,
    user_id: uuid.UUID,
    keep_session_id: str | None = None,
) -> int:
    """Terminate every live session of a user except `keep_session_id`."""
    count = await session_service.invalidate_user_sessions(
        user_id, db, keep_refresh_id=keep_session_id,
    )
    logger.info("Invalidated %d session(s) for user %s", count, user_id)
    return count


async def force_logout_user(db: AsyncSession, user_id: uuid.UUID, reason: str) -> int:
    """Administrative sign-out from every device."""
    count = await invalidate_all_except(db, user_id)
    security_logger.warning(
        "Force logout of user %s (%s): %d session(s) terminated", user_id, reason, count,
    )
    return count


async def rotate_session(db: AsyncSession, old_session_id: str, user_id: uuid.UUID) -> bool:
    """
    Retire the session behind a refresh token that is being rotated.

    Compare-and-set on `invalidated_at IS NULL`: of several concurrent
    refreshes presenting the same token, exactly one gets True.  The caller
    must create the replacement session only after winning.
    """
    return await session_service.invalidate_by_refresh_id(old_session_id, db, user_id=user_id) == 1


# ── Queries ──────────────────────────────────────────────────────────


async def list_active(db: AsyncSession, user_id: uuid.UUID) -> list[UserSession]:
    return await session_service.get_active_sessions(user_id, db)


async def update_security_settings(
    db: AsyncSession,
    user_id: uuid.UUID,
    max_concurrent_sessions: int,
    *,
    keep_session_id: str | None = None,
) -> int:
    """Change the user's session cap and apply it immediately, sparing `keep_session_id`."""
    if not (
        settings.MIN_CONCURRENT_SESSIONS
        <= max_concurrent_sessions
        <= settings.MAX_CONCURRENT_SESSIONS
    ):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=(
                f"Max concurrent sessions must be between "
                f"{settings.MIN_CONCURRENT_SESSIONS} and {settings.MAX_CONCURRENT_SESSIONS}"
            ),
        )
    await session_service.set_user_session_cap(user_id, max_concurrent_sessions, db)
    return await enforce_concurrency_limit(
        db, user_id, max_concurrent_sessions, keep_session_id=keep_session_id,
    )


async def get_session_summary(db: AsyncSession, user_id: uuid.UUID) -> dict:
    """Aggregate security status for one user."""
    now = utcnow()
    active = await session_service.get_active_sessions(user_id, db, now=now)
    recent = await session_service.count_sessions(
        db,
        UserSession.user_id == user_id,
        UserSession.created_at >= now - timedelta(hours=24),
    )
    return {
        "active_sessions": len(active),
        "suspicious_sessions": sum(1 for s in active if s.suspicious_activity),
        "sessions_last_24h": recent,
        "unique_devices": len({s.device_fingerprint for s in active}),
        "unique_locations": len({(s.geo_country, s.geo_city) for s in active}),
        "max_concurrent_sessions": (
            active[0].max_concurrent_sessions if active else settings.DEFAULT_MAX_CONCURRENT_SESSIONS
        ),
    }


# ── Cleanup ──────────────────────────────────────────────────────────


async def cleanup_expired(db: AsyncSession, *, now: datetime | None = None) -> CleanupResult:
    """
    Hard-delete sessions that can no longer matter.

    - expired (`expires_at < now`)
    - invalidated more than `INVALIDATED_SESSION_RETENTION_DAYS` ago
    - flagged suspicious and created more than `SUSPICIOUS_SESSION_RETENTION_DAYS` ago
    """
    now = now or utcnow()
    counts = await session_service.delete_dead_sessions(
        now,
        now - timedelta(days=settings.INVALIDATED_SESSION_RETENTION_DAYS),
        now - timedelta(days=settings.SUSPICIOUS_SESSION_RETENTION_DAYS),
        db,
    )
    return CleanupResult(**counts)
