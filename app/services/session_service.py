"""
Session service — store-level CRUD for user sessions.

Handles:
- Inserting and looking up sessions (by refresh-token id, by user)
- Single-statement mutations: activity touch, invalidation, suspicion flag
- Bulk hard deletes for the cleanup sweep

Every mutation here is one UPDATE / DELETE / INSERT so that concurrent
requests for the same user never lose each other's writes.  Higher-level
policy (caps, anomaly detection, rotation) lives in `session_manager`.
"""

import uuid
from datetime import datetime

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.base import utcnow
from app.models.session import SessionSuspicionEvent, UserSession
from app.models.user import User


def active_filter(now: datetime):
    """Filter clause for live sessions."""
    return and_(
        UserSession.invalidated_at.is_(None),
        UserSession.expires_at > now,
    )


# ── Reads ────────────────────────────────────────────────────────────


async def insert_session(session: UserSession, db: AsyncSession) -> UserSession:
    db.add(session)
    await db.flush()
    return session


async def get_session_by_refresh_id(
    refresh_token_id: str,
    db: AsyncSession,
) -> UserSession | None:
    """Return a session by its refresh-token id, live or not."""
    stmt = select(UserSession).where(UserSession.refresh_token_id == refresh_token_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_session_for_user(
    session_pk: uuid.UUID,
    user_id: uuid.UUID,
    db: AsyncSession,
) -> UserSession | None:
    stmt = select(UserSession).where(
        UserSession.id == session_pk,
        UserSession.user_id == user_id,
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def find_session_for_refresh(
    refresh_token_id: str,
    user_id: uuid.UUID,
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> UserSession | None:
    """Unexpired session matching a refresh token's `jti` and owner.

    Invalidated sessions are still returned; the caller decides.
    """
    now = now or utcnow()
    stmt = select(UserSession).where(
        UserSession.refresh_token_id == refresh_token_id,
        UserSession.user_id == user_id,
        UserSession.expires_at > now,
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_active_session(
    refresh_token_id: str,
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> UserSession | None:
    stmt = select(UserSession).where(
        UserSession.refresh_token_id == refresh_token_id,
        active_filter(now or utcnow()),
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_latest_active_session(
    user_id: uuid.UUID,
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> UserSession | None:
    """Most recently active live session of a user."""
    stmt = (
        select(UserSession)
        .where(UserSession.user_id == user_id, active_filter(now or utcnow()))
        .order_by(UserSession.last_activity.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def get_active_sessions(
    user_id: uuid.UUID,
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> list[UserSession]:
    """All live sessions for a user, most recently active first."""
    stmt = (
        select(UserSession)
        .where(UserSession.user_id == user_id, active_filter(now or utcnow()))
        .order_by(UserSession.last_activity.desc(), UserSession.created_at.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_recent_sessions(
    user_id: uuid.UUID,
    since: datetime,
    limit: int,
    db: AsyncSession,
    *,
    exclude_refresh_id: str | None = None,
) -> list[UserSession]:
    """Sessions created since `since`, newest first, live or not."""
    stmt = select(UserSession).where(
        UserSession.user_id == user_id,
        UserSession.created_at >= since,
    )
    if exclude_refresh_id is not None:
        stmt = stmt.where(UserSession.refresh_token_id != exclude_refresh_id)
    stmt = stmt.order_by(UserSession.created_at.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_active_sessions(
    user_id: uuid.UUID,
    db: AsyncSession,
    *,
    now: datetime | None = None,
) -> int:
    stmt = select(func.count()).select_from(UserSession).where(
        UserSession.user_id == user_id,
        active_filter(now or utcnow()),
    )
    return (await db.execute(stmt)).scalar_one()


# ── Writes ───────────────────────────────────────────────────────────


async def touch_session(
    refresh_token_id: str,
    now: datetime,
    db: AsyncSession,
) -> int:
    """Move `last_activity` forward to `now`; never backwards."""
    stmt = (
        update(UserSession)
        .where(
            UserSession.refresh_token_id == refresh_token_id,
            UserSession.last_activity < now,
        )
        .values(last_activity=now, login_attempts=0)
    )
    result = await db.execute(stmt)
    return result.rowcount


async def invalidate_by_refresh_id(
    refresh_token_id: str,
    db: AsyncSession,
    *,
    user_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> int:
    """Soft-invalidate one session if it is not already dead.

    Returns 1 for the caller that actually performed the transition and 0
    for everyone else, which makes this the rotation compare-and-set.
    """
    stmt = update(UserSession).where(
        UserSession.refresh_token_id == refresh_token_id,
        UserSession.invalidated_at.is_(None),
    )
    if user_id is not None:
        stmt = stmt.where(UserSession.user_id == user_id)
    stmt = stmt.values(invalidated_at=now or utcnow())
    result = await db.execute(stmt)
    return result.rowcount


async def lock_user_sessions(user_id: uuid.UUID, db: AsyncSession) -> None:
    """
    Serialize session creation for one user until the transaction ends.

    Row lock on the owning user (`SELECT ... FOR UPDATE`).  SQLite renders
    no lock clause; it serializes writers on the whole database instead.
    """
    await db.execute(select(User.id).where(User.id == user_id).with_for_update())


async def evict_lru_sessions(
    user_id: uuid.UUID,
    keep: int,
    db: AsyncSession,
    *,
    spare_refresh_id: str | None = None,
    now: datetime | None = None,
) -> int:
    """Invalidate live sessions beyond the `keep` most recently active ones.

    Ranking and invalidation are one UPDATE with the victims chosen by a
    subquery.  `spare_refresh_id` is never evicted and not counted in `keep`.
    """
    now = now or utcnow()
    ranked = (
        select(UserSession.id)
        .where(UserSession.user_id == user_id, active_filter(now))
        .order_by(UserSession.last_activity.desc(), UserSession.created_at.desc())
        .offset(max(keep, 0))
        .correlate(None)
    )
    if spare_refresh_id is not None:
        ranked = ranked.where(UserSession.refresh_token_id != spare_refresh_id)
    stmt = (
        update(UserSession)
        .where(UserSession.id.in_(ranked), UserSession.invalidated_at.is_(None))
        .values(invalidated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    result = await db.execute(stmt)
    return result.rowcount


async def invalidate_user_sessions(
    user_id: uuid.UUID,
    db: AsyncSession,
    *,
    keep_refresh_id: str | None = None,
    now: datetime | None = None,
) -> int:
    """Invalidate every live session for a user, optionally sparing one."""
    stmt = update(UserSession).where(
        UserSession.user_id == user_id,
        UserSession.invalidated_at.is_(None),
    )
    if keep_refresh_id is not None:
        stmt = stmt.where(UserSession.refresh_token_id != keep_refresh_id)
    stmt = stmt.values(invalidated_at=now or utcnow())
    result = await db.execute(stmt)
    return result.rowcount


async def flag_suspicious(
    refresh_token_id: str,
    reason: str,
    now: datetime,
    db: AsyncSession,
) -> bool:
    """Set the suspicious flag and append a log entry."""
    stmt = (
        update(UserSession)
        .where(UserSession.refresh_token_id == refresh_token_id)
        .values(suspicious_activity=True)
    )
    if (await db.execute(stmt)).rowcount == 0:
        return False
    session_pk = (
        await db.execute(
            select(UserSession.id).where(UserSession.refresh_token_id == refresh_token_id)
        )
    ).scalar_one()
    db.add(SessionSuspicionEvent(session_id=session_pk, reason=reason[:512], created_at=now))
    await db.flush()
    return True


async def set_user_session_cap(
    user_id: uuid.UUID,
    max_sessions: int,
    db: AsyncSession,
) -> int:
    stmt = (
        update(UserSession)
        .where(UserSession.user_id == user_id, UserSession.invalidated_at.is_(None))
        .values(max_concurrent_sessions=max_sessions)
    )
    result = await db.execute(stmt)
    return result.rowcount


async def delete_dead_sessions(
    now: datetime,
    invalidated_before: datetime,
    suspicious_created_before: datetime,
    db: AsyncSession,
) -> dict[str, int]:
    """Hard-delete expired, long-invalidated and stale suspicious sessions."""
    expired = await db.execute(
        delete(UserSession)
        .where(UserSession.expires_at < now)
    )
    invalidated = await db.execute(
        delete(UserSession)
        .where(UserSession.invalidated_at < invalidated_before)
    )
    suspicious = await db.execute(
        delete(UserSession)
        .where(
            UserSession.suspicious_activity.is_(True),
            UserSession.created_at < suspicious_created_before,
        )
    )
    return {
        "expired": expired.rowcount,
        "invalidated": invalidated.rowcount,
        "suspicious": suspicious.rowcount,
    }


async def count_sessions(db: AsyncSession, *clauses) -> int:
    stmt = select(func.count()).select_from(UserSession)
    if clauses:
        stmt = stmt.where(*clauses)
    return (await db.execute(stmt)).scalar_one()


# ── Aggregates (monitoring) ──────────────────────────────────────────


async def get_users_over_cap(db: AsyncSession, *, now: datetime) -> list[tuple[uuid.UUID, int, int]]:
    """`(user_id, active_count, cap)` for users holding more live sessions than allowed."""
    active_count = func.count(UserSession.id)
    cap = func.min(UserSession.max_concurrent_sessions)
    stmt = (
        select(UserSession.user_id, active_count, cap)
        .where(active_filter(now))
        .group_by(UserSession.user_id)
        .having(active_count > cap)
    )
    result = await db.execute(stmt)
    return [tuple(row) for row in result.all()]


async def get_rapid_session_users(
    db: AsyncSession,
    *,
    since: datetime,
    threshold: int,
) -> list[tuple[uuid.UUID, int]]:
    """`(user_id, created_count)` for users who created `threshold`+ sessions since `since`."""
    created = func.count(UserSession.id)
    stmt = (
        select(UserSession.user_id, created)
        .where(UserSession.created_at >= since)
        .group_by(UserSession.user_id)
        .having(created >= threshold)
    )
    result = await db.execute(stmt)
    return [tuple(row) for row in result.all()]


async def get_recently_flagged_sessions(db: AsyncSession, *, since: datetime) -> list[UserSession]:
    """Sessions that received a suspicion event since `since`."""
    flagged_ids = (
        select(SessionSuspicionEvent.session_id)
        .where(SessionSuspicionEvent.created_at >= since)
        .distinct()
    )
    stmt = (
        select(UserSession)
        .where(UserSession.id.in_(flagged_ids))
        .order_by(UserSession.created_at.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_active_grouped(db: AsyncSession, column, *, now: datetime) -> dict:
    """Live-session counts grouped by one column."""
    stmt = (
        select(column, func.count(UserSession.id))
        .where(active_filter(now))
        .group_by(column)
    )
    result = await db.execute(stmt)
    return {key: count for key, count in result.all()}
