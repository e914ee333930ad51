"""
Tests for the session lifecycle manager.
"""

import asyncio
from datetime import timedelta

import pytest
from fastapi import HTTPException
from sqlalchemy import func, select

from app.core.config import settings
from app.core.security import new_session_id
from app.models.base import utcnow
from app.models.session import SessionSuspicionEvent, UserSession
from app.services import session_manager, session_service
from conftest import client_info


async def _create(db, user, *, now=None, cap=None, **client_kwargs) -> str:
    session_id = new_session_id()
    await session_manager.create_session(
        db,
        user.id,
        session_id,
        client_info(**client_kwargs),
        max_concurrent_sessions=cap,
        now=now,
    )
    return session_id


class TestCreateSession:
    async def test_defaults(self, db, user):
        now = utcnow()
        session_id = await _create(db, user, now=now)
        await db.commit()

        session = await session_service.get_session_by_refresh_id(session_id, db)
        assert session.user_id == user.id
        assert session.expires_at == now + timedelta(days=settings.SESSION_TTL_DAYS)
        assert session.last_activity == now
        assert session.max_concurrent_sessions == settings.DEFAULT_MAX_CONCURRENT_SESSIONS
        assert session.geo_location == {"country": "Local", "city": "Local", "ip": "127.0.0.1"}
        assert session.is_active()
        assert not session.suspicious_activity

    async def test_cap_is_inherited_from_live_sessions(self, db, user):
        await _create(db, user, cap=3)
        second = await _create(db, user)
        session = await session_service.get_session_by_refresh_id(second, db)
        assert session.max_concurrent_sessions == 3

    async def test_sixth_session_evicts_least_recently_active(self, db, user):
        base = utcnow()
        ids = [await _create(db, user, now=base + timedelta(seconds=i)) for i in range(6)]
        await db.commit()

        active = await session_service.get_active_sessions(user.id, db, now=base + timedelta(seconds=6))
        assert len(active) == 5
        assert ids[0] not in {s.refresh_token_id for s in active}

        evicted = await session_service.get_session_by_refresh_id(ids[0], db)
        assert evicted.invalidated_at is not None

    async def test_recent_activity_protects_older_session(self, db, user):
        base = utcnow()
        ids = [await _create(db, user, now=base + timedelta(seconds=i), cap=2) for i in range(2)]
        await session_manager.record_activity(db, ids[0], now=base + timedelta(seconds=10))

        await _create(db, user, now=base + timedelta(seconds=11))
        active = {s.refresh_token_id for s in await session_service.get_active_sessions(user.id, db)}
        assert ids[0] in active
        assert ids[1] not in active


class TestConcurrencyLimit:
    async def test_idempotent(self, db, user):
        base = utcnow()
        for i in range(4):
            await _create(db, user, now=base + timedelta(seconds=i), cap=10)

        assert await session_manager.enforce_concurrency_limit(db, user.id, 2) == 2
        assert await session_manager.enforce_concurrency_limit(db, user.id, 2) == 0
        assert await session_service.count_active_sessions(user.id, db) == 2

    async def test_reserve_slot(self, db, user):
        base = utcnow()
        for i in range(3):
            await _create(db, user, now=base + timedelta(seconds=i), cap=10)

        evicted = await session_manager.enforce_concurrency_limit(db, user.id, 3, reserve_slot=True)
        assert evicted == 1
        assert await session_service.count_active_sessions(user.id, db) == 2

    async def test_kept_session_survives_even_when_oldest(self, db, user):
        base = utcnow()
        ids = [await _create(db, user, now=base + timedelta(seconds=i), cap=10) for i in range(3)]

        evicted = await session_manager.enforce_concurrency_limit(
            db, user.id, 2, keep_session_id=ids[0],
        )
        assert evicted == 1
        active = {s.refresh_token_id for s in await session_service.get_active_sessions(user.id, db)}
        assert active == {ids[0], ids[2]}

    async def test_racing_logins_respect_the_cap(self, session_factory, user, monkeypatch):
        base = utcnow() - timedelta(minutes=10)
        async with session_factory() as db:
            for i in range(5):
                await _create(db, user, now=base + timedelta(minutes=i))
            await db.commit()

        # Both logins read the store before either one writes.
        arrived = []
        both_read = asyncio.Event()
        resolve_cap = session_manager._resolve_session_cap

        async def resolve_then_wait(user_id, db, now):
            cap = await resolve_cap(user_id, db, now)
            arrived.append(user_id)
            if len(arrived) == 2:
                both_read.set()
            await both_read.wait()
            return cap

        monkeypatch.setattr(session_manager, "_resolve_session_cap", resolve_then_wait)

        async def login_once() -> str:
            async with session_factory() as db:
                session_id = await _create(db, user)
                await db.commit()
                return session_id

        new_ids = await asyncio.gather(login_once(), login_once())

        async with session_factory() as db:
            active = await session_service.get_active_sessions(user.id, db)
        assert len(active) == settings.DEFAULT_MAX_CONCURRENT_SESSIONS
        assert set(new_ids) <= {s.refresh_token_id for s in active}


class TestActivity:
    async def test_last_activity_never_moves_backwards(self, db, user):
        base = utcnow()
        session_id = await _create(db, user, now=base)

        later = base + timedelta(minutes=1)
        assert await session_manager.record_activity(db, session_id, now=later) is True
        assert await session_manager.record_activity(db, session_id, now=base) is False
        await db.commit()

        session = await session_service.get_session_by_refresh_id(session_id, db)
        assert session.last_activity == later

    async def test_unknown_session(self, db):
        assert await session_manager.record_activity(db, "missing") is False


class TestRotation:
    async def test_single_winner(self, db, user):
        session_id = await _create(db, user)
        assert await session_manager.rotate_session(db, session_id, user.id) is True
        assert await session_manager.rotate_session(db, session_id, user.id) is False

    async def test_wrong_owner_never_wins(self, db, user, make_user):
        session_id = await _create(db, user)
        await db.commit()
        mallory = await make_user("mallory@example.com")
        assert await session_manager.rotate_session(db, session_id, mallory.id) is False


class TestSuspiciousActivity:
    async def test_no_history_is_never_suspicious(self, db, user):
        check = await session_manager.detect_suspicious_activity(db, user.id, "a" * 64, "8.8.8.8")
        assert check.signal_count == 0

    async def test_new_device_and_location(self, db, user):
        await _create(db, user, ip="10.0.0.9", fingerprint="a" * 64)
        check = await session_manager.detect_suspicious_activity(db, user.id, "b" * 64, "8.8.8.8")
        assert check.new_device and check.new_location
        assert not check.rapid_sessions
        assert check.signal_count == 2

    async def test_known_device_and_location(self, db, user):
        await _create(db, user, ip="10.0.0.9", fingerprint="a" * 64)
        check = await session_manager.detect_suspicious_activity(db, user.id, "a" * 64, "10.0.0.9")
        assert check.signal_count == 0

    async def test_current_session_is_excluded_from_history(self, db, user):
        current = await _create(db, user, ip="10.0.0.9", fingerprint="a" * 64)
        check = await session_manager.detect_suspicious_activity(
            db, user.id, "a" * 64, "10.0.0.9", exclude_session_id=current,
        )
        assert check.signal_count == 0

    async def test_rapid_sessions(self, db, user):
        base = utcnow()
        for i in range(settings.RAPID_SESSION_THRESHOLD + 1):
            await _create(db, user, now=base + timedelta(seconds=i), cap=10)
        check = await session_manager.detect_suspicious_activity(
            db, user.id, "f" * 64, "127.0.0.1", now=base + timedelta(minutes=1),
        )
        assert check.rapid_sessions
        assert check.signal_count == 1

    async def test_unusual_hours(self, db, user, monkeypatch):
        monkeypatch.setattr(session_manager, "_local_hour", lambda now: 3)
        await _create(db, user)
        check = await session_manager.detect_suspicious_activity(db, user.id, "f" * 64, "127.0.0.1")
        assert check.unusual_hours
        assert check.as_dict() == {
            "new_device": False,
            "new_location": False,
            "rapid_sessions": False,
            "unusual_hours": True,
        }

    async def test_lookup_failure_reports_nothing(self, db, user, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("store down")

        monkeypatch.setattr(session_service, "get_recent_sessions", broken)
        check = await session_manager.detect_suspicious_activity(db, user.id, "a" * 64, "8.8.8.8")
        assert check.signal_count == 0

    async def test_mark_suspicious_appends_events(self, db, user):
        session_id = await _create(db, user)
        assert await session_manager.mark_suspicious(db, session_id, "fingerprint mismatch")
        assert await session_manager.mark_suspicious(db, session_id, "second look")
        await db.commit()

        session = await session_service.get_session_by_refresh_id(session_id, db)
        assert session.suspicious_activity is True
        reasons = (
            await db.execute(
                select(SessionSuspicionEvent.reason)
                .where(SessionSuspicionEvent.session_id == session.id)
                .order_by(SessionSuspicionEvent.created_at)
            )
        ).scalars().all()
        assert reasons == ["fingerprint mismatch", "second look"]

    async def test_mark_unknown_session(self, db):
        assert await session_manager.mark_suspicious(db, "missing", "whatever") is False


class TestInvalidation:
    async def test_invalidate_all_except(self, db, user):
        base = utcnow()
        ids = [await _create(db, user, now=base + timedelta(seconds=i)) for i in range(3)]
        assert await session_manager.invalidate_all_except(db, user.id, ids[1]) == 2
        active = await session_service.get_active_sessions(user.id, db)
        assert [s.refresh_token_id for s in active] == [ids[1]]

    async def test_force_logout(self, db, user):
        for _ in range(2):
            await _create(db, user)
        assert await session_manager.force_logout_user(db, user.id, "compromised") == 2
        assert await session_service.count_active_sessions(user.id, db) == 0

    async def test_invalidate_scoped_to_owner(self, db, user, make_user):
        session_id = await _create(db, user)
        await db.commit()
        mallory = await make_user("mallory@example.com")
        assert await session_manager.invalidate_session(db, session_id, user_id=mallory.id) is False
        assert await session_manager.invalidate_session(db, session_id, user_id=user.id) is True


class TestSecuritySettings:
    @pytest.mark.parametrize("value", [0, 11])
    async def test_out_of_range(self, db, user, value):
        with pytest.raises(HTTPException) as exc:
            await session_manager.update_security_settings(db, user.id, value)
        assert exc.value.status_code == 400

    async def test_lowering_the_cap_evicts(self, db, user):
        base = utcnow()
        ids = [await _create(db, user, now=base + timedelta(seconds=i)) for i in range(3)]

        assert await session_manager.update_security_settings(db, user.id, 1) == 2
        active = await session_service.get_active_sessions(user.id, db)
        assert [s.refresh_token_id for s in active] == [ids[2]]
        assert active[0].max_concurrent_sessions == 1


class TestSummary:
    async def test_summary(self, db, user):
        first = await _create(db, user, ip="10.0.0.1", fingerprint="a" * 64)
        await _create(db, user, ip="8.8.8.8", fingerprint="b" * 64)
        dead = await _create(db, user, fingerprint="c" * 64)
        await session_manager.invalidate_session(db, dead)
        await session_manager.mark_suspicious(db, first, "test")

        summary = await session_manager.get_session_summary(db, user.id)
        assert summary == {
            "active_sessions": 2,
            "suspicious_sessions": 1,
            "sessions_last_24h": 3,
            "unique_devices": 2,
            "unique_locations": 2,
            "max_concurrent_sessions": settings.DEFAULT_MAX_CONCURRENT_SESSIONS,
        }


class TestCleanup:
    async def test_suspicion_events_go_with_their_session(self, db, user):
        now = utcnow()
        session_id = await _create(db, user, now=now - timedelta(days=8))
        await session_manager.mark_suspicious(db, session_id, "fingerprint mismatch")
        await db.commit()

        result = await session_manager.cleanup_expired(db, now=now)
        await db.commit()

        assert result.total == 1
        events = (
            await db.execute(select(func.count()).select_from(SessionSuspicionEvent))
        ).scalar_one()
        assert events == 0

    async def test_removes_only_dead_sessions(self, db, user):
        now = utcnow()

        def row(**overrides) -> UserSession:
            values = dict(
                user_id=user.id,
                refresh_token_id=new_session_id(),
                device_fingerprint="f" * 64,
                ip_address="127.0.0.1",
                last_activity=now,
                created_at=now,
                expires_at=now + timedelta(days=7),
            )
            values.update(overrides)
            return UserSession(**values)

        live = row()
        recently_invalidated = row(invalidated_at=now - timedelta(days=1))
        db.add_all([
            live,
            recently_invalidated,
            row(expires_at=now - timedelta(minutes=1)),
            row(invalidated_at=now - timedelta(days=31)),
            row(
                suspicious_activity=True,
                created_at=now - timedelta(days=8),
                expires_at=now + timedelta(days=1),
            ),
        ])
        await db.commit()

        result = await session_manager.cleanup_expired(db, now=now)
        await db.commit()

        assert (result.expired, result.invalidated, result.suspicious) == (1, 1, 1)
        assert result.total == 3
        remaining = (await db.execute(select(UserSession.refresh_token_id))).scalars().all()
        assert set(remaining) == {live.refresh_token_id, recently_invalidated.refresh_token_id}
