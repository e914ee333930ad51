"""
Session monitoring service.

Two background loops, owned by the application lifespan:
- cleanup: hard-deletes dead sessions (`session_manager.cleanup_expired`)
- scan: raises security alerts into a bounded in-memory buffer

The service holds no global state; one instance lives on
`app.state.monitoring` and opens its own DB sessions from the injected
session factory.
"""

import asyncio
import enum
import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.models.base import utcnow
from app.models.session import UserSession
from app.services import session_manager, session_service

logger = logging.getLogger(__name__)


class AlertType(str, enum.Enum):
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    CONCURRENT_LIMIT_EXCEEDED = "CONCURRENT_LIMIT_EXCEEDED"
    UNUSUAL_LOCATION = "UNUSUAL_LOCATION"
    DEVICE_MISMATCH = "DEVICE_MISMATCH"


class AlertSeverity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(frozen=True)
class SecurityAlert:
    type: AlertType
    user_id: str
    session_id: str
    details: str
    timestamp: datetime
    severity: AlertSeverity

    def as_dict(self) -> dict:
        return asdict(self)


class SessionMonitoringService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        cleanup_interval: float = settings.MONITOR_CLEANUP_INTERVAL_SECONDS,
        scan_interval: float = settings.MONITOR_SCAN_INTERVAL_SECONDS,
        alert_buffer_size: int = settings.MONITOR_ALERT_BUFFER_SIZE,
        rapid_session_threshold: int = settings.MONITOR_RAPID_SESSION_THRESHOLD,
    ) -> None:
        self.session_factory = session_factory
        self.cleanup_interval = cleanup_interval
        self.scan_interval = scan_interval
        self.rapid_session_threshold = rapid_session_threshold
        self._alerts: deque[SecurityAlert] = deque(maxlen=alert_buffer_size)
        self._tasks: list[asyncio.Task] = []
        # (type, user_id, session_id) -> when the scan last raised it
        self._last_raised: dict[tuple[AlertType, str, str], datetime] = {}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    # ── Lifecycle ────────────────────────────────────────────────────

    def start(self) -> None:
        """Spawn the cleanup and scan loops.  No-op when already running."""
        if self._tasks:
            logger.warning("Session monitoring already running")
            return
        self._tasks = [
            asyncio.create_task(
                self._run_every(self.cleanup_interval, self.run_cleanup_cycle, "cleanup"),
            ),
            asyncio.create_task(
                self._run_every(self.scan_interval, self.run_scan_cycle, "scan"),
            ),
        ]
        logger.info(
            "Session monitoring started (cleanup every %ss, scan every %ss)",
            self.cleanup_interval,
            self.scan_interval,
        )

    async def stop(self) -> None:
        """Cancel both loops and wait for them.  Safe to call repeatedly."""
        if not self._tasks:
            return
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Session monitoring stopped")

    async def _run_every(self, interval: float, cycle, name: str) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await cycle()
            except Exception:
                logger.exception("Session monitoring %s cycle failed", name)

    # ── Cycles ───────────────────────────────────────────────────────

    async def run_cleanup_cycle(self) -> session_manager.CleanupResult:
        async with self.session_factory() as db:
            result = await session_manager.cleanup_expired(db)
            await db.commit()
        if result.total:
            logger.info(
                "Session cleanup removed %d session(s) (expired=%d, invalidated=%d, suspicious=%d)",
                result.total, result.expired, result.invalidated, result.suspicious,
            )
        return result

    async def run_scan_cycle(self, *, now: datetime | None = None) -> list[SecurityAlert]:
        now = now or utcnow()
        hour_ago = now - timedelta(hours=1)
        raised: list[SecurityAlert] = []

        async with self.session_factory() as db:
            for user_id, active, cap in await session_service.get_users_over_cap(db, now=now):
                raised.append(SecurityAlert(
                    type=AlertType.CONCURRENT_LIMIT_EXCEEDED,
                    user_id=str(user_id),
                    session_id="multiple",
                    details=f"User has {active} active sessions, max allowed: {cap}",
                    timestamp=now,
                    severity=AlertSeverity.MEDIUM,
                ))

            rapid = await session_service.get_rapid_session_users(
                db, since=hour_ago, threshold=self.rapid_session_threshold,
            )
            for user_id, created in rapid:
                raised.append(SecurityAlert(
                    type=AlertType.SUSPICIOUS_ACTIVITY,
                    user_id=str(user_id),
                    session_id="multiple",
                    details=f"Rapid session creation: {created} sessions in the last hour",
                    timestamp=now,
                    severity=AlertSeverity.HIGH,
                ))

            for session in await session_service.get_recently_flagged_sessions(db, since=hour_ago):
                raised.append(SecurityAlert(
                    type=AlertType.UNUSUAL_LOCATION,
                    user_id=str(session.user_id),
                    session_id=session.refresh_token_id,
                    details=(
                        f"Session from unusual location: "
                        f"{session.geo_country or 'Unknown'}, {session.geo_city or 'Unknown'}"
                    ),
                    timestamp=session.created_at,
                    severity=AlertSeverity.MEDIUM,
                ))

        fresh = [alert for alert in raised if self._claim(alert, now)]
        for alert in fresh:
            self._add_alert(alert)
        return fresh

    def _claim(self, alert: SecurityAlert, now: datetime) -> bool:
        """False when the same condition was already reported in the trailing hour."""
        window_start = now - timedelta(hours=1)
        self._last_raised = {
            key: at for key, at in self._last_raised.items() if at > window_start
        }
        key = (alert.type, alert.user_id, alert.session_id)
        if key in self._last_raised:
            return False
        self._last_raised[key] = now
        return True

    def _add_alert(self, alert: SecurityAlert) -> None:
        self._alerts.append(alert)
        if alert.severity is AlertSeverity.HIGH:
            logger.warning(
                "HIGH severity security alert: %s user=%s session=%s: %s",
                alert.type.value, alert.user_id, alert.session_id, alert.details,
            )

    # ── Queries ──────────────────────────────────────────────────────

    def get_alerts(self, limit: int = 50) -> list[SecurityAlert]:
        """Most recent alerts first."""
        ordered = sorted(self._alerts, key=lambda a: a.timestamp, reverse=True)
        return ordered[:max(limit, 0)]

    async def get_metrics(self) -> dict:
        now = utcnow()
        async with self.session_factory() as db:
            per_user = await session_service.count_active_grouped(db, UserSession.user_id, now=now)
            per_type = await session_service.count_active_grouped(db, UserSession.session_type, now=now)
            per_country = await session_service.count_active_grouped(db, UserSession.geo_country, now=now)
            suspicious = await session_service.count_sessions(
                db, session_service.active_filter(now), UserSession.suspicious_activity.is_(True),
            )
            expired = await session_service.count_sessions(db, UserSession.expires_at < now)

        return {
            "total_active_sessions": sum(per_user.values()),
            "suspicious_sessions_count": suspicious,
            "expired_sessions_count": expired,
            "sessions_per_user": {str(k): v for k, v in per_user.items()},
            "device_types": {
                (k.value if k is not None else "unknown"): v for k, v in per_type.items()
            },
            "geo_distribution": {(k or "Unknown"): v for k, v in per_country.items()},
        }

    async def force_cleanup(self) -> dict:
        result = await self.run_cleanup_cycle()
        return {"cleaned_count": result.total, **asdict(result)}

    async def get_user_stats(self, user_id: uuid.UUID) -> dict:
        async with self.session_factory() as db:
            return await session_manager.get_session_summary(db, user_id)


def get_monitoring(request: Request) -> SessionMonitoringService:
    return request.app.state.monitoring
