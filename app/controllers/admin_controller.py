"""
Admin controller — session monitoring and forced logout.

Every route uses `Depends(require_role("admin"))` for enforcement.
Handlers delegate to the monitoring service and the session manager.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.gate.dependencies import require_role
from app.gate.pipeline import GateContext
from app.models.user import UserRole
from app.schemas import (
    AlertOut,
    CleanupOut,
    ForceLogoutRequest,
    MetricsOut,
    RevokeResult,
    SecurityStatusOut,
)
from app.services import auth_service, session_manager
from app.services.monitoring_service import SessionMonitoringService, get_monitoring

router = APIRouter(prefix="/api/admin", tags=["Admin"])

require_admin = require_role(UserRole.ADMIN.value)


# ── Monitoring ───────────────────────────────────────────────────────
@router.get("/sessions/metrics", response_model=MetricsOut)
async def session_metrics(
    ctx: GateContext = Depends(require_admin),
    monitoring: SessionMonitoringService = Depends(get_monitoring),
):
    return MetricsOut(**await monitoring.get_metrics())


@router.get("/sessions/alerts", response_model=list[AlertOut])
async def security_alerts(
    ctx: GateContext = Depends(require_admin),
    monitoring: SessionMonitoringService = Depends(get_monitoring),
    limit: int = Query(50, ge=1, le=100),
):
    """Recent security alerts, newest first."""
    return [
        AlertOut(
            type=a.type.value,
            user_id=a.user_id,
            session_id=a.session_id,
            details=a.details,
            timestamp=a.timestamp,
            severity=a.severity.value,
        )
        for a in monitoring.get_alerts(limit)
    ]


@router.post("/sessions/cleanup", response_model=CleanupOut)
async def force_cleanup(
    ctx: GateContext = Depends(require_admin),
    monitoring: SessionMonitoringService = Depends(get_monitoring),
):
    return CleanupOut(**await monitoring.force_cleanup())


# ── Users ────────────────────────────────────────────────────────────
@router.get("/users/{user_id}/session-stats", response_model=SecurityStatusOut)
async def user_session_stats(
    user_id: uuid.UUID,
    ctx: GateContext = Depends(require_admin),
    monitoring: SessionMonitoringService = Depends(get_monitoring),
):
    return SecurityStatusOut(**await monitoring.get_user_stats(user_id))


@router.post("/users/{user_id}/force-logout", response_model=RevokeResult)
async def force_logout(
    user_id: uuid.UUID,
    body: ForceLogoutRequest | None = None,
    ctx: GateContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Terminate every session of a user."""
    body = body or ForceLogoutRequest()
    if await auth_service.get_user_by_id(user_id, db) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    revoked = await session_manager.force_logout_user(
        db, user_id, f"{body.reason} (by {ctx.user.user_id})",
    )
    return RevokeResult(detail="User sessions terminated", revoked=revoked)
