"""
Session controller — a user's own sessions and security settings.

Every route runs the session gate via `Depends(require_session)`; the
gate context carries the caller's identity and current session.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.gate.dependencies import require_session
from app.gate.pipeline import GateContext
from app.models.session import UserSession
from app.schemas import (
    GeoLocationOut,
    RevokeResult,
    SecuritySettingsOut,
    SecuritySettingsRequest,
    SecurityStatusOut,
    SessionOut,
)
from app.services import session_manager, session_service

router = APIRouter(prefix="/api/sessions", tags=["Sessions"])


def _session_out(session: UserSession, current_id: str | None) -> SessionOut:
    return SessionOut(
        id=session.id,
        session_type=session.session_type.value,
        user_agent=session.user_agent,
        geo_location=GeoLocationOut(**session.geo_location),
        created_at=session.created_at,
        last_activity=session.last_activity,
        expires_at=session.expires_at,
        suspicious_activity=session.suspicious_activity,
        is_current=session.refresh_token_id == current_id,
    )


@router.get("", response_model=list[SessionOut])
async def list_sessions(
    ctx: GateContext = Depends(require_session),
    db: AsyncSession = Depends(get_db),
):
    """Active sessions of the caller, most recently active first."""
    sessions = await session_manager.list_active(db, ctx.user_uuid)
    return [_session_out(s, ctx.session_id) for s in sessions]


@router.delete("/{session_id}", response_model=RevokeResult)
async def revoke_session(
    session_id: uuid.UUID,
    ctx: GateContext = Depends(require_session),
    db: AsyncSession = Depends(get_db),
):
    session = await session_service.get_session_for_user(session_id, ctx.user_uuid, db)
    if session is None or not session.is_active():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")

    revoked = await session_manager.invalidate_session(
        db, session.refresh_token_id, user_id=ctx.user_uuid,
    )
    return RevokeResult(detail="Session revoked successfully", revoked=int(revoked))


@router.delete("", response_model=RevokeResult)
async def revoke_other_sessions(
    ctx: GateContext = Depends(require_session),
    db: AsyncSession = Depends(get_db),
):
    """Sign out everywhere except the current session."""
    revoked = await session_manager.invalidate_all_except(db, ctx.user_uuid, ctx.session_id)
    return RevokeResult(detail="All other sessions revoked successfully", revoked=revoked)


@router.get("/security-status", response_model=SecurityStatusOut)
async def security_status(
    ctx: GateContext = Depends(require_session),
    db: AsyncSession = Depends(get_db),
):
    summary = await session_manager.get_session_summary(db, ctx.user_uuid)
    return SecurityStatusOut(
        **summary,
        current_session_suspicious=ctx.suspicious_activity or ctx.session.suspicious_activity,
    )


@router.put("/security-settings", response_model=SecuritySettingsOut)
async def update_security_settings(
    body: SecuritySettingsRequest,
    ctx: GateContext = Depends(require_session),
    db: AsyncSession = Depends(get_db),
):
    """Change the caller's concurrent-session cap; excess sessions are evicted."""
    evicted = await session_manager.update_security_settings(
        db, ctx.user_uuid, body.max_concurrent_sessions, keep_session_id=ctx.session_id,
    )
    return SecuritySettingsOut(
        max_concurrent_sessions=body.max_concurrent_sessions,
        sessions_evicted=evicted,
    )
