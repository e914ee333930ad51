"""
Default interceptors of the session gate, in execution order.

1. extract_token             Bearer header, else access-token cookie
2. verify_token              signature / issuer / audience / expiry
3. resolve_session           live session behind the token
4. check_session_timeout     idle timeout + refresh advisory headers
5. check_device_fingerprint  hard stop on a different device
6. detect_anomalies          soft flag when several heuristics fire
7. track_activity            bump last_activity, expose user on request.state
8. enforce_session_cap       defensive re-check of the concurrency cap
9. propagate_suspicious_flag advisory header for flagged sessions

Timeout runs before activity is recorded, otherwise the idle time it
measures would always be zero.
"""

import json
import logging
import uuid
from datetime import timedelta

from app.core.config import settings
from app.core.device import generate_device_fingerprint, get_client_ip
from app.core.security import AccessTokenPayload, decode_access_token
from app.gate.pipeline import CONTINUE, GateCode, GateContext, GateResult, RequestPipeline, reject
from app.services import session_manager, session_service

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

HEADER_REFRESH_REQUIRED = "X-Session-Refresh-Required"
HEADER_EXPIRES_IN = "X-Session-Expires-In"
HEADER_ACTIVE_SESSIONS = "X-Active-Sessions"
HEADER_SUSPICIOUS = "X-Suspicious-Activity-Detected"


async def extract_token(ctx: GateContext) -> GateResult:
    scheme, _, credentials = ctx.request.headers.get("authorization", "").partition(" ")
    token = credentials.strip() if scheme.lower() == "bearer" else ""
    if not token:
        token = ctx.request.cookies.get(settings.ACCESS_COOKIE_NAME, "")
    if not token:
        return reject(401, GateCode.NO_TOKEN, "Access denied. No token provided.")
    ctx.token = token
    return CONTINUE


async def verify_token(ctx: GateContext) -> GateResult:
    claims = decode_access_token(ctx.token)
    if claims is None:
        return reject(401, GateCode.INVALID_TOKEN, "Invalid or expired token.")
    try:
        ctx.user = AccessTokenPayload.from_claims(claims)
        ctx.user_uuid = uuid.UUID(ctx.user.user_id)
    except (KeyError, ValueError):
        return reject(401, GateCode.INVALID_TOKEN, "Invalid or expired token.")
    ctx.claims = claims
    return CONTINUE


async def resolve_session(ctx: GateContext) -> GateResult:
    expired = reject(
        401, GateCode.SESSION_EXPIRED, "Session expired or invalid. Please log in again.",
    )

    if ctx.user.session_id:
        session = await session_service.get_session_by_refresh_id(ctx.user.session_id, ctx.db)
        if session is None:
            return reject(401, GateCode.SESSION_NOT_FOUND, "Session not found or expired.")
        if session.user_id != ctx.user_uuid or not session.is_active(ctx.now):
            return expired
    else:
        # Tokens minted before session ids were embedded
        session = await session_service.get_latest_active_session(
            ctx.user_uuid, ctx.db, now=ctx.now,
        )
        if session is None:
            return expired

    ctx.session = session
    return CONTINUE


async def check_session_timeout(ctx: GateContext) -> GateResult:
    session = ctx.session
    idle = ctx.now - session.last_activity
    if idle > timedelta(minutes=settings.SESSION_INACTIVITY_TIMEOUT_MINUTES):
        await session_manager.invalidate_session(ctx.db, session.refresh_token_id)
        security_logger.info(
            "Session %s of user %s timed out after %ds idle",
            session.refresh_token_id, session.user_id, int(idle.total_seconds()),
        )
        return reject(401, GateCode.SESSION_TIMEOUT, "Session expired due to inactivity.")

    remaining = session.expires_at - ctx.now
    if remaining < timedelta(minutes=settings.SESSION_REFRESH_THRESHOLD_MINUTES):
        ctx.response_headers[HEADER_REFRESH_REQUIRED] = "true"
        ctx.response_headers[HEADER_EXPIRES_IN] = str(max(int(remaining.total_seconds()), 0))
    return CONTINUE


async def check_device_fingerprint(ctx: GateContext) -> GateResult:
    ctx.fingerprint = generate_device_fingerprint(ctx.request.headers)
    if ctx.fingerprint != ctx.session.device_fingerprint:
        await session_manager.mark_suspicious(
            ctx.db, ctx.session_id, "fingerprint mismatch", now=ctx.now,
        )
        security_logger.warning(
            "Device fingerprint mismatch for user %s on session %s (ip=%s, ua=%s)",
            ctx.user.user_id,
            ctx.session_id,
            get_client_ip(ctx.request),
            ctx.request.headers.get("user-agent"),
        )
        return reject(
            401,
            GateCode.DEVICE_MISMATCH,
            "Session security violation detected. Please log in again.",
        )
    return CONTINUE


async def detect_anomalies(ctx: GateContext) -> GateResult:
    ctx.client_ip = get_client_ip(ctx.request)
    checks = await session_manager.detect_suspicious_activity(
        ctx.db,
        ctx.user_uuid,
        ctx.fingerprint,
        ctx.client_ip,
        exclude_session_id=ctx.session_id,
        now=ctx.now,
    )
    ctx.suspicious_checks = checks

    if checks.signal_count >= settings.SUSPICIOUS_SIGNAL_THRESHOLD:
        summary = json.dumps(checks.as_dict(), sort_keys=True)
        await session_manager.mark_suspicious(
            ctx.db, ctx.session_id, f"multiple suspicious indicators: {summary}", now=ctx.now,
        )
        ctx.suspicious_activity = True
        security_logger.warning(
            "Suspicious activity for user %s on session %s: %s (ip=%s, ua=%s)",
            ctx.user.user_id,
            ctx.session_id,
            summary,
            ctx.client_ip,
            ctx.request.headers.get("user-agent"),
        )
    return CONTINUE


async def track_activity(ctx: GateContext) -> GateResult:
    await session_manager.record_activity(ctx.db, ctx.session_id, now=ctx.now)
    ctx.request.state.user = ctx.user
    ctx.request.state.session_id = ctx.session_id
    ctx.request.state.suspicious_activity = ctx.suspicious_activity
    return CONTINUE


async def enforce_session_cap(ctx: GateContext) -> GateResult:
    active = await session_service.count_active_sessions(ctx.user_uuid, ctx.db, now=ctx.now)
    cap = ctx.session.max_concurrent_sessions
    if active > cap:
        logger.warning(
            "User %s has %d active sessions, max allowed %d", ctx.user.user_id, active, cap,
        )
        active -= await session_manager.enforce_concurrency_limit(
            ctx.db, ctx.user_uuid, cap, keep_session_id=ctx.session_id, now=ctx.now,
        )
    ctx.response_headers[HEADER_ACTIVE_SESSIONS] = str(active)
    return CONTINUE


async def propagate_suspicious_flag(ctx: GateContext) -> GateResult:
    if ctx.suspicious_activity or ctx.session.suspicious_activity:
        ctx.response_headers[HEADER_SUSPICIOUS] = "true"
    return CONTINUE


DEFAULT_INTERCEPTORS = (
    extract_token,
    verify_token,
    resolve_session,
    check_session_timeout,
    check_device_fingerprint,
    detect_anomalies,
    track_activity,
    enforce_session_cap,
    propagate_suspicious_flag,
)


def build_session_pipeline(interceptors=DEFAULT_INTERCEPTORS) -> RequestPipeline:
    return RequestPipeline(interceptors)
