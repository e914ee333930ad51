"""
Authentication service.

Handles:
- Registration and login (each creates a fresh session)
- Refresh-token rotation (retire old session, mint a new one)
- Logout of the session behind a refresh token
- Auth cookie helpers

Ordering rule: a session row is committed BEFORE any token naming it
leaves this module, so a refresh racing right behind login always finds
its session.

All business logic lives here; controllers call service methods
and return the result.
"""

import logging
import uuid

from fastapi import HTTPException, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.device import ClientInfo
from app.core.geo import GeoResolver
from app.core.security import (
    AccessTokenPayload,
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    hash_password,
    new_session_id,
    verify_password,
)
from app.models.user import User
from app.schemas import RegisterRequest
from app.services import session_manager, session_service, token_service

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")


# ── Cookies ──────────────────────────────────────────────────────────


def set_auth_cookies(response: Response, access_token: str, refresh_token: str) -> None:
    common = {
        "httponly": True,
        "secure": settings.COOKIE_SECURE,
        "samesite": settings.COOKIE_SAMESITE,
        "path": "/",
    }
    response.set_cookie(
        settings.ACCESS_COOKIE_NAME,
        access_token,
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        **common,
    )
    response.set_cookie(
        settings.REFRESH_COOKIE_NAME,
        refresh_token,
        max_age=settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
        **common,
    )


def clear_auth_cookies(response: Response) -> None:
    for name in (settings.ACCESS_COOKIE_NAME, settings.REFRESH_COOKIE_NAME):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.COOKIE_SECURE,
            httponly=True,
            samesite=settings.COOKIE_SAMESITE,
        )


# ── Helpers ──────────────────────────────────────────────────────────


def _issue_tokens(user: User, session_id: str) -> dict:
    access_token = create_access_token(
        AccessTokenPayload(
            user_id=str(user.id),
            email=user.email,
            role=user.role.value,
            session_id=session_id,
        )
    )
    refresh_token = create_refresh_token(
        str(user.id), session_id, email=user.email, role=user.role.value,
    )
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "session_id": session_id,
        "user": user,
    }


async def get_user_by_email(email: str, db: AsyncSession) -> User | None:
    result = await db.execute(select(User).where(User.email == email.lower()))
    return result.scalar_one_or_none()


async def get_user_by_id(user_id: uuid.UUID, db: AsyncSession) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def _open_session(
    user: User,
    client: ClientInfo,
    db: AsyncSession,
    geo_resolver: GeoResolver,
    *,
    max_concurrent_sessions: int | None = None,
) -> dict:
    session_id = new_session_id()
    await session_manager.create_session(
        db,
        user.id,
        session_id,
        client,
        geo_resolver=geo_resolver,
        max_concurrent_sessions=max_concurrent_sessions,
    )
    await db.commit()
    return _issue_tokens(user, session_id)


# ── Register / Login ─────────────────────────────────────────────────


async def register(
    body: RegisterRequest,
    client: ClientInfo,
    db: AsyncSession,
    geo_resolver: GeoResolver,
) -> dict:
    if await get_user_by_email(body.email, db) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User with this email already exists",
        )

    user = User(
        email=body.email.lower(),
        password_hash=hash_password(body.password),
        first_name=body.first_name,
        last_name=body.last_name,
    )
    db.add(user)
    await db.flush()
    logger.info("Registered user %s", user.id)
    return await _open_session(user, client, db, geo_resolver)


async def authenticate_user(
    email: str,
    password: str,
    client: ClientInfo,
    db: AsyncSession,
    geo_resolver: GeoResolver,
) -> dict:
    """Validate credentials and open a new session."""
    user = await get_user_by_email(email, db)
    if user is None or not verify_password(password, user.password_hash):
        security_logger.info("Failed login for %s from %s", email, client.ip_address)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account is deactivated",
        )

    tokens = await _open_session(user, client, db, geo_resolver)
    logger.info("User %s logged in (session %s)", user.id, tokens["session_id"])
    return tokens


# ── Refresh ──────────────────────────────────────────────────────────


async def refresh_tokens(
    refresh_token_raw: str | None,
    client: ClientInfo,
    db: AsyncSession,
    geo_resolver: GeoResolver,
) -> dict:
    """
    Rotate a refresh token.

    The old session is retired with a compare-and-set; only the request
    that wins it gets a new session.  Every loser (including replay of an
    already rotated token) receives 401.
    """
    if not refresh_token_raw:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token is required",
        )

    payload = await token_service.verify_refresh_token(refresh_token_raw, db)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid refresh token",
        )

    user = await get_user_by_id(uuid.UUID(str(payload["user_id"])), db)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account is deactivated",
        )

    # Plain values: the rollback below expires every loaded instance.
    user_id, jti = user.id, payload["jti"]
    old_session = await session_service.get_session_by_refresh_id(jti, db)
    cap = old_session.max_concurrent_sessions if old_session is not None else None

    if not await session_manager.rotate_session(db, jti, user_id):
        await db.rollback()
        security_logger.warning(
            "Refresh token %s for user %s lost rotation (replay or concurrent refresh)",
            jti, user_id,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid refresh token",
        )
    await db.commit()

    return await _open_session(user, client, db, geo_resolver, max_concurrent_sessions=cap)


# ── Logout ───────────────────────────────────────────────────────────


async def logout(refresh_token_raw: str | None, db: AsyncSession) -> bool:
    """Invalidate the session behind a refresh token, if any."""
    if not refresh_token_raw:
        return False
    payload = decode_refresh_token(refresh_token_raw)
    if payload is None:
        return False
    invalidated = await token_service.invalidate_token(payload["jti"], db)
    await db.commit()
    if invalidated:
        logger.info("Session %s logged out", payload["jti"])
    return invalidated
