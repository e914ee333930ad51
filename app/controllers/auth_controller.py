"""
Auth controller — register, login, token refresh, logout & current user.

Register, login, refresh and logout are PUBLIC; refresh and logout read
the HTTP-only refresh cookie.  `/me` runs the full session gate.
"""

from fastapi import APIRouter, Cookie, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.core.device import ClientInfo
from app.core.geo import GeoResolver, get_geo_resolver
from app.gate.dependencies import require_session
from app.gate.pipeline import GateContext
from app.schemas import (
    CurrentUserOut,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    TokenResponse,
    UserOut,
)
from app.services import auth_service

router = APIRouter(prefix="/api/auth", tags=["Auth"])


def _token_response(response: Response, tokens: dict) -> TokenResponse:
    auth_service.set_auth_cookies(response, tokens["access_token"], tokens["refresh_token"])
    user = tokens["user"]
    return TokenResponse(
        access_token=tokens["access_token"],
        user=UserOut(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role.value,
            is_active=user.is_active,
            created_at=user.created_at,
        ),
    )


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    geo_resolver: GeoResolver = Depends(get_geo_resolver),
):
    """Create an account and start its first session."""
    tokens = await auth_service.register(body, ClientInfo.from_request(request), db, geo_resolver)
    return _token_response(response, tokens)


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    geo_resolver: GeoResolver = Depends(get_geo_resolver),
):
    """Authenticate with email + password; tokens are set as cookies."""
    tokens = await auth_service.authenticate_user(
        body.email, body.password, ClientInfo.from_request(request), db, geo_resolver,
    )
    return _token_response(response, tokens)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    geo_resolver: GeoResolver = Depends(get_geo_resolver),
    refresh_cookie: str | None = Cookie(default=None, alias=settings.REFRESH_COOKIE_NAME),
):
    """Rotate the refresh cookie into a new session + token pair."""
    tokens = await auth_service.refresh_tokens(
        refresh_cookie, ClientInfo.from_request(request), db, geo_resolver,
    )
    return _token_response(response, tokens)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    response: Response,
    db: AsyncSession = Depends(get_db),
    refresh_cookie: str | None = Cookie(default=None, alias=settings.REFRESH_COOKIE_NAME),
):
    """Invalidate the session behind the refresh cookie and clear cookies."""
    await auth_service.logout(refresh_cookie, db)
    auth_service.clear_auth_cookies(response)
    return MessageResponse(detail="Logged out successfully")


@router.get("/me", response_model=CurrentUserOut)
async def me(ctx: GateContext = Depends(require_session)):
    return CurrentUserOut(
        user_id=ctx.user.user_id,
        email=ctx.user.email,
        role=ctx.user.role,
        session_id=ctx.session_id,
        suspicious_activity=ctx.suspicious_activity,
    )
