"""
Password hashing & JWT helpers.

- Passwords are hashed with bcrypt directly (passlib is unmaintained
  and broken with bcrypt>=4.1).
- Access tokens are short-lived and carry user_id, email, role and the
  session_id they are bound to.
- Refresh tokens carry `jti`, which IS the session's `refresh_token_id`,
  so a refresh token and its session record are linkable without a
  lookup table.
- Both token kinds are bound to a fixed issuer/audience and signed with
  separate secrets.

Decoding never raises: any signature, expiry, issuer, audience or type
problem yields `None`, and callers branch on that.  This module never
touches the session store; store-aware verification lives in
`app.services.token_service`.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from jose import JWTError, jwt

from app.core.config import settings

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

# ── Password hashing ────────────────────────────────────────────────


def hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# ── JWT ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AccessTokenPayload:
    """Normalized claims for an access token.

    Callers holding a persisted `User` extract these fields themselves;
    token issuance never inspects model objects.
    """

    user_id: str
    email: str
    role: str
    session_id: str | None = None

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "AccessTokenPayload":
        return cls(
            user_id=str(claims.get("user_id") or claims["sub"]),
            email=claims.get("email", ""),
            role=claims.get("role", ""),
            session_id=claims.get("session_id"),
        )


def new_session_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _encode(claims: dict[str, Any], secret: str, expires_delta: timedelta) -> str:
    issued_at = _now()
    to_encode = claims.copy()
    to_encode.update(
        {
            "iss": settings.JWT_ISSUER,
            "aud": settings.JWT_AUDIENCE,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + expires_delta).timestamp()),
        }
    )
    return jwt.encode(to_encode, secret, algorithm=settings.JWT_ALGORITHM)


def _decode(token: str, secret: str, expected_type: str) -> dict[str, Any] | None:
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
        )
    except JWTError:
        return None
    if not isinstance(payload, dict) or payload.get("typ") != expected_type:
        return None
    if not payload.get("sub"):
        return None
    return payload


def create_access_token(payload: AccessTokenPayload, expires_delta: timedelta | None = None) -> str:
    claims: dict[str, Any] = {
        "sub": payload.user_id,
        "user_id": payload.user_id,
        "email": payload.email,
        "role": payload.role,
        "typ": ACCESS_TOKEN_TYPE,
    }
    if payload.session_id:
        claims["session_id"] = payload.session_id
    return _encode(
        claims,
        settings.SECRET_KEY,
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    )


def create_refresh_token(
    user_id: str,
    session_id: str | None = None,
    *,
    email: str | None = None,
    role: str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a long-lived refresh token whose `jti` is the session id."""
    if session_id is None:
        # No session record carries this jti; the token will not verify
        # against the store until one is created with the same id.
        session_id = new_session_id()
        logger.warning("Refresh token for user %s issued without a session id", user_id)

    claims: dict[str, Any] = {
        "sub": user_id,
        "user_id": user_id,
        "jti": session_id,
        "typ": REFRESH_TOKEN_TYPE,
    }
    if email is not None:
        claims["email"] = email
    if role is not None:
        claims["role"] = role
    return _encode(
        claims,
        settings.REFRESH_SECRET_KEY,
        expires_delta or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
    )


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Signature + issuer/audience/expiry check only.  Returns claims or None."""
    return _decode(token, settings.SECRET_KEY, ACCESS_TOKEN_TYPE)


def decode_refresh_token(token: str) -> dict[str, Any] | None:
    payload = _decode(token, settings.REFRESH_SECRET_KEY, REFRESH_TOKEN_TYPE)
    if payload is None or not payload.get("jti"):
        return None
    return payload
