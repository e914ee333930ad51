"""
Token service — refresh-token verification against the session store.

A refresh token is only as good as the session it names: after the
signature check, the `jti` must resolve to an unexpired, non-invalidated
session owned by the token's subject.

Lookup retries absorb the short window in which a session written by one
request is not yet visible to a near-simultaneous refresh from another.
A lookup gets `REFRESH_LOOKUP_RETRIES` extra attempts spaced
`REFRESH_LOOKUP_RETRY_DELAY_MS` apart, so a `jti` with no backing session
costs exactly `retries + 1` store queries.
"""

import asyncio
import logging
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.security import decode_refresh_token
from app.services import session_service

logger = logging.getLogger(__name__)


def _parse_user_id(raw: Any) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(raw))
    except (TypeError, ValueError):
        return None


async def verify_refresh_token(token: str, db: AsyncSession) -> dict[str, Any] | None:
    """Return the refresh-token claims (including `jti`) or None."""
    payload = decode_refresh_token(token)
    if payload is None:
        return None

    user_id = _parse_user_id(payload.get("user_id") or payload.get("sub"))
    if user_id is None:
        return None

    jti = payload["jti"]
    retries = max(settings.REFRESH_LOOKUP_RETRIES, 0)
    delay = max(settings.REFRESH_LOOKUP_RETRY_DELAY_MS, 0) / 1000

    session = await session_service.find_session_for_refresh(jti, user_id, db)
    attempt = 0
    while session is None and attempt < retries:
        attempt += 1
        await asyncio.sleep(delay)
        session = await session_service.find_session_for_refresh(jti, user_id, db)

    if session is None:
        logger.info("Refresh token %s has no backing session after %d lookups", jti, attempt + 1)
        return None
    if session.invalidated_at is not None:
        logger.info("Refresh token %s presented for an invalidated session", jti)
        return None
    return payload


async def invalidate_token(jti: str, db: AsyncSession) -> bool:
    """Soft-invalidate the session bound to a refresh token `jti`."""
    return await session_service.invalidate_by_refresh_id(jti, db) > 0
