"""
Request gate — explicit ordered list of interceptors.

Each interceptor receives the shared `GateContext` and returns either
`CONTINUE` or a rejection carrying an HTTP status and a stable
machine-readable code.  `RequestPipeline.dispatch` runs them in order and
stops at the first rejection.  Any exception escaping an interceptor is
logged and turned into `500 SESSION_ERROR`; the gate never lets a request
through after an unexpected failure.
"""

import enum
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import AccessTokenPayload
from app.models.base import utcnow
from app.models.session import UserSession
from app.services.session_manager import SuspiciousActivityCheck

logger = logging.getLogger(__name__)


class GateCode(str, enum.Enum):
    NO_TOKEN = "NO_TOKEN"
    INVALID_TOKEN = "INVALID_TOKEN"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_TIMEOUT = "SESSION_TIMEOUT"
    DEVICE_MISMATCH = "DEVICE_MISMATCH"
    SESSION_ERROR = "SESSION_ERROR"


@dataclass(frozen=True)
class GateResult:
    proceed: bool
    status_code: int = 200
    code: GateCode | None = None
    message: str | None = None


CONTINUE = GateResult(proceed=True)


def reject(status_code: int, code: GateCode, message: str) -> GateResult:
    return GateResult(proceed=False, status_code=status_code, code=code, message=message)


@dataclass
class GateContext:
    """Mutable per-request state shared by the interceptors."""

    request: Request
    db: AsyncSession
    now: datetime = field(default_factory=utcnow)
    token: str | None = None
    claims: dict[str, Any] | None = None
    user: AccessTokenPayload | None = None
    user_uuid: uuid.UUID | None = None
    session: UserSession | None = None
    fingerprint: str | None = None
    client_ip: str | None = None
    suspicious_activity: bool = False
    suspicious_checks: SuspiciousActivityCheck | None = None
    response_headers: dict[str, str] = field(default_factory=dict)

    @property
    def session_id(self) -> str | None:
        return self.session.refresh_token_id if self.session is not None else None


Interceptor = Callable[[GateContext], Awaitable[GateResult]]


class SessionGateError(Exception):
    """Raised by the FastAPI dependency when the gate rejects a request."""

    def __init__(self, result: GateResult, headers: dict[str, str] | None = None):
        super().__init__(result.message)
        self.status_code = result.status_code
        self.code = result.code
        self.message = result.message or "Unauthorized"
        self.headers = dict(headers or {})


class RequestPipeline:
    def __init__(self, interceptors: Iterable[Interceptor]):
        self.interceptors: tuple[Interceptor, ...] = tuple(interceptors)

    async def dispatch(self, ctx: GateContext) -> GateResult:
        for interceptor in self.interceptors:
            try:
                result = await interceptor(ctx)
            except Exception:
                logger.exception(
                    "Session gate failure in %s (path=%s, user=%s, session=%s)",
                    getattr(interceptor, "__name__", interceptor),
                    ctx.request.url.path,
                    ctx.user.user_id if ctx.user else None,
                    ctx.session_id,
                )
                return reject(
                    500,
                    GateCode.SESSION_ERROR,
                    "Internal server error during session validation.",
                )
            if not result.proceed:
                return result
        return CONTINUE
