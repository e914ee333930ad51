"""
FastAPI dependencies on top of the session gate.

`require_session` runs the application's `RequestPipeline` for the
current request and either returns the populated `GateContext` or raises
`SessionGateError` (rendered as `{"error", "code"}` by the handler
registered in `app.main`).

Gate side-effects (activity bump, suspicion marks, evictions, timeout
invalidation) are committed before the verdict is acted on, so a 401
such as DEVICE_MISMATCH still leaves its mark in the store.  A 500
rolls everything back.

`require_role` is a *dependency factory* for coarse authorization:

    @router.get("/metrics")
    async def metrics(ctx: GateContext = Depends(require_role("admin"))): ...
"""

import logging

from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.gate.pipeline import GateCode, GateContext, RequestPipeline, SessionGateError, reject

logger = logging.getLogger("gate")


async def require_session(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> GateContext:
    pipeline: RequestPipeline = request.app.state.session_pipeline
    ctx = GateContext(request=request, db=db)
    result = await pipeline.dispatch(ctx)

    try:
        if result.status_code >= 500:
            await db.rollback()
        else:
            await db.commit()
    except Exception:
        logger.exception("Failed to persist session gate state for %s", request.url.path)
        await db.rollback()
        result = reject(500, GateCode.SESSION_ERROR, "Internal server error during session validation.")

    if not result.proceed:
        raise SessionGateError(result, headers=ctx.response_headers)

    for name, value in ctx.response_headers.items():
        response.headers[name] = value
    return ctx


class require_role:
    """
    Dependency factory.

    Can be used as:
        Depends(require_role("admin"))
        Depends(require_role("admin", "auditor"))
    """

    def __init__(self, *roles: str):
        self.roles = set(roles)

    async def __call__(self, ctx: GateContext = Depends(require_session)) -> GateContext:
        if ctx.user.role not in self.roles:
            logger.warning(
                "Role check failed for user %s: required one of %s, has %s",
                ctx.user.user_id,
                sorted(self.roles),
                ctx.user.role,
            )
            # Intentionally vague
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return ctx
