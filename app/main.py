"""
FastAPI application factory.

Assembles the app, registers all routers and the session-gate error
handler, and attaches the collaborators routes depend on to `app.state`:

- `geo_resolver`      IP → coarse location for new sessions
- `session_pipeline`  the ordered request-gate interceptors
- `monitoring`        background cleanup / alerting service

The lifespan creates the schema (when configured) and owns the
monitoring loops.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.controllers.admin_controller import router as admin_router
from app.controllers.auth_controller import router as auth_router
from app.controllers.session_controller import router as session_router
from app.core.config import settings
from app.core.database import async_session_factory, engine
from app.core.geo import StaticGeoResolver
from app.gate.interceptors import build_session_pipeline
from app.gate.pipeline import SessionGateError
from app.models import Base
from app.services.monitoring_service import SessionMonitoringService

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.CREATE_SCHEMA_ON_STARTUP:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ensured.")

    monitoring: SessionMonitoringService = app.state.monitoring
    if settings.MONITORING_ENABLED:
        monitoring.start()

    yield

    await monitoring.stop()
    await engine.dispose()
    logger.info("Database engine disposed.")


async def session_gate_error_handler(request: Request, exc: SessionGateError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.code.value if exc.code else None},
        headers=exc.headers,
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Collaborators ────────────────────────────────────────────────
    app.state.geo_resolver = StaticGeoResolver()
    app.state.session_pipeline = build_session_pipeline()
    app.state.monitoring = SessionMonitoringService(async_session_factory)

    app.add_exception_handler(SessionGateError, session_gate_error_handler)

    # ── Register routers ─────────────────────────────────────────────
    app.include_router(auth_router)
    app.include_router(session_router)
    app.include_router(admin_router)

    # ── Health check ─────────────────────────────────────────────────
    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
