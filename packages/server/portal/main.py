"""
Campus Portal Chat Server

Entry point for the FastAPI application.
"""

from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from portal.api.v1 import router as api_v1_router
from portal.api.v1.channels import ws_router
from portal.core.chat import BroadcastRouter, ConnectionRegistry, SessionFactory
from portal.core.config import Settings, get_settings
from portal.core.database import async_session_factory
from portal.core.errors import register_exception_handlers
from portal.core.logging_config import configure_logging
from portal.core.middleware import SecurityHeadersMiddleware
from portal.services.chat import ensure_default_channels

log = structlog.get_logger()


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[SessionFactory] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    session_factory = session_factory or async_session_factory
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="Campus Portal Chat",
        description="Channel-based realtime chat for the university portal.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    registry = ConnectionRegistry()
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.registry = registry
    app.state.broadcast_router = BroadcastRouter(
        registry,
        session_factory,
        reply_errors=settings.chat_error_replies,
    )

    # Middleware (order matters - outermost first)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["Content-Type", "Authorization"],
    )

    register_exception_handlers(app)

    # API routes
    app.include_router(api_v1_router, prefix="/api/v1")
    app.include_router(ws_router)

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness check: the database answers a trivial query."""
        try:
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            log.warning("readiness.database_unavailable", error=str(exc))
            return JSONResponse(status_code=503, content={"status": "unavailable"})
        return {"status": "ready"}

    @app.on_event("startup")
    async def on_startup():
        log.info("portal.starting", bootstrap_channels=settings.bootstrap_channels)
        if not settings.bootstrap_channels:
            return
        try:
            async with session_factory() as session:
                await ensure_default_channels(session)
        except SQLAlchemyError as exc:
            log.warning("chat.bootstrap_failed", error=str(exc))

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("portal.shutting_down", connections=len(registry))
        await registry.close_all()

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "portal.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )
