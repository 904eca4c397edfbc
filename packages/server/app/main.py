"""
SprintForge API Server

Entry point for the FastAPI application.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.api.v1 import router as api_router
from app.core.config import Settings, get_settings
from app.core.database import Backend
from app.core.errors import register_exception_handlers
from app.core.events import ChangeFeed
from app.core.log import configure_logging
from app.core.middleware import SecurityHeadersMiddleware
from app.core.realtime import RealtimeProvider
from app.core.redis import close_redis, get_redis

log = structlog.get_logger()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="SprintForge",
        description="Developer productivity suite: PR radar, standups, retros and arcade.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # Middleware (order matters — outermost first)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization"],
    )

    register_exception_handlers(app)

    app.include_router(api_router, prefix="/api")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check(request: Request):
        """Readiness check: the store answers and, if enabled, the change feed is connected."""
        checks: dict[str, str] = {}
        backend: Backend | None = getattr(request.app.state, "backend", None)
        if backend is not None:
            try:
                async with backend.engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                checks["database"] = "ok"
            except (SQLAlchemyError, OSError) as exc:
                log.warning("ready.database_failed", error=str(exc))
                checks["database"] = "unavailable"

        provider: RealtimeProvider | None = getattr(request.app.state, "realtime", None)
        if provider is not None:
            checks["realtime"] = provider.connection_status.value

        ready = checks.get("database", "ok") == "ok"
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"status": "ready" if ready else "unavailable", "checks": checks},
        )

    @app.on_event("startup")
    async def on_startup():
        configure_logging(settings.log_level, settings.log_format)
        app.state.backend = Backend(settings.backend_config())

        feed = ChangeFeed(redis_factory=get_redis)
        feed.on_status_change(
            lambda status: log.info("changefeed.status", status=status.value)
        )
        app.state.change_feed = feed
        app.state.realtime = RealtimeProvider(feed)
        if settings.realtime_enabled:
            await feed.start()

        log.info("sprintforge.starting", realtime=settings.realtime_enabled)

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("sprintforge.shutting_down")
        realtime: RealtimeProvider | None = getattr(app.state, "realtime", None)
        if realtime is not None:
            realtime.unsubscribe_all()
        feed: ChangeFeed | None = getattr(app.state, "change_feed", None)
        if feed is not None:
            await feed.stop()
        await close_redis()
        backend: Backend | None = getattr(app.state, "backend", None)
        if backend is not None:
            await backend.dispose()

    return app


app = create_app()
