"""
Main FastAPI application entry point.
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Tuple

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from .api import admin, auth, content, realtime, users
from .core.config import Settings, get_settings
from .core.database import build_engine, build_session_factory, check_connection, close_db, init_db
from .core.errors import register_exception_handlers
from .core.logging_setup import configure_logging
from .middleware.logging import LoggingMiddleware
from .middleware.rate_limit import RateLimitMiddleware
from .middleware.security import SecurityHeadersMiddleware
from .services.achievements import AchievementService
from .services.database_storage import DatabaseStorage
from .services.notifications import NotificationManager
from .services.seed import seed_database
from .services.storage import MemoryStorage, Storage

logger = logging.getLogger(__name__)


def build_storage(settings: Settings) -> Tuple[Storage, Optional[Engine]]:
    """Pick the storage backend; the database one gets its schema and starter data."""
    if not settings.USE_DATABASE:
        logger.info("Using in-memory storage")
        return MemoryStorage(refresh_token_days=settings.REFRESH_TOKEN_EXPIRE_DAYS), None

    engine = build_engine(settings)
    init_db(engine)
    session_factory = build_session_factory(engine)
    seed_database(session_factory)
    logger.info("Using database storage")
    return DatabaseStorage(session_factory, refresh_token_days=settings.REFRESH_TOKEN_EXPIRE_DAYS), engine


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info(f"Starting {settings.APP_NAME} ({settings.ENVIRONMENT})...")
        storage, engine = build_storage(settings)
        app.state.storage = storage
        app.state.engine = engine
        app.state.achievements = AchievementService(storage)
        app.state.notifier = NotificationManager()
        app.state.started_at = time.monotonic()

        yield

        # Shutdown
        logger.info(f"Shutting down {settings.APP_NAME}...")
        if engine is not None:
            close_db(engine)
        logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.APP_NAME,
        description=settings.APP_DESCRIPTION,
        version=settings.APP_VERSION,
        docs_url=settings.DOCS_URL if not settings.is_production() else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = None
    app.state.started_at = time.monotonic()

    # Last added runs first, so CORS wraps everything including 429s
    if settings.RATE_LIMIT_ENABLED:
        app.add_middleware(RateLimitMiddleware, settings=settings)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app, settings)

    @app.get("/health", tags=["Health"])
    def health_check(request: Request):
        """Basic health check endpoint."""
        return {
            "success": True,
            "message": "Server is healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - request.app.state.started_at, 3),
        }

    @app.get("/health/ready", tags=["Health"])
    def readiness_check(request: Request):
        """Readiness check endpoint."""
        engine = request.app.state.engine
        checks = {"storage": getattr(request.app.state, "storage", None) is not None}
        if engine is not None:
            checks["database"] = check_connection(engine)
        all_healthy = all(checks.values())
        return JSONResponse(
            status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "success": all_healthy,
                "status": "ready" if all_healthy else "not_ready",
                "checks": checks,
            },
        )

    app.include_router(auth.router, prefix="/api/auth", tags=["Auth"])
    app.include_router(users.router, prefix="/api/users", tags=["Users"])
    app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])
    app.include_router(content.router, prefix="/api", tags=["Content"])
    app.include_router(realtime.router)

    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "cyberdefense.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower(),
        ws_ping_interval=settings.WS_PING_INTERVAL,
        ws_ping_timeout=settings.WS_PING_TIMEOUT,
    )


if __name__ == "__main__":
    run()
