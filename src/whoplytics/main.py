"""Main FastAPI application for Whoplytics."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .api.routes import router as api_router
from .config import get_settings
from .database.connection import db_manager, get_db_context
from .database.migrations import create_tables
from .middleware.request_context import RequestContextMiddleware
from .observability.logging import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings = get_settings()

    configure_logging(
        environment=settings.environment,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    db_manager.initialize()
    await create_tables()

    if not settings.whop_app_id or not settings.whop_client_secret:
        logger.warning("Whop OAuth credentials are not configured; login is disabled")

    logger.info("%s v%s started", settings.app_name, settings.app_version)
    logger.info("Environment: %s", settings.environment)

    yield

    # Shutdown
    logger.info("Shutting down %s...", settings.app_name)
    await db_manager.close()
    logger.info("Database connections closed")


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Whop-embedded analytics dashboard: tenant identity and sessions",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Credentialed CORS cannot use a wildcard origin
    cors_origins = settings.get_cors_origins()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials="*" not in cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)

    app.include_router(api_router, prefix="/api")

    @app.get("/health")
    async def health_check():
        """Liveness probe."""
        return {
            "status": "healthy",
            "service": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/health/ready")
    async def health_ready():
        """Readiness probe: the installation database answers."""
        try:
            async with get_db_context() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error("Readiness check failed: %s", e)
            return JSONResponse(
                status_code=503,
                content={"status": "not_ready", "checks": {"database": "error"}},
            )
        return {"status": "ready", "checks": {"database": "ok"}}

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "whoplytics.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )
