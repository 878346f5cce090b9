"""
ReplyWatch FastAPI application entry point.

Flow: outbound sent → detection job → layers + quorum → reply / retry / dead letter
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from replywatch import __version__
from replywatch.config import get_settings
from replywatch.db.session import check_db_connection, engine
from replywatch.providers.registry import build_default_registry

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info("ReplyWatch starting")
    try:
        try:
            check_db_connection()
            logger.info("Database connection verified")
        except Exception as e:
            logger.critical("Database unreachable: %s", e)
            raise
        if not get_settings().internal_job_token:
            logger.warning("INTERNAL_JOB_TOKEN is empty; internal and review endpoints will reject all calls")
        yield
    finally:
        logger.info("ReplyWatch shutting down")
        engine.dispose()
        logger.info("Database connection pool closed")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.state.provider_registry = build_default_registry()

    from replywatch.api.internal import router as internal_router
    from replywatch.api.review import router as review_router

    app.include_router(review_router, prefix="/api/review", tags=["review"])
    # Internal job endpoints (cron, scripts and the send hook; token-authenticated)
    app.include_router(internal_router, tags=["internal"])

    @app.get("/health")
    def health() -> dict:
        """Health check endpoint. Confirms DB connectivity."""
        from sqlalchemy import text

        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return {
                "status": "ok",
                "version": __version__,
                "database": "connected",
            }
        except Exception:
            from fastapi.responses import JSONResponse

            return JSONResponse(
                status_code=503,
                content={
                    "status": "unhealthy",
                    "version": __version__,
                    "database": "disconnected",
                },
            )

    return app


app = create_app()
