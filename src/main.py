"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.core.config import get_settings
from src.core.exceptions import setup_exception_handlers
from src.core.logging import setup_logging, setup_request_logging
from src.services.tracker import Tracker

logger = logging.getLogger("action_tracking")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown."""
    settings = get_settings()
    logger.info(
        "Application started",
        extra={"env": settings.app_env, "tracking_enabled": settings.tracking_enabled},
    )
    yield
    logger.info("Application shutting down")
    await app.state.tracker.close()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    The shared tracker is available as ``app.state.tracker``; endpoints
    decorated with ``ActionTracking()`` report to it.
    """
    settings = get_settings()

    setup_logging(settings)

    app = FastAPI(
        title="Action Tracking",
        description="Page view tracking for API endpoints",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.tracker = Tracker(settings=settings)

    setup_request_logging(app)
    setup_exception_handlers(app)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Simple health check endpoint for basic liveness probes."""
        return {"status": "healthy"}

    return app


def run() -> None:
    """Run the application with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "src.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.app_log_level.lower(),
    )


if __name__ == "__main__":
    run()
