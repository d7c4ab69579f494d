"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from image_queue import __version__
from image_queue.api.routes import health_router, jobs_router, worker_router
from image_queue.config import get_settings
from image_queue.db import close_db, init_db
from image_queue.observability.logging import setup_logging
from image_queue.observability.metrics import setup_metrics
from image_queue.observability.tracing import instrument_fastapi, setup_tracing
from image_queue.worker.background import drain_background_tasks
from image_queue.worker.handlers import default_registry, load_handler_modules

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    settings = get_settings()

    # Startup
    setup_logging()
    setup_metrics()
    setup_tracing()
    load_handler_modules(settings.handler_modules)
    await init_db()

    logger.info(
        "Application started",
        extra={"handlers": default_registry.list_handlers()},
    )

    yield

    # Shutdown: let in-flight bursts and drains settle their jobs
    await drain_background_tasks()
    await close_db()
    logger.info("Application shutdown")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Image Queue API",
        description="Image pipeline job queue with leased burst workers",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Include routers
    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(worker_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    app = create_app()

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    run()
