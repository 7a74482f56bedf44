"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from jobcoord import __version__
from jobcoord.api.request_metrics import create_request_metrics_middleware
from jobcoord.api.routes import (
    executions_router,
    health_router,
    jobs_router,
    leadership_router,
    work_items_router,
)
from jobcoord.config import get_settings
from jobcoord.observability.logging import setup_logging
from jobcoord.observability.metrics import setup_metrics
from jobcoord.observability.tracing import instrument_fastapi, setup_tracing
from jobcoord.runtime import CoordinationRuntime

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Starts the replica's coordination runtime (leader election, stall
    monitor, reconciler) and stops it on shutdown, finishing local
    executions before leadership is released.
    """
    setup_logging()
    setup_metrics()
    setup_tracing()

    runtime: CoordinationRuntime = app.state.runtime
    await runtime.start()
    logger.info("Application started")

    yield

    await runtime.stop()
    logger.info("Application shutdown")


def create_app(runtime: CoordinationRuntime | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        runtime: Coordination runtime to serve. Built from settings if omitted.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Job Coordinator API",
        description="Leader-elected job triggering and skip-locked work item processing",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.runtime = runtime or CoordinationRuntime()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(
        BaseHTTPMiddleware,
        dispatch=create_request_metrics_middleware(),
    )

    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(executions_router)
    app.include_router(work_items_router)
    app.include_router(leadership_router)

    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        create_app(),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
