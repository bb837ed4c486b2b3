"""
FastAPI application entry point.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from analysis_queue import __version__
from analysis_queue.api.dependencies import queue_error_handler
from analysis_queue.api.routes import health_router, jobs_router, queue_router
from analysis_queue.config import get_settings
from analysis_queue.db import close_db, get_engine, init_db
from analysis_queue.exceptions import QueueError
from analysis_queue.observability.logging import setup_logging
from analysis_queue.observability.metrics import get_metrics, setup_metrics
from analysis_queue.observability.tracing import (
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_tracing,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    setup_logging(service="api")
    setup_metrics()
    setup_tracing()
    await init_db()
    instrument_sqlalchemy(get_engine())

    logger.info("Application started")

    yield

    await close_db()
    logger.info("Application shutdown")


async def record_request_metrics(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Count requests and observe latency, labelled by route template."""
    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    get_metrics().record_api_request(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
        duration_seconds=duration,
    )
    return response


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Analysis Queue API",
        description="Durable lease-based job queue for long-running analysis tasks",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(BaseHTTPMiddleware, dispatch=record_request_metrics)

    app.add_exception_handler(QueueError, queue_error_handler)

    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(queue_router)

    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        "analysis_queue.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    run()
