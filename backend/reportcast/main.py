"""FastAPI application entry point."""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from starlette.requests import Request

from reportcast.api.v1 import router as api_v1_router
from reportcast.config import settings
from reportcast.core.errors import (
    PermissionDenied,
    RateLimitExceeded,
    ReportcastError,
    ScheduleNotFound,
    SecurityViolation,
    ValidationError,
)
from reportcast.core.security.masking import mask_url
from reportcast.core.tracing import setup_telemetry
from reportcast.db.session import async_session_factory, engine
from reportcast.engine import SchedulingEngine

logger = logging.getLogger("reportcast.main")


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan context manager."""
    # Startup
    configure_logging()
    setup_telemetry()
    logger.info(
        "Starting %s %s (%s) against %s",
        settings.app_name,
        settings.app_version,
        settings.environment,
        mask_url(str(settings.database_url)),
    )
    scheduling_engine = SchedulingEngine(settings, async_session_factory)
    app.state.engine = scheduling_engine
    await scheduling_engine.start()
    yield
    # Shutdown
    await scheduling_engine.stop()
    await engine.dispose()


def _status_for(exc: ReportcastError) -> int:
    if isinstance(exc, RateLimitExceeded):
        return 429
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, (PermissionDenied, SecurityViolation)):
        return 403
    if isinstance(exc, ScheduleNotFound):
        return 404
    return 500


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Scheduled report execution engine",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    @app.exception_handler(ReportcastError)
    async def reportcast_exception_handler(request: Request, exc: ReportcastError) -> Response:
        status_code = _status_for(exc)
        if status_code == 500:
            logger.exception("Unhandled engine error: %s", exc)
            return JSONResponse(status_code=500, content={"detail": "Internal server error"})
        content: dict[str, Any] = {"detail": str(exc)}
        field = getattr(exc, "field", None)
        if field:
            content["field"] = field
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> Response:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> Response:
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    # Health check endpoint
    @app.get("/health", tags=["Health"])
    async def health_check(request: Request) -> dict[str, Any]:
        """Health check with database connectivity and queue status."""
        result: dict[str, Any] = {
            "status": "healthy",
            "version": settings.app_version,
            "services": {},
        }

        # Check Database
        try:
            start = time.monotonic()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            db_latency_ms = round((time.monotonic() - start) * 1000, 2)
            result["services"]["database"] = {
                "status": "healthy",
                "latency_ms": db_latency_ms,
            }
        except Exception as exc:
            result["services"]["database"] = {
                "status": "unhealthy",
                "error": str(exc),
            }
            result["status"] = "degraded"

        # Check job queue
        scheduling_engine = getattr(request.app.state, "engine", None)
        if scheduling_engine is None or not scheduling_engine.is_running:
            result["services"]["queue"] = {"status": "stopped"}
            result["status"] = "degraded"
        else:
            try:
                stats = await scheduling_engine.queue.stats()
                result["services"]["queue"] = {
                    "status": "healthy",
                    "backend": settings.queue_backend,
                    "scanner": scheduling_engine.scanner.state.value,
                    **stats,
                }
            except Exception as exc:
                result["services"]["queue"] = {
                    "status": "unhealthy",
                    "error": str(exc),
                }
                result["status"] = "degraded"

        return result

    # Include API routers
    app.include_router(api_v1_router, prefix="/api/v1")

    return app


app = create_application()
