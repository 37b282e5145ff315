"""
Safety Ratings - NHTSA vehicle safety rating service
Main FastAPI Application Entry Point
"""

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import ORJSONResponse

from safety_ratings.api.v1.router import api_router
from safety_ratings.context import AppContext
from safety_ratings.core.config import settings
from safety_ratings.core.error_handlers import setup_exception_handlers
from safety_ratings.core.logging import RequestLoggingMiddleware, get_logger, setup_logging
from safety_ratings.core.metrics import MetricsMiddleware
from safety_ratings.services.scheduler import PeriodicTaskRunner

logger = get_logger(__name__)


def create_application(
    context: Optional[AppContext] = None,
    enable_scheduler: Optional[bool] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        context: Pre-built context (tests); built from settings on startup otherwise
        enable_scheduler: Override ``SCHEDULER_ENABLED``
    """
    run_scheduler = settings.SCHEDULER_ENABLED if enable_scheduler is None else enable_scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        """Application lifespan handler for startup and shutdown events."""
        setup_logging()
        logger.info("Starting safety ratings service")

        owns_context = context is None
        ctx = context or AppContext.build()
        app.state.context = ctx
        app.state.started_at = time.time()

        runner: Optional[PeriodicTaskRunner] = None
        if run_scheduler:
            runner = PeriodicTaskRunner(ctx)
            runner.start()
        app.state.scheduler = runner

        yield

        logger.info("Shutting down safety ratings service")
        if runner is not None:
            runner.stop()
        if owns_context:
            await ctx.close()

    tags_metadata = [
        {
            "name": "Ratings",
            "description": "NHTSA 5-star safety ratings: multi-tier lookup, listings and top picks.",
        },
        {
            "name": "Admin",
            "description": "Operator actions for CSV import, reconciliation batches, discovery and reports.",
        },
        {
            "name": "Health",
            "description": "Liveness, readiness and detailed component health.",
        },
        {
            "name": "Metrics",
            "description": "Prometheus metrics for monitoring.",
        },
    ]

    application = FastAPI(
        title=settings.PROJECT_NAME,
        description="""
# Safety Ratings API

NHTSA vehicle safety ratings kept in step with the bulk Safercar dataset
and the live SafetyRatings API.

## Lookup order

1. Ephemeral cache
2. Stored ratings
3. Live NHTSA API (gap fill or first fetch)
4. Expired stored rating
        """,
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        docs_url=f"{settings.API_V1_PREFIX}/docs",
        redoc_url=f"{settings.API_V1_PREFIX}/redoc",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
        openapi_tags=tags_metadata,
    )

    if context is not None:
        application.state.context = context

    # GZip compression middleware - compress responses > 1KB
    application.add_middleware(GZipMiddleware, minimum_size=1000)

    # Metrics collection middleware
    application.add_middleware(MetricsMiddleware)

    # Request logging middleware
    application.add_middleware(RequestLoggingMiddleware)

    @application.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Add security headers to all responses."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    setup_exception_handlers(application)

    application.include_router(api_router, prefix=settings.API_V1_PREFIX)

    @application.get("/health", tags=["Health"])
    async def health_check():
        """Basic health check endpoint for container orchestration."""
        return {
            "status": "healthy",
            "version": settings.VERSION,
            "service": "safety-ratings",
            "environment": settings.ENVIRONMENT,
        }

    @application.get("/health/live", tags=["Health"])
    async def health_live():
        from safety_ratings.api.v1.endpoints.health import liveness_check

        return await liveness_check()

    @application.get("/health/ready", tags=["Health"])
    async def health_ready(request: Request):
        from safety_ratings.api.v1.endpoints.health import readiness_check

        return await readiness_check(request.app.state.context)

    @application.get("/metrics", tags=["Metrics"])
    async def metrics():
        from safety_ratings.api.v1.endpoints.metrics import get_metrics

        return await get_metrics()

    return application


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "safety_ratings.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
