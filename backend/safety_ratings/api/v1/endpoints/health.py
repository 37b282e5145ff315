"""
Health check endpoints.

Endpoints:
- /health/live - liveness probe (is the app running?)
- /health/ready - readiness probe (can it reach the database and cache?)
- /health/detailed - component status plus pipeline health
"""

import time
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel

from safety_ratings.api.deps import get_context
from safety_ratings.context import AppContext
from safety_ratings.core.config import settings
from safety_ratings.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


class ReadinessResponse(BaseModel):
    """Readiness probe response."""

    status: str
    checks: dict[str, bool]
    checked_at: str


class LivenessResponse(BaseModel):
    """Liveness probe response."""

    status: str
    checked_at: str


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _uptime(request: Request) -> float:
    started = getattr(request.app.state, "started_at", None)
    return round(time.time() - started, 1) if started else 0.0


@router.get("/live", response_model=LivenessResponse)
async def liveness_check() -> LivenessResponse:
    return LivenessResponse(status="alive", checked_at=_now())


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(ctx: AppContext = Depends(get_context)):
    """
    Readiness probe.

    The database is required; the ephemeral cache is reported but a
    cache outage only degrades lookups to misses, so it does not fail
    readiness.
    """
    checks = {
        "database": await ctx.check_database(),
        "cache": await ctx.check_cache(),
    }
    body = ReadinessResponse(
        status="ready" if checks["database"] else "not_ready",
        checks=checks,
        checked_at=_now(),
    )
    if not checks["database"]:
        return ORJSONResponse(status_code=503, content=body.model_dump())
    return body


@router.get("/detailed")
async def detailed_health_check(request: Request, ctx: AppContext = Depends(get_context)) -> dict[str, Any]:
    database_ok = await ctx.check_database()
    cache_ok = await ctx.check_cache()
    pipeline = await ctx.reporter.check_health() if database_ok else None
    runner = getattr(request.app.state, "scheduler", None)

    return {
        "status": "healthy" if database_ok and cache_ok else ("degraded" if database_ok else "unhealthy"),
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT,
        "uptime_seconds": _uptime(request),
        "services": {
            "postgres": {"status": "healthy" if database_ok else "unhealthy"},
            "cache": {"status": "healthy" if cache_ok else "degraded", **ctx.cache.stats()},
            "scheduler": runner.health() if runner is not None else {"running": False},
        },
        "pipeline": pipeline.model_dump() if pipeline is not None else None,
        "checked_at": _now(),
    }
