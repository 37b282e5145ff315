"""
API v1 router - aggregates all endpoint routers.
"""

from fastapi import APIRouter

from safety_ratings.api.v1.endpoints import admin, health, metrics, ratings

api_router = APIRouter()

api_router.include_router(
    ratings.router,
    prefix="/ratings",
    tags=["Ratings"],
)

api_router.include_router(
    admin.router,
    prefix="/admin",
    tags=["Admin"],
)

api_router.include_router(
    health.router,
    prefix="/health",
    tags=["Health"],
)

api_router.include_router(
    metrics.router,
    prefix="/metrics",
    tags=["Metrics"],
)
