"""
Prometheus metrics endpoint.
"""

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from safety_ratings.core.metrics import update_system_metrics

router = APIRouter()


@router.get("", tags=["Metrics"])
async def get_metrics():
    """
    Prometheus metrics in text format.

    Includes request counts and latency, resolver tier hits, external
    API calls, CSV row and batch outcomes, sync gauges and process
    resource usage.
    """
    update_system_metrics()

    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
