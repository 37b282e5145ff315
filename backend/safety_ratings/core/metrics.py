"""
Prometheus metrics for the safety ratings pipeline.

Provides Prometheus-format metrics for:
- HTTP request count and latency by endpoint
- Resolver tier hits
- External API calls (SafetyRatings API and CSV dataset)
- CSV import row outcomes
- Batch reconciliation outcomes and sync status gauges

Usage:
    from safety_ratings.core.metrics import track_external_api_call

    with track_external_api_call("nhtsa_ratings", "modelyear") as ctx:
        response = await client.get(url)
        ctx["status_code"] = response.status_code
"""

import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from typing import Any

import psutil
from fastapi import Request, Response
from prometheus_client import Counter, Gauge, Histogram, Info
from starlette.middleware.base import BaseHTTPMiddleware

from safety_ratings.core.config import settings

# =============================================================================
# Application Info
# =============================================================================

APP_INFO = Info(
    "safety_ratings_app",
    "Safety ratings service information",
)
APP_INFO.info(
    {
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT,
        "service": settings.PROJECT_NAME,
    }
)

# =============================================================================
# HTTP Request Metrics
# =============================================================================

REQUEST_COUNT = Counter(
    "safety_ratings_http_requests_total",
    "Total HTTP request count",
    ["method", "endpoint", "status_code"],
)

REQUEST_LATENCY = Histogram(
    "safety_ratings_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# =============================================================================
# Pipeline Metrics
# =============================================================================

RESOLVER_TIER_HITS = Counter(
    "safety_ratings_resolver_tier_total",
    "Rating lookups answered per resolver tier",
    ["tier", "status"],
)

EXTERNAL_API_CALLS = Counter(
    "safety_ratings_external_api_calls_total",
    "Total external API calls",
    ["service", "endpoint", "status_code"],
)

EXTERNAL_API_LATENCY = Histogram(
    "safety_ratings_external_api_duration_seconds",
    "External API call latency in seconds",
    ["service"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

EXTERNAL_API_ERRORS = Counter(
    "safety_ratings_external_api_errors_total",
    "Total external API errors",
    ["service", "error_type"],
)

CSV_ROWS = Counter(
    "safety_ratings_csv_rows_total",
    "CSV rows processed by outcome",
    ["outcome"],
)

BATCH_OUTCOMES = Counter(
    "safety_ratings_batch_outcomes_total",
    "Batch reconciliation results per vehicle",
    ["outcome"],
)

SYNC_STATUS = Gauge(
    "safety_ratings_sync_entries",
    "Sync log entries per status",
    ["status"],
)

SYNC_COVERAGE = Gauge(
    "safety_ratings_sync_coverage_percent",
    "Share of tracked vehicles with a successful rating",
)

# =============================================================================
# System Resource Metrics
# =============================================================================

SYSTEM_CPU_PERCENT = Gauge(
    "safety_ratings_system_cpu_percent",
    "System CPU usage percent",
)

SYSTEM_MEMORY_PERCENT = Gauge(
    "safety_ratings_system_memory_percent",
    "System memory usage percent",
)

PROCESS_MEMORY_BYTES = Gauge(
    "safety_ratings_process_memory_bytes",
    "Process memory usage in bytes",
    ["type"],
)


# =============================================================================
# Metric Collection Functions
# =============================================================================


@contextmanager
def track_external_api_call(
    service: str,
    endpoint: str = "",
) -> Generator[dict[str, Any], None, None]:
    """
    Context manager for tracking external API call metrics.

    Args:
        service: External service name (nhtsa_ratings, nhtsa_csv)
        endpoint: Endpoint family, kept low-cardinality
    """
    start_time = time.time()
    context: dict[str, Any] = {"status_code": 0}

    try:
        yield context
    except Exception as e:
        EXTERNAL_API_ERRORS.labels(
            service=service,
            error_type=type(e).__name__,
        ).inc()
        raise
    finally:
        duration = time.time() - start_time

        EXTERNAL_API_CALLS.labels(
            service=service,
            endpoint=endpoint,
            status_code=str(context.get("status_code", 0)),
        ).inc()

        EXTERNAL_API_LATENCY.labels(service=service).observe(duration)


def update_system_metrics() -> None:
    """Refresh CPU and memory gauges; called before each scrape."""
    try:
        SYSTEM_CPU_PERCENT.set(psutil.cpu_percent())
        SYSTEM_MEMORY_PERCENT.set(psutil.virtual_memory().percent)

        mem_info = psutil.Process().memory_info()
        PROCESS_MEMORY_BYTES.labels(type="rss").set(mem_info.rss)
        PROCESS_MEMORY_BYTES.labels(type="vms").set(mem_info.vms)
    except psutil.Error:
        # Gauges keep their previous values
        return


def track_resolver_tier(tier: str, status: str) -> None:
    """Count a resolved lookup against the tier that answered it."""
    RESOLVER_TIER_HITS.labels(tier=tier, status=status).inc()


def track_csv_row(outcome: str) -> None:
    """Count a CSV row as imported, skipped or error."""
    CSV_ROWS.labels(outcome=outcome).inc()


def track_batch_outcome(outcome: str) -> None:
    """Count a batch item as success, no_data or failed."""
    BATCH_OUTCOMES.labels(outcome=outcome).inc()


def set_sync_metrics(counts: dict[str, int], coverage: float) -> None:
    """Publish the latest sync status counts."""
    for status_name, count in counts.items():
        SYNC_STATUS.labels(status=status_name).set(count)
    SYNC_COVERAGE.set(coverage)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record request counts and latency per route template."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        response = await call_next(request)

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()
        REQUEST_LATENCY.labels(method=request.method, endpoint=endpoint).observe(
            time.time() - start_time
        )
        return response
