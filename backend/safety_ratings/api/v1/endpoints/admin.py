"""
Operator endpoints.

CSV import control, cache maintenance, sync log management, batch
runs, discovery, backfill and the health/validation reports.
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Path

from safety_ratings.api.deps import get_context
from safety_ratings.api.v1.schemas.rating import (
    BackfillRequest,
    OperationResponse,
    ReimportRequest,
    RunBatchRequest,
)
from safety_ratings.context import AppContext
from safety_ratings.core.exceptions import NotFoundException
from safety_ratings.core.logging import get_logger
from safety_ratings.services.csv_importer import CsvSyncStatus
from safety_ratings.services.health import HealthReport, ValidationReport

router = APIRouter()
logger = get_logger(__name__)


# =============================================================================
# CSV import
# =============================================================================


@router.post("/csv/sync", response_model=OperationResponse, summary="Import the CSV if it changed")
async def sync_csv(ctx: AppContext = Depends(get_context)) -> OperationResponse:
    result = await ctx.importer.sync()
    return OperationResponse(
        success=result.status != CsvSyncStatus.FAILED,
        message=f"CSV sync {result.status.value}",
        data=result.model_dump(mode="json"),
    )


@router.post("/csv/reimport", response_model=OperationResponse, summary="Force a full CSV reimport")
async def reimport_csv(
    request: Optional[ReimportRequest] = Body(None),
    ctx: AppContext = Depends(get_context),
) -> OperationResponse:
    wipe = request.wipe if request is not None else True
    result = await ctx.importer.force_reimport(wipe=wipe)
    return OperationResponse(
        success=result.status != CsvSyncStatus.FAILED,
        message=f"CSV reimport {result.status.value}",
        data=result.model_dump(mode="json"),
    )


@router.get("/csv/status", summary="CSV import status")
async def csv_status(ctx: AppContext = Depends(get_context)) -> dict[str, Any]:
    return {
        "import": await ctx.importer.import_stats(),
        "last_error": await ctx.importer.last_error(),
        "error_history": await ctx.importer.error_history(),
    }


# =============================================================================
# Cache
# =============================================================================


@router.post("/cache/clear", response_model=OperationResponse, summary="Drop every ephemeral entry")
async def clear_cache(ctx: AppContext = Depends(get_context)) -> OperationResponse:
    removed = await ctx.cache.clear_all()
    logger.info(f"Ephemeral cache cleared: {removed} keys")
    return OperationResponse(message=f"Cleared {removed} cached entries", data={"removed": removed})


@router.post("/cache/cleanup", response_model=OperationResponse, summary="Delete expired stored ratings")
async def cleanup_cache(ctx: AppContext = Depends(get_context)) -> OperationResponse:
    result = await ctx.purge_expired()
    return OperationResponse(message=f"Removed {result['removed']} expired ratings", data=result)


@router.delete(
    "/ratings/{year}/{make}/{model}",
    response_model=OperationResponse,
    summary="Delete one stored rating",
)
async def delete_rating(
    year: int = Path(..., ge=1900, le=2100),
    make: str = Path(..., min_length=1),
    model: str = Path(..., min_length=1),
    ctx: AppContext = Depends(get_context),
) -> OperationResponse:
    if not await ctx.store.delete_rating(year, make, model):
        raise NotFoundException(
            message=f"No stored rating for {year} {make} {model}",
            resource_type="rating",
            resource_id=f"{year}/{make}/{model}",
        )
    await ctx.cache.evict_rating(year, make, model)
    return OperationResponse(message=f"Deleted rating for {year} {make} {model}")


# =============================================================================
# Sync log
# =============================================================================


@router.post("/sync/reset-failures", response_model=OperationResponse, summary="Retry failed vehicles")
async def reset_failures(ctx: AppContext = Depends(get_context)) -> OperationResponse:
    count = await ctx.worker.reset_failures()
    return OperationResponse(message=f"Reset {count} failed entries", data={"reset": count})


@router.post("/sync/refetch-all", response_model=OperationResponse, summary="Refetch every vehicle")
async def refetch_all(ctx: AppContext = Depends(get_context)) -> OperationResponse:
    count = await ctx.worker.force_refetch_all()
    return OperationResponse(message=f"Reset {count} entries to pending", data={"reset": count})


@router.post("/sync/run-batch", response_model=OperationResponse, summary="Run one reconciliation batch")
async def run_batch(
    request: Optional[RunBatchRequest] = Body(None),
    ctx: AppContext = Depends(get_context),
) -> OperationResponse:
    batch_size = request.batch_size if request is not None else None
    result = await ctx.worker.run_exclusive(batch_size)
    return OperationResponse(
        message=f"Processed {result.processed} vehicles",
        data=result.model_dump(),
    )


@router.post("/sync/discover", response_model=OperationResponse, summary="Seed the sync log from the catalog")
async def discover(ctx: AppContext = Depends(get_context)) -> OperationResponse:
    result = await ctx.discovery.discover_vehicles()
    return OperationResponse(
        message=f"Created {result.created} entries",
        data={**result.model_dump(), "stats": await ctx.discovery.discovery_stats()},
    )


@router.post("/sync/backfill", response_model=OperationResponse, summary="Fill ratings missing data")
async def backfill(
    request: Optional[BackfillRequest] = Body(None),
    ctx: AppContext = Depends(get_context),
) -> OperationResponse:
    request = request or BackfillRequest()
    result = await ctx.worker.backfill_missing_ratings(
        start_new=request.start_new,
        year=request.year,
        batch_size=request.batch_size,
    )
    return OperationResponse(
        success=result.success,
        message=result.reason or f"Backfill {result.status}",
        data=result.model_dump(exclude={"logs"}),
    )


# =============================================================================
# Reports
# =============================================================================


@router.get("/health", response_model=HealthReport, summary="Sync pipeline health")
async def pipeline_health(ctx: AppContext = Depends(get_context)) -> HealthReport:
    return await ctx.reporter.check_health()


@router.post("/validate", response_model=ValidationReport, summary="Validate sync and alert")
async def validate(ctx: AppContext = Depends(get_context)) -> ValidationReport:
    return await ctx.reporter.validate_sync()


@router.get("/report", response_model=Optional[ValidationReport], summary="Latest validation report")
async def latest_report(ctx: AppContext = Depends(get_context)) -> Optional[ValidationReport]:
    return await ctx.reporter.latest_report()


@router.get("/stats", summary="Store and sync statistics")
async def stats(ctx: AppContext = Depends(get_context)) -> dict[str, Any]:
    return {
        "cache": await ctx.store.cache_stats(),
        "ephemeral": ctx.cache.stats(),
        "fetch": await ctx.worker.fetch_stats(),
        "discovery": await ctx.discovery.discovery_stats(),
        "by_year_and_source": await ctx.store.counts_by_year_and_source(),
        "missing_ratings": await ctx.store.count_missing_ratings(),
    }
