"""
Safety rating endpoints.

Provides endpoints to:
- Resolve the rating for one vehicle through every tier
- Look up stored ratings by model prefix
- List and filter stored ratings, top safety picks
- Enumerate provider makes and models
"""

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query

from safety_ratings.api.deps import get_context
from safety_ratings.api.v1.schemas.rating import (
    NamesResponse,
    PaginatedResponse,
    RatingListResponse,
    RatingResponse,
    ResolvedRatingResponse,
)
from safety_ratings.context import AppContext
from safety_ratings.core.exceptions import RatingNotFoundException, RatingUnavailableException
from safety_ratings.core.logging import get_logger
from safety_ratings.services.resolver import ResolutionStatus

router = APIRouter()
logger = get_logger(__name__)

YEAR_QUERY = Query(..., ge=1900, le=2100, description="Model year")


@router.get(
    "",
    response_model=PaginatedResponse[RatingResponse],
    summary="List stored ratings",
)
async def list_ratings(
    year: Optional[int] = Query(None, ge=1900, le=2100, description="Model year"),
    make: Optional[str] = Query(None, min_length=1, description="Vehicle make"),
    model: Optional[str] = Query(None, min_length=1, description="Vehicle model"),
    min_rating: Optional[float] = Query(None, ge=1, le=5, description="Minimum overall stars"),
    limit: int = Query(20, ge=1, le=100, description="Maximum results to return"),
    offset: int = Query(0, ge=0, description="Number of results to skip"),
    ctx: AppContext = Depends(get_context),
) -> PaginatedResponse[RatingResponse]:
    records = await ctx.store.list_ratings(year, make, model, min_rating, limit, offset)
    items = [RatingResponse.model_validate(record) for record in records]
    return PaginatedResponse[RatingResponse](
        items=items,
        total=len(items),
        limit=limit,
        offset=offset,
        has_more=len(items) == limit,
    )


@router.get(
    "/lookup",
    response_model=RatingListResponse,
    summary="Look up ratings by model prefix",
    description="""
**Stored ratings whose model starts with the given text.**

`model=Civic` matches "Civic", "Civic 4DR" and "Civic HB". Returns zero
or more records; no live lookup is made.
    """,
)
async def lookup_ratings(
    year: int = YEAR_QUERY,
    make: str = Query(..., min_length=1, description="Vehicle make"),
    model: str = Query(..., min_length=1, description="Model name or prefix"),
    ctx: AppContext = Depends(get_context),
) -> RatingListResponse:
    records = await ctx.store.lookup_by_model_prefix(year, make, model)
    return RatingListResponse(
        items=[RatingResponse.model_validate(record) for record in records],
        count=len(records),
    )


@router.get(
    "/top-picks",
    response_model=RatingListResponse,
    summary="Top safety picks",
)
async def top_safety_picks(
    limit: int = Query(6, ge=1, le=50),
    min_rating: float = Query(4.5, ge=1, le=5),
    ctx: AppContext = Depends(get_context),
) -> RatingListResponse:
    records = await ctx.store.top_safety_picks(limit=limit, min_rating=min_rating)
    return RatingListResponse(
        items=[RatingResponse.model_validate(record) for record in records],
        count=len(records),
    )


@router.get("/makes", response_model=NamesResponse, summary="Provider makes for a year")
async def provider_makes(
    year: int = YEAR_QUERY,
    ctx: AppContext = Depends(get_context),
) -> NamesResponse:
    return NamesResponse(year=year, items=await ctx.client.get_makes(year))


@router.get("/models", response_model=NamesResponse, summary="Provider models for a year and make")
async def provider_models(
    year: int = YEAR_QUERY,
    make: str = Query(..., min_length=1),
    ctx: AppContext = Depends(get_context),
) -> NamesResponse:
    return NamesResponse(year=year, make=make, items=await ctx.client.get_models(year, make))


@router.get(
    "/{year}/{make}/{model}",
    response_model=ResolvedRatingResponse,
    summary="Resolve a vehicle rating",
    description="""
**Resolve the rating for one vehicle.**

Tries the ephemeral cache, the stored ratings, the live NHTSA API and
finally an expired stored rating. The `tier` field names the source.

- 404: NHTSA confirmed it has no data for the vehicle
- 503: NHTSA could not be reached and nothing is stored
    """,
)
async def resolve_rating(
    year: int = Path(..., ge=1900, le=2100),
    make: str = Path(..., min_length=1),
    model: str = Path(..., min_length=1),
    ctx: AppContext = Depends(get_context),
) -> ResolvedRatingResponse:
    resolution = await ctx.resolver.resolve(year, make, model)

    if resolution.status == ResolutionStatus.NOT_FOUND:
        raise RatingNotFoundException(year, make, model)
    if resolution.status == ResolutionStatus.UNAVAILABLE:
        raise RatingUnavailableException(year, make, model)

    return ResolvedRatingResponse(
        status=resolution.status.value,
        tier=resolution.tier.value,
        rating=RatingResponse.model_validate(resolution.record),
    )
