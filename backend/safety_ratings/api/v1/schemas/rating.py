"""
Safety rating schemas.
"""

from datetime import datetime
from typing import Any, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from safety_ratings.services.records import RatingSource

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    """Generic paginated response schema."""

    items: List[T] = Field(..., description="List of items")
    total: int = Field(..., description="Number of items in this page")
    limit: int = Field(..., description="Maximum items per page")
    offset: int = Field(..., description="Number of items skipped")
    has_more: bool = Field(..., description="Whether more items may be available")


class RatingResponse(BaseModel):
    """A vehicle safety rating."""

    model_config = ConfigDict(from_attributes=True)

    year: int = Field(..., description="Model year")
    make: str = Field(..., description="Vehicle make")
    model: str = Field(..., description="Vehicle model")
    overall_rating: Optional[float] = Field(None, description="Overall stars (1-5)")
    front_crash: Optional[float] = Field(None, description="Frontal crash stars")
    side_crash: Optional[float] = Field(None, description="Side crash stars")
    rollover: Optional[float] = Field(None, description="Rollover stars")
    vehicle_picture: Optional[str] = Field(None, description="Picture URL")
    vehicle_id: Optional[int] = Field(None, description="NHTSA vehicle id")
    description: Optional[str] = Field(None, description="NHTSA vehicle description")
    source: RatingSource = Field(..., description="csv, api or manual")
    cached_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class ResolvedRatingResponse(BaseModel):
    """Result of a multi-tier lookup."""

    status: str = Field(..., description="found, not_found or unavailable")
    tier: str = Field(..., description="Tier that answered the lookup")
    rating: Optional[RatingResponse] = None


class RatingListResponse(BaseModel):
    items: List[RatingResponse]
    count: int


class NamesResponse(BaseModel):
    """Provider enumeration result."""

    year: int
    make: Optional[str] = None
    items: List[str]


class OperationResponse(BaseModel):
    """Outcome of an operator action."""

    success: bool = True
    message: str
    data: dict[str, Any] = Field(default_factory=dict)


class BackfillRequest(BaseModel):
    start_new: bool = Field(True, description="Discard the previous session and start over")
    year: Optional[int] = Field(None, ge=1900, le=2100, description="Restrict to one model year")
    batch_size: Optional[int] = Field(None, ge=1, le=500)


class ReimportRequest(BaseModel):
    wipe: bool = Field(True, description="Truncate stored ratings before reimporting")


class RunBatchRequest(BaseModel):
    batch_size: Optional[int] = Field(None, ge=1, le=500)
