"""
Value objects shared by the pipeline components.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

RATING_FIELDS = ("overall_rating", "front_crash", "side_crash", "rollover")
DETAIL_FIELDS = ("vehicle_picture", "vehicle_id", "description")


def utcnow() -> datetime:
    return datetime.now(UTC)


class RatingSource(StrEnum):
    """Where a rating row came from."""

    CSV = "csv"
    API = "api"
    MANUAL = "manual"


class SyncStatus(StrEnum):
    """Lifecycle of a sync log entry."""

    PENDING = "pending"
    SYNCING = "syncing"
    SUCCESS = "success"
    NO_DATA = "no_data"
    FAILED = "failed"


class UpsertOutcome(StrEnum):
    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED = "skipped"


class RatingRecord(BaseModel):
    """A safety rating for one (year, make, model)."""

    model_config = ConfigDict(from_attributes=True)

    year: int
    make: str
    model: str
    overall_rating: Optional[float] = Field(None, ge=1.0, le=5.0)
    front_crash: Optional[float] = Field(None, ge=1.0, le=5.0)
    side_crash: Optional[float] = Field(None, ge=1.0, le=5.0)
    rollover: Optional[float] = Field(None, ge=1.0, le=5.0)
    vehicle_picture: Optional[str] = None
    vehicle_id: Optional[int] = None
    description: Optional[str] = None
    raw_data: Optional[dict[str, Any]] = None
    source: RatingSource = RatingSource.API
    cached_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def has_rating(self) -> bool:
        return self.overall_rating is not None

    def payload(self) -> dict[str, Any]:
        """Rating and detail fields, the shape ``DurableStore.upsert`` accepts."""
        data = {name: getattr(self, name) for name in RATING_FIELDS + DETAIL_FIELDS}
        data["raw_data"] = self.raw_data
        return data


class SyncStats(BaseModel):
    """Sync log counts per status."""

    pending: int = 0
    syncing: int = 0
    success: int = 0
    no_data: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.syncing + self.success + self.no_data + self.failed

    @property
    def coverage(self) -> float:
        """Share of entries with a rating, percent rounded to one decimal."""
        if self.total == 0:
            return 0.0
        return round(self.success / self.total * 100, 1)

    @property
    def completion(self) -> float:
        """Share of entries that reached a final state (success or no_data)."""
        if self.total == 0:
            return 0.0
        return round((self.success + self.no_data) / self.total * 100, 1)

    def as_dict(self) -> dict[str, Any]:
        return {
            **self.model_dump(),
            "total": self.total,
            "coverage": self.coverage,
            "completion": self.completion,
        }
