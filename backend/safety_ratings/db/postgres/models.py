"""
SQLAlchemy models for the relational store.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class VehicleSafetyRating(Base):
    """Authoritative NHTSA 5-star rating for one (year, make, model)."""

    __tablename__ = "nhtsa_vehicle_cache"
    __table_args__ = (
        UniqueConstraint("year", "make", "model", name="uq_nhtsa_vehicle_cache_vehicle"),
        Index("ix_nhtsa_vehicle_cache_expires_at", "expires_at"),
        Index("ix_nhtsa_vehicle_cache_overall_rating", "overall_rating"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    make: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    model: Mapped[str] = mapped_column(String(150), nullable=False)

    # Star ratings, NULL when not rated
    overall_rating: Mapped[float | None] = mapped_column(Float)
    front_crash: Mapped[float | None] = mapped_column(Float)
    side_crash: Mapped[float | None] = mapped_column(Float)
    rollover: Mapped[float | None] = mapped_column(Float)

    vehicle_picture: Mapped[str | None] = mapped_column(String(500))
    vehicle_id: Mapped[int | None] = mapped_column(Integer)
    description: Mapped[str | None] = mapped_column(Text)
    raw_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType)

    source: Mapped[str] = mapped_column(String(20), nullable=False, default="csv")  # csv, api, manual

    cached_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))  # NULL = permanent
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class VehicleSyncLog(Base):
    """Per-vehicle reconciliation progress for the batch worker."""

    __tablename__ = "nhtsa_sync_log"
    __table_args__ = (
        UniqueConstraint("year", "make", "model", name="uq_nhtsa_sync_log_vehicle"),
        Index("ix_nhtsa_sync_log_status_next_attempt", "status", "next_attempt_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    make: Mapped[str] = mapped_column(String(100), nullable=False)
    model: Mapped[str] = mapped_column(String(150), nullable=False)
    catalog_model: Mapped[str | None] = mapped_column(String(150))

    # pending, syncing, success, no_data, failed
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(String(255))

    vehicle_id: Mapped[int | None] = mapped_column(Integer)
    overall_rating: Mapped[float | None] = mapped_column(Float)
    has_data: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SyncStateEntry(Base):
    """Small durable key/value rows: import markers, error history, reports, checkpoints."""

    __tablename__ = "nhtsa_sync_state"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[Any] = mapped_column(JSONType)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class JobLease(Base):
    """Single-flight guard shared by every process running scheduled jobs."""

    __tablename__ = "nhtsa_job_lease"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    owner: Mapped[str] = mapped_column(String(100), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CatalogVehicle(Base):
    """A vehicle listed in the site catalog, input to discovery."""

    __tablename__ = "vehicle_catalog"
    __table_args__ = (
        UniqueConstraint("year", "make", "model", name="uq_vehicle_catalog_vehicle"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    make: Mapped[str] = mapped_column(String(100), nullable=False)
    model: Mapped[str] = mapped_column(String(150), nullable=False)
    vehicle_type: Mapped[str | None] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
