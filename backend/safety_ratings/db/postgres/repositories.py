"""
Repository classes for the relational store.

Each repository wraps one session; callers own the transaction through
``session_scope``. Services never build queries themselves.
"""

from datetime import datetime, timedelta
from typing import Any, Generic, TypeVar

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from safety_ratings.db.postgres.models import (
    Base,
    CatalogVehicle,
    JobLease,
    SyncStateEntry,
    VehicleSafetyRating,
    VehicleSyncLog,
)

# Generic type for models
ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Base repository with common operations.

    Attributes:
        model: The SQLAlchemy model class.
        db: The async database session.
    """

    def __init__(self, model: type[ModelType], db: AsyncSession) -> None:
        self.model = model
        self.db = db

    async def create(self, obj_in: dict[str, Any]) -> ModelType:
        """Create a new record."""
        db_obj = self.model(**obj_in)
        self.db.add(db_obj)
        await self.db.flush()
        await self.db.refresh(db_obj)
        return db_obj

    async def count(self) -> int:
        result = await self.db.execute(select(func.count()).select_from(self.model))
        return int(result.scalar_one())

    async def delete_all(self) -> int:
        """Delete every row of the table."""
        result = await self.db.execute(delete(self.model))
        return result.rowcount or 0


def _vehicle_clause(model: type[VehicleSafetyRating] | type[VehicleSyncLog], year: int, make: str, name: str):
    return and_(model.year == year, model.make == make, model.model == name)


class RatingRepository(BaseRepository[VehicleSafetyRating]):
    """Rating rows keyed by (year, make, model)."""

    def __init__(self, db: AsyncSession) -> None:
        super().__init__(VehicleSafetyRating, db)

    async def get_by_vehicle(
        self,
        year: int,
        make: str,
        model: str,
        valid_at: datetime | None = None,
    ) -> VehicleSafetyRating | None:
        """
        Get the rating row for a vehicle.

        Args:
            valid_at: When given, rows that expired before this instant are ignored.
        """
        query = select(VehicleSafetyRating).where(
            _vehicle_clause(VehicleSafetyRating, year, make, model)
        )
        if valid_at is not None:
            query = query.where(
                or_(
                    VehicleSafetyRating.expires_at.is_(None),
                    VehicleSafetyRating.expires_at > valid_at,
                )
            )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def update_fields(self, row: VehicleSafetyRating, values: dict[str, Any]) -> VehicleSafetyRating:
        for key, value in values.items():
            setattr(row, key, value)
        await self.db.flush()
        return row

    async def list_filtered(
        self,
        year: int | None = None,
        make: str | None = None,
        model: str | None = None,
        min_rating: float | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[VehicleSafetyRating]:
        query = select(VehicleSafetyRating)
        if year is not None:
            query = query.where(VehicleSafetyRating.year == year)
        if make:
            query = query.where(func.lower(VehicleSafetyRating.make) == make.lower())
        if model:
            query = query.where(func.lower(VehicleSafetyRating.model) == model.lower())
        if min_rating is not None:
            query = query.where(VehicleSafetyRating.overall_rating >= min_rating)
        query = query.order_by(
            VehicleSafetyRating.year.desc(),
            VehicleSafetyRating.make,
            VehicleSafetyRating.model,
        ).offset(offset).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def find_by_model_prefix(self, year: int, make: str, model_prefix: str) -> list[VehicleSafetyRating]:
        """Rows whose model starts with ``model_prefix`` (case-insensitive)."""
        query = (
            select(VehicleSafetyRating)
            .where(
                VehicleSafetyRating.year == year,
                func.lower(VehicleSafetyRating.make) == make.lower(),
                func.lower(VehicleSafetyRating.model).startswith(model_prefix.lower(), autoescape=True),
            )
            .order_by(VehicleSafetyRating.model)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def top_rated(self, min_rating: float, limit: int) -> list[VehicleSafetyRating]:
        query = (
            select(VehicleSafetyRating)
            .where(VehicleSafetyRating.overall_rating >= min_rating)
            .order_by(
                VehicleSafetyRating.overall_rating.desc(),
                VehicleSafetyRating.year.desc(),
                VehicleSafetyRating.make,
                VehicleSafetyRating.model,
            )
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def validity_counts(self, now: datetime) -> dict[str, int]:
        """Total rows, rows still valid at ``now`` and expired rows."""
        expired = and_(
            VehicleSafetyRating.expires_at.is_not(None),
            VehicleSafetyRating.expires_at <= now,
        )
        query = select(
            func.count(VehicleSafetyRating.id),
            func.coalesce(func.sum(case((expired, 1), else_=0)), 0),
            func.coalesce(func.sum(case((VehicleSafetyRating.overall_rating.is_not(None), 1), else_=0)), 0),
        )
        total, expired_count, rated = (await self.db.execute(query)).one()
        return {
            "total": int(total),
            "valid": int(total) - int(expired_count),
            "expired": int(expired_count),
            "rated": int(rated),
        }

    async def source_counts(self, source: str, now: datetime) -> dict[str, int]:
        expired = and_(
            VehicleSafetyRating.expires_at.is_not(None),
            VehicleSafetyRating.expires_at <= now,
        )
        query = select(
            func.count(VehicleSafetyRating.id),
            func.coalesce(func.sum(case((expired, 1), else_=0)), 0),
        ).where(VehicleSafetyRating.source == source)
        total, expired_count = (await self.db.execute(query)).one()
        return {
            "total": int(total),
            "valid": int(total) - int(expired_count),
            "expired": int(expired_count),
        }

    async def counts_by_year_and_source(self) -> list[tuple[int, str, int]]:
        query = (
            select(
                VehicleSafetyRating.year,
                VehicleSafetyRating.source,
                func.count(VehicleSafetyRating.id),
            )
            .group_by(VehicleSafetyRating.year, VehicleSafetyRating.source)
            .order_by(VehicleSafetyRating.year.desc(), VehicleSafetyRating.source)
        )
        result = await self.db.execute(query)
        return [(int(year), str(source), int(count)) for year, source, count in result.all()]

    async def missing_ratings(
        self,
        limit: int,
        exclude_ids: list[int] | None = None,
        year: int | None = None,
    ) -> list[VehicleSafetyRating]:
        """Rows lacking an overall rating or a picture, newest model years first."""
        query = select(VehicleSafetyRating).where(
            or_(
                VehicleSafetyRating.overall_rating.is_(None),
                VehicleSafetyRating.vehicle_picture.is_(None),
            )
        )
        if exclude_ids:
            query = query.where(VehicleSafetyRating.id.not_in(exclude_ids))
        if year is not None:
            query = query.where(VehicleSafetyRating.year == year)
        query = query.order_by(VehicleSafetyRating.year.desc(), VehicleSafetyRating.id).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count_missing_ratings(self, year: int | None = None) -> int:
        query = select(func.count(VehicleSafetyRating.id)).where(
            or_(
                VehicleSafetyRating.overall_rating.is_(None),
                VehicleSafetyRating.vehicle_picture.is_(None),
            )
        )
        if year is not None:
            query = query.where(VehicleSafetyRating.year == year)
        return int((await self.db.execute(query)).scalar_one())

    async def delete_expired(self, now: datetime) -> int:
        result = await self.db.execute(
            delete(VehicleSafetyRating).where(
                VehicleSafetyRating.expires_at.is_not(None),
                VehicleSafetyRating.expires_at < now,
            )
        )
        return result.rowcount or 0


class SyncLogRepository(BaseRepository[VehicleSyncLog]):
    """Reconciliation progress rows."""

    def __init__(self, db: AsyncSession) -> None:
        super().__init__(VehicleSyncLog, db)

    async def get_by_vehicle(self, year: int, make: str, model: str) -> VehicleSyncLog | None:
        result = await self.db.execute(
            select(VehicleSyncLog).where(_vehicle_clause(VehicleSyncLog, year, make, model))
        )
        return result.scalar_one_or_none()

    async def get(self, entry_id: int) -> VehicleSyncLog | None:
        return await self.db.get(VehicleSyncLog, entry_id)

    async def counts_by_status(self) -> dict[str, int]:
        result = await self.db.execute(
            select(VehicleSyncLog.status, func.count(VehicleSyncLog.id)).group_by(VehicleSyncLog.status)
        )
        return {str(status): int(count) for status, count in result.all()}

    async def select_due(self, now: datetime, limit: int) -> list[VehicleSyncLog]:
        """Pending entries plus failed entries whose retry time has come."""
        query = (
            select(VehicleSyncLog)
            .where(
                or_(
                    VehicleSyncLog.status == "pending",
                    and_(
                        VehicleSyncLog.status == "failed",
                        VehicleSyncLog.next_attempt_at.is_not(None),
                        VehicleSyncLog.next_attempt_at <= now,
                    ),
                )
            )
            .order_by(
                VehicleSyncLog.attempt_count.asc(),
                VehicleSyncLog.year.desc(),
                VehicleSyncLog.make.asc(),
                VehicleSyncLog.model.asc(),
            )
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def claim(self, entry_id: int, expected_status: str, now: datetime) -> bool:
        """
        Move an entry to ``syncing`` if it still has ``expected_status``.

        Returns:
            True when this caller won the claim.
        """
        result = await self.db.execute(
            update(VehicleSyncLog)
            .where(VehicleSyncLog.id == entry_id, VehicleSyncLog.status == expected_status)
            .values(status="syncing", last_attempt_at=now)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) == 1

    async def set_values(self, entry_id: int, values: dict[str, Any]) -> None:
        await self.db.execute(
            update(VehicleSyncLog)
            .where(VehicleSyncLog.id == entry_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def release_stale_claims(self, cutoff: datetime) -> int:
        """Return entries stuck in ``syncing`` since before ``cutoff`` to ``pending``."""
        result = await self.db.execute(
            update(VehicleSyncLog)
            .where(
                VehicleSyncLog.status == "syncing",
                or_(VehicleSyncLog.last_attempt_at.is_(None), VehicleSyncLog.last_attempt_at < cutoff),
            )
            .values(status="pending")
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def reset_failures(self) -> int:
        result = await self.db.execute(
            update(VehicleSyncLog)
            .where(VehicleSyncLog.status == "failed")
            .values(status="pending", attempt_count=0, next_attempt_at=None, error_message=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def reset_all(self) -> int:
        result = await self.db.execute(
            update(VehicleSyncLog)
            .values(status="pending", attempt_count=0, next_attempt_at=None, error_message=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def last_attempt(self) -> datetime | None:
        result = await self.db.execute(select(func.max(VehicleSyncLog.last_attempt_at)))
        return result.scalar_one_or_none()


class SyncStateRepository(BaseRepository[SyncStateEntry]):
    """Key/value state rows."""

    def __init__(self, db: AsyncSession) -> None:
        super().__init__(SyncStateEntry, db)

    async def get_value(self, key: str) -> Any:
        row = await self.db.get(SyncStateEntry, key)
        return row.value if row is not None else None

    async def set_value(self, key: str, value: Any) -> None:
        row = await self.db.get(SyncStateEntry, key)
        if row is None:
            self.db.add(SyncStateEntry(key=key, value=value))
        else:
            row.value = value
        await self.db.flush()

    async def delete_key(self, key: str) -> bool:
        result = await self.db.execute(delete(SyncStateEntry).where(SyncStateEntry.key == key))
        return (result.rowcount or 0) > 0


class LeaseRepository(BaseRepository[JobLease]):
    """Named leases; an expired lease may be taken over by anyone."""

    def __init__(self, db: AsyncSession) -> None:
        super().__init__(JobLease, db)

    async def take_over_expired(self, name: str, owner: str, now: datetime, ttl: timedelta) -> bool:
        result = await self.db.execute(
            update(JobLease)
            .where(JobLease.name == name, JobLease.expires_at <= now)
            .values(owner=owner, acquired_at=now, expires_at=now + ttl)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) == 1

    async def get(self, name: str) -> JobLease | None:
        return await self.db.get(JobLease, name)

    async def insert(self, name: str, owner: str, now: datetime, ttl: timedelta) -> None:
        self.db.add(JobLease(name=name, owner=owner, acquired_at=now, expires_at=now + ttl))
        await self.db.flush()

    async def release(self, name: str, owner: str) -> bool:
        result = await self.db.execute(
            delete(JobLease).where(JobLease.name == name, JobLease.owner == owner)
        )
        return (result.rowcount or 0) > 0


class CatalogRepository(BaseRepository[CatalogVehicle]):
    """Site catalog vehicles consumed by discovery."""

    def __init__(self, db: AsyncSession) -> None:
        super().__init__(CatalogVehicle, db)

    async def all_vehicles(self) -> list[CatalogVehicle]:
        result = await self.db.execute(
            select(CatalogVehicle).order_by(
                CatalogVehicle.year.desc(), CatalogVehicle.make, CatalogVehicle.model
            )
        )
        return list(result.scalars().all())
