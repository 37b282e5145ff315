"""
Durable Store service.

Authoritative storage for rating rows, sync log entries, pipeline state
and job leases. Every operation opens its own session through
``session_scope``, so callers never share a transaction and a failed
operation leaves no half-written rows behind.

Merge precedence on upsert:
- An incoming row without an overall rating never replaces a row that
  has one, unless the incoming source is ``manual``.
- A ratingless CSV row never touches a row that came from the API.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from safety_ratings.core.exceptions import PostgresException
from safety_ratings.core.logging import get_logger, log_event
from safety_ratings.db.postgres.models import CatalogVehicle, VehicleSafetyRating, VehicleSyncLog
from safety_ratings.db.postgres.repositories import (
    CatalogRepository,
    LeaseRepository,
    RatingRepository,
    SyncLogRepository,
    SyncStateRepository,
)
from safety_ratings.db.postgres.session import session_scope
from safety_ratings.services.records import (
    DETAIL_FIELDS,
    RATING_FIELDS,
    RatingRecord,
    RatingSource,
    SyncStats,
    SyncStatus,
    UpsertOutcome,
    utcnow,
)


def _is_integrity_error(exc: PostgresException) -> bool:
    return isinstance(exc.original_error, IntegrityError)


class DurableStore:
    """Session-per-operation facade over the repositories."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.session_factory = session_factory
        self.logger = logger or get_logger(__name__)

    def _scope(self):
        return session_scope(self.session_factory)

    # =========================================================================
    # Ratings
    # =========================================================================

    async def get(self, year: int, make: str, model: str) -> RatingRecord | None:
        """Rating row that has not expired yet."""
        async with self._scope() as db:
            row = await RatingRepository(db).get_by_vehicle(year, make, model, valid_at=utcnow())
            return RatingRecord.model_validate(row) if row else None

    async def get_stale(self, year: int, make: str, model: str) -> RatingRecord | None:
        """Rating row regardless of expiry."""
        async with self._scope() as db:
            row = await RatingRepository(db).get_by_vehicle(year, make, model)
            return RatingRecord.model_validate(row) if row else None

    async def upsert(
        self,
        year: int,
        make: str,
        model: str,
        fields: dict[str, Any],
        source: RatingSource | str,
        ttl_hours: int | None = None,
    ) -> UpsertOutcome:
        """
        Insert or update the rating row for a vehicle.

        Args:
            fields: Rating and detail fields; missing rating fields become NULL.
            source: csv, api or manual.
            ttl_hours: Hours until the row expires; None or <= 0 is permanent.

        Returns:
            Whether the row was inserted, updated or left untouched.
        """
        source = RatingSource(source)
        try:
            return await self._upsert_once(year, make, model, fields, source, ttl_hours)
        except PostgresException as exc:
            if not _is_integrity_error(exc):
                raise
            # Another writer inserted the same vehicle first; apply ours as an update.
            log_event(
                self.logger,
                logging.INFO,
                "rating_upsert_race",
                f"Concurrent insert for {year} {make} {model}, retrying as update",
                year=year,
                make=make,
                model=model,
            )
            return await self._upsert_once(year, make, model, fields, source, ttl_hours)

    async def _upsert_once(
        self,
        year: int,
        make: str,
        model: str,
        fields: dict[str, Any],
        source: RatingSource,
        ttl_hours: int | None,
    ) -> UpsertOutcome:
        now = utcnow()
        incoming_overall = fields.get("overall_rating")

        values: dict[str, Any] = {name: fields.get(name) for name in RATING_FIELDS}
        for name in DETAIL_FIELDS:
            if fields.get(name) is not None:
                values[name] = fields[name]
        values["raw_data"] = fields.get("raw_data") or {
            key: value for key, value in fields.items() if key != "raw_data"
        }
        values["source"] = source.value
        values["cached_at"] = now
        values["expires_at"] = now + timedelta(hours=ttl_hours) if ttl_hours and ttl_hours > 0 else None

        async with self._scope() as db:
            repo = RatingRepository(db)
            existing = await repo.get_by_vehicle(year, make, model)

            if existing is None:
                await repo.create({"year": year, "make": make, "model": model, **values})
                return UpsertOutcome.INSERTED

            if self._keeps_existing(existing, source, incoming_overall):
                log_event(
                    self.logger,
                    logging.DEBUG,
                    "rating_upsert_skipped",
                    f"Keeping {existing.source} rating for {year} {make} {model}",
                    year=year,
                    make=make,
                    model=model,
                    existing_source=existing.source,
                    incoming_source=source.value,
                )
                return UpsertOutcome.SKIPPED

            await repo.update_fields(existing, values)
            return UpsertOutcome.UPDATED

    @staticmethod
    def _keeps_existing(
        existing: VehicleSafetyRating,
        source: RatingSource,
        incoming_overall: float | None,
    ) -> bool:
        if incoming_overall is not None or source == RatingSource.MANUAL:
            return False
        if existing.source == RatingSource.API and source == RatingSource.CSV:
            return True
        return existing.overall_rating is not None

    async def delete_rating(self, year: int, make: str, model: str) -> bool:
        async with self._scope() as db:
            row = await RatingRepository(db).get_by_vehicle(year, make, model)
            if row is None:
                return False
            await db.delete(row)
            return True

    async def truncate_all(self) -> None:
        """Delete every rating, sync log, state and lease row."""
        async with self._scope() as db:
            ratings = await RatingRepository(db).delete_all()
            entries = await SyncLogRepository(db).delete_all()
            await SyncStateRepository(db).delete_all()
            await LeaseRepository(db).delete_all()
        log_event(
            self.logger,
            logging.WARNING,
            "store_truncated",
            "All rating and sync data deleted",
            ratings_deleted=ratings,
            sync_entries_deleted=entries,
        )

    async def cleanup_expired(self) -> int:
        """Delete rows whose expiry is set and already past."""
        async with self._scope() as db:
            deleted = await RatingRepository(db).delete_expired(utcnow())
        log_event(
            self.logger,
            logging.INFO,
            "expired_ratings_cleaned",
            f"Deleted {deleted} expired rating rows",
            deleted=deleted,
        )
        return deleted

    async def cache_stats(self) -> dict[str, Any]:
        async with self._scope() as db:
            counts = await RatingRepository(db).validity_counts(utcnow())
        total = counts["total"]
        return {
            "total_entries": total,
            "valid_entries": counts["valid"],
            "expired_entries": counts["expired"],
            "rated_entries": counts["rated"],
            "cache_hit_rate": round(counts["valid"] / total * 100, 1) if total else 0.0,
        }

    async def import_stats(self) -> dict[str, int]:
        """Row counts for CSV-sourced ratings."""
        async with self._scope() as db:
            return await RatingRepository(db).source_counts(RatingSource.CSV.value, utcnow())

    async def counts_by_year_and_source(self) -> list[dict[str, Any]]:
        async with self._scope() as db:
            rows = await RatingRepository(db).counts_by_year_and_source()
        return [{"year": year, "source": source, "count": count} for year, source, count in rows]

    async def top_safety_picks(self, limit: int = 6, min_rating: float = 4.5) -> list[RatingRecord]:
        """Highest rated vehicles; relaxes to 4.0 stars when nothing meets ``min_rating``."""
        async with self._scope() as db:
            repo = RatingRepository(db)
            rows = await repo.top_rated(min_rating, limit)
            if not rows and min_rating > 4.0:
                rows = await repo.top_rated(4.0, limit)
            return [RatingRecord.model_validate(row) for row in rows]

    async def list_ratings(
        self,
        year: int | None = None,
        make: str | None = None,
        model: str | None = None,
        min_rating: float | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[RatingRecord]:
        async with self._scope() as db:
            rows = await RatingRepository(db).list_filtered(year, make, model, min_rating, limit, offset)
            return [RatingRecord.model_validate(row) for row in rows]

    async def lookup_by_model_prefix(self, year: int, make: str, model_prefix: str) -> list[RatingRecord]:
        async with self._scope() as db:
            rows = await RatingRepository(db).find_by_model_prefix(year, make, model_prefix)
            return [RatingRecord.model_validate(row) for row in rows]

    async def missing_rating_vehicles(
        self,
        limit: int,
        exclude_ids: list[int] | None = None,
        year: int | None = None,
    ) -> list[tuple[int, RatingRecord]]:
        """(row id, record) pairs lacking an overall rating or a picture."""
        async with self._scope() as db:
            rows = await RatingRepository(db).missing_ratings(limit, exclude_ids, year)
            return [(row.id, RatingRecord.model_validate(row)) for row in rows]

    async def count_missing_ratings(self, year: int | None = None) -> int:
        async with self._scope() as db:
            return await RatingRepository(db).count_missing_ratings(year)

    # =========================================================================
    # Sync log
    # =========================================================================

    async def aggregate_stats(self) -> SyncStats:
        async with self._scope() as db:
            counts = await SyncLogRepository(db).counts_by_status()
        return SyncStats(**{status.value: counts.get(status.value, 0) for status in SyncStatus})

    async def get_sync_entry(self, year: int, make: str, model: str) -> VehicleSyncLog | None:
        async with self._scope() as db:
            return await SyncLogRepository(db).get_by_vehicle(year, make, model)

    async def get_sync_entry_by_id(self, entry_id: int) -> VehicleSyncLog | None:
        async with self._scope() as db:
            return await SyncLogRepository(db).get(entry_id)

    async def create_pending_entry(
        self,
        year: int,
        make: str,
        model: str,
        catalog_model: str | None = None,
    ) -> bool:
        """
        Create a pending entry unless one already exists.

        Returns:
            True when a new entry was written.
        """
        try:
            async with self._scope() as db:
                repo = SyncLogRepository(db)
                if await repo.get_by_vehicle(year, make, model) is not None:
                    return False
                await repo.create(
                    {
                        "year": year,
                        "make": make,
                        "model": model,
                        "catalog_model": catalog_model,
                        "status": SyncStatus.PENDING.value,
                        "attempt_count": 0,
                    }
                )
                return True
        except PostgresException as exc:
            if _is_integrity_error(exc):
                return False
            raise

    async def due_sync_entries(self, limit: int) -> list[VehicleSyncLog]:
        async with self._scope() as db:
            return await SyncLogRepository(db).select_due(utcnow(), limit)

    async def claim_sync_entry(self, entry_id: int, expected_status: str) -> bool:
        async with self._scope() as db:
            return await SyncLogRepository(db).claim(entry_id, expected_status, utcnow())

    async def update_sync_entry(self, entry_id: int, **values: Any) -> None:
        if "error_message" in values and values["error_message"]:
            values["error_message"] = str(values["error_message"])[:255]
        async with self._scope() as db:
            await SyncLogRepository(db).set_values(entry_id, values)

    async def release_stale_claims(self, older_than: timedelta) -> int:
        async with self._scope() as db:
            return await SyncLogRepository(db).release_stale_claims(utcnow() - older_than)

    async def reset_failures(self) -> int:
        async with self._scope() as db:
            return await SyncLogRepository(db).reset_failures()

    async def reset_all_sync_entries(self) -> int:
        async with self._scope() as db:
            return await SyncLogRepository(db).reset_all()

    async def delete_sync_log(self) -> int:
        async with self._scope() as db:
            return await SyncLogRepository(db).delete_all()

    async def last_sync_attempt(self) -> datetime | None:
        async with self._scope() as db:
            return await SyncLogRepository(db).last_attempt()

    # =========================================================================
    # Pipeline state
    # =========================================================================

    async def get_state(self, key: str, default: Any = None) -> Any:
        async with self._scope() as db:
            value = await SyncStateRepository(db).get_value(key)
        return default if value is None else value

    async def set_state(self, key: str, value: Any) -> None:
        async with self._scope() as db:
            await SyncStateRepository(db).set_value(key, value)

    async def delete_state(self, key: str) -> bool:
        async with self._scope() as db:
            return await SyncStateRepository(db).delete_key(key)

    # =========================================================================
    # Leases
    # =========================================================================

    async def acquire_lease(self, name: str, owner: str, ttl: timedelta) -> bool:
        """
        Take the named lease if it is free or expired.

        Returns:
            True when ``owner`` now holds the lease.
        """
        now = utcnow()
        try:
            async with self._scope() as db:
                repo = LeaseRepository(db)
                if await repo.take_over_expired(name, owner, now, ttl):
                    return True
                if await repo.get(name) is not None:
                    return False
                await repo.insert(name, owner, now, ttl)
                return True
        except PostgresException as exc:
            if _is_integrity_error(exc):
                return False
            raise

    async def release_lease(self, name: str, owner: str) -> bool:
        async with self._scope() as db:
            return await LeaseRepository(db).release(name, owner)

    # =========================================================================
    # Catalog
    # =========================================================================

    async def catalog_vehicles(self) -> list[CatalogVehicle]:
        async with self._scope() as db:
            return await CatalogRepository(db).all_vehicles()

    async def add_catalog_vehicle(
        self,
        year: int,
        make: str,
        model: str,
        vehicle_type: str | None = None,
    ) -> CatalogVehicle:
        async with self._scope() as db:
            return await CatalogRepository(db).create(
                {"year": year, "make": make, "model": model, "vehicle_type": vehicle_type}
            )
