"""
Batch reconciliation worker.

Walks the sync log in small batches, asks the live API for each due
vehicle and records the outcome:

- rating returned  -> ``success``
- nothing to rate  -> ``no_data``
- call failed      -> ``failed`` with a linear retry delay, terminal after
  ``MAX_SYNC_ATTEMPTS``

Runs are single-flight across processes through the ``batch_reconcile``
lease, and every entry is claimed with a conditional update before work.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Optional

from pydantic import BaseModel, Field

from safety_ratings.core.config import settings
from safety_ratings.core.exceptions import BatchInProgressException, DatabaseException, SafetyRatingsException
from safety_ratings.core.logging import get_logger, log_event
from safety_ratings.core.metrics import set_sync_metrics, track_batch_outcome
from safety_ratings.db.redis_cache import RatingCache
from safety_ratings.services.nhtsa_client import SafetyRatingsClient
from safety_ratings.services.records import RatingSource, SyncStatus, utcnow
from safety_ratings.services.resolver import RatingResolver
from safety_ratings.services.store import DurableStore

BATCH_LEASE_NAME = "batch_reconcile"


class BatchResult(BaseModel):
    processed: int = 0
    success: int = 0
    no_data: int = 0
    failed: int = 0
    skipped: bool = False


class BackfillResult(BaseModel):
    success: bool = True
    status: str = "in_progress"
    processed: int = 0
    updated: int = 0
    errors: int = 0
    total_processed: int = 0
    total_updated: int = 0
    reason: Optional[str] = None
    logs: list[str] = Field(default_factory=list)


def next_attempt_delay(attempt: int, base_seconds: int | None = None, max_attempts: int | None = None) -> Optional[timedelta]:
    """
    Delay before retrying after ``attempt`` failures.

    Returns:
        ``base * attempt`` seconds, or None once the attempt budget is spent.
    """
    base = base_seconds if base_seconds is not None else settings.RETRY_BACKOFF_BASE_SECONDS
    limit = max_attempts if max_attempts is not None else settings.MAX_SYNC_ATTEMPTS
    if attempt >= limit:
        return None
    return timedelta(seconds=base * attempt)


class BatchWorker:
    """Drains due sync log entries against the live API."""

    STATE_LAST_FETCH = "batch_last_fetch"
    STATE_BACKFILL_SESSION = "backfill_session"
    STATE_BACKFILL_LOG = "backfill_log"

    def __init__(
        self,
        store: DurableStore,
        resolver: RatingResolver,
        client: SafetyRatingsClient,
        cache: RatingCache,
        api_delay_ms: int | None = None,
        lease_seconds: int | None = None,
        owner: str | None = None,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.resolver = resolver
        self.client = client
        self.cache = cache
        self.api_delay = (settings.BATCH_API_DELAY_MS if api_delay_ms is None else api_delay_ms) / 1000
        self.lease_ttl = timedelta(seconds=lease_seconds or settings.BATCH_LEASE_SECONDS)
        self.owner = owner or f"worker-{uuid.uuid4().hex[:12]}"
        self.logger = logger or get_logger(__name__)

    # =========================================================================
    # Batch run
    # =========================================================================

    async def fetch_pending_batch(self, batch_size: int | None = None) -> BatchResult:
        """
        Process up to ``batch_size`` due entries.

        Returns a result with ``skipped=True`` when another run holds the lease.
        """
        batch_size = batch_size or settings.BATCH_SIZE
        if not await self.store.acquire_lease(BATCH_LEASE_NAME, self.owner, self.lease_ttl):
            log_event(
                self.logger,
                logging.INFO,
                "batch_skipped",
                "Another batch run holds the lease, skipping",
                lease=BATCH_LEASE_NAME,
            )
            return BatchResult(skipped=True)

        try:
            return await self._run_batch(batch_size)
        finally:
            await self.store.release_lease(BATCH_LEASE_NAME, self.owner)

    async def run_exclusive(self, batch_size: int | None = None) -> BatchResult:
        """Like ``fetch_pending_batch`` but raises when the lease is taken."""
        result = await self.fetch_pending_batch(batch_size)
        if result.skipped:
            raise BatchInProgressException(BATCH_LEASE_NAME)
        return result

    async def _run_batch(self, batch_size: int) -> BatchResult:
        released = await self.store.release_stale_claims(self.lease_ttl)
        if released:
            log_event(
                self.logger,
                logging.WARNING,
                "stale_claims_released",
                f"Returned {released} stuck entries to pending",
                count=released,
            )

        entries = await self.store.due_sync_entries(batch_size)
        result = BatchResult()
        log_event(
            self.logger,
            logging.INFO,
            "batch_started",
            f"Processing batch of {len(entries)} vehicles",
            batch_size=len(entries),
        )

        first_call = True
        for entry in entries:
            if not await self.store.claim_sync_entry(entry.id, entry.status):
                continue

            if not first_call and self.api_delay > 0:
                await asyncio.sleep(self.api_delay)
            first_call = False

            outcome = await self._process_entry(entry.id, entry.year, entry.make, entry.model, entry.attempt_count)
            result.processed += 1
            if outcome == SyncStatus.SUCCESS:
                result.success += 1
            elif outcome == SyncStatus.NO_DATA:
                result.no_data += 1
            else:
                result.failed += 1
            track_batch_outcome(outcome.value)

        await self.store.set_state(self.STATE_LAST_FETCH, utcnow().isoformat())
        stats = await self.store.aggregate_stats()
        set_sync_metrics(stats.model_dump(), stats.coverage)

        log_event(
            self.logger,
            logging.INFO,
            "batch_complete",
            f"Batch complete - Success: {result.success}, No data: {result.no_data}, Failed: {result.failed}",
            processed=result.processed,
            success=result.success,
            no_data=result.no_data,
            failed=result.failed,
        )
        return result

    async def _process_entry(self, entry_id: int, year: int, make: str, model: str, attempts: int) -> SyncStatus:
        try:
            record = await self.resolver.refresh_from_live(year, make, model)
        except DatabaseException:
            raise
        except SafetyRatingsException as e:
            return await self._record_failure(entry_id, year, make, model, attempts, e.message)

        now = utcnow()
        if record is not None and record.has_rating:
            await self.store.update_sync_entry(
                entry_id,
                status=SyncStatus.SUCCESS.value,
                overall_rating=record.overall_rating,
                has_data=True,
                vehicle_id=record.vehicle_id,
                attempt_count=0,
                next_attempt_at=None,
                error_message=None,
                last_attempt_at=now,
            )
            return SyncStatus.SUCCESS

        await self.store.update_sync_entry(
            entry_id,
            status=SyncStatus.NO_DATA.value,
            has_data=False,
            vehicle_id=record.vehicle_id if record is not None else None,
            attempt_count=0,
            next_attempt_at=None,
            error_message=None,
            last_attempt_at=now,
        )
        return SyncStatus.NO_DATA

    async def _record_failure(
        self,
        entry_id: int,
        year: int,
        make: str,
        model: str,
        attempts: int,
        error: str,
    ) -> SyncStatus:
        attempt = attempts + 1
        now = utcnow()
        delay = next_attempt_delay(attempt)
        await self.store.update_sync_entry(
            entry_id,
            status=SyncStatus.FAILED.value,
            attempt_count=attempt,
            next_attempt_at=now + delay if delay is not None else None,
            error_message=error,
            last_attempt_at=now,
        )
        log_event(
            self.logger,
            logging.WARNING,
            "batch_fetch_failed",
            f"Fetch failed for {year} {make} {model} (attempt {attempt}): {error}",
            year=year,
            make=make,
            model=model,
            attempt=attempt,
            terminal=delay is None,
        )
        return SyncStatus.FAILED

    # =========================================================================
    # Operator actions
    # =========================================================================

    async def reset_failures(self) -> int:
        """Put every failed entry back to pending with a fresh attempt budget."""
        count = await self.store.reset_failures()
        log_event(self.logger, logging.INFO, "sync_failures_reset", f"Reset {count} failed entries", count=count)
        return count

    async def force_refetch_all(self) -> int:
        """
        Put every entry back to pending and drop cached ratings.

        Durable rating rows are kept; the next batches overwrite them
        through the usual precedence rules.
        """
        count = await self.store.reset_all_sync_entries()
        await self.cache.clear_ratings()
        log_event(
            self.logger,
            logging.WARNING,
            "sync_refetch_all",
            f"Reset {count} entries for a full refetch",
            count=count,
        )
        return count

    async def fetch_stats(self) -> dict[str, Any]:
        stats = await self.store.aggregate_stats()
        return {
            "total": stats.total,
            "pending": stats.pending,
            "syncing": stats.syncing,
            "success": stats.success,
            "no_data": stats.no_data,
            "failed": stats.failed,
            "completion_percent": stats.completion,
            "last_fetch": await self.store.get_state(self.STATE_LAST_FETCH),
        }

    async def backfill_missing_ratings(
        self,
        start_new: bool = True,
        year: int | None = None,
        batch_size: int | None = None,
    ) -> BackfillResult:
        """
        Fill rating rows that lack an overall rating or a picture.

        Progress is kept in a durable session so repeated calls walk the
        whole table once; the session is dropped when nothing is left.

        Args:
            start_new: discard any previous session and start over
            year: restrict the sweep to one model year
        """
        batch_size = batch_size or settings.BACKFILL_BATCH_SIZE
        session = await self.store.get_state(self.STATE_BACKFILL_SESSION)
        backfill_log = await self.store.get_state(self.STATE_BACKFILL_LOG, {}) if not start_new else {}

        if start_new or session is None:
            if not start_new:
                return BackfillResult(
                    success=False,
                    status="error",
                    reason="No active backfill session. Start a new backfill first.",
                )
            session = {
                "batch_id": uuid.uuid4().hex,
                "started_at": utcnow().isoformat(),
                "year": year,
                "processed_ids": [],
            }
        year = session.get("year")
        processed_ids: list[int] = list(session.get("processed_ids", []))

        result = BackfillResult(
            total_processed=int(backfill_log.get("total_processed", 0)),
            total_updated=int(backfill_log.get("total_updated", 0)),
            logs=list(backfill_log.get("logs", [])),
        )

        rows = await self.store.missing_rating_vehicles(batch_size, exclude_ids=processed_ids, year=year)
        for index, (row_id, record) in enumerate(rows):
            processed_ids.append(row_id)
            result.processed += 1
            label = f"{record.year} {record.make} {record.model}"
            progress = f"[{index + 1}/{len(rows)}]"

            if index and self.api_delay > 0:
                await asyncio.sleep(self.api_delay)

            try:
                live = await self.client.fetch_rating(record.year, record.make, record.model)
            except DatabaseException:
                raise
            except SafetyRatingsException as e:
                live = None
                result.logs.append(f"{progress} fetch failed for {label}: {e.message}")

            if live is None:
                result.errors += 1
                result.logs.append(f"{progress} no data from API for {label}")
                continue

            if not live.has_rating:
                result.logs.append(f"{progress} API has no rating for {label}, stored row kept")
                continue

            await self.store.upsert(
                record.year,
                record.make,
                record.model,
                live.payload(),
                source=RatingSource.API,
                ttl_hours=None,
            )
            await self.cache.evict_rating(record.year, record.make, record.model)
            result.updated += 1
            result.logs.append(f"{progress} stored {label} - rating: {live.overall_rating}")

        remaining = await self.store.missing_rating_vehicles(1, exclude_ids=processed_ids, year=year)
        result.status = "in_progress" if remaining else "complete"
        result.total_processed += result.processed
        result.total_updated += result.updated

        if result.status == "complete":
            await self.store.delete_state(self.STATE_BACKFILL_SESSION)
        else:
            session["processed_ids"] = processed_ids
            await self.store.set_state(self.STATE_BACKFILL_SESSION, session)
        await self.store.set_state(
            self.STATE_BACKFILL_LOG,
            {
                "status": result.status,
                "total_processed": result.total_processed,
                "total_updated": result.total_updated,
                "logs": result.logs[-200:],
                "timestamp": utcnow().isoformat(),
            },
        )

        log_event(
            self.logger,
            logging.INFO,
            "backfill_batch_complete",
            f"Backfill batch {result.status}: processed {result.processed}, updated {result.updated}",
            status=result.status,
            processed=result.processed,
            updated=result.updated,
            errors=result.errors,
        )
        return result
