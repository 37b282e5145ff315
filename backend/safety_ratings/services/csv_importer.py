"""
Bulk CSV importer for the NHTSA "Safercar" dataset.

The dataset is large and changes rarely, so ``sync`` checks the remote
Last-Modified header first and only downloads when the file is newer
than the last recorded import. Rows are imported one by one: a bad row
is counted and skipped, and a checkpoint after every upsert lets an
interrupted import resume where it stopped.
"""

import csv
import hashlib
import logging
import re
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Optional

import httpx
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from safety_ratings.core.config import settings
from safety_ratings.core.exceptions import (
    CsvImportException,
    DatabaseException,
    PostgresConnectionException,
    SafetyRatingsException,
)
from safety_ratings.core.logging import get_logger, log_event, log_external_api_call
from safety_ratings.core.metrics import track_csv_row, track_external_api_call
from safety_ratings.db.redis_cache import CachePrefix, CacheTTL, RatingCache
from safety_ratings.services.records import RatingSource, UpsertOutcome, utcnow
from safety_ratings.services.store import DurableStore

_STAR_PATTERN = re.compile(r"^[1-5](\.\d)?$")

REQUIRED_COLUMNS = ("year", "make", "model", "overall_rating")


class CsvFailureReason(StrEnum):
    COULD_NOT_CHECK_REMOTE = "could_not_check_remote"
    DOWNLOAD_FAILED = "download_failed"
    FILE_NOT_SAVED = "file_not_saved"
    FILE_NOT_FOUND = "file_not_found"
    CANNOT_OPEN_FILE = "cannot_open_file"
    INVALID_CSV_FORMAT = "invalid_csv_format"
    MISSING_REQUIRED_COLUMNS = "missing_required_columns"
    IMPORT_EXCEPTION = "import_exception"


class CsvSyncStatus(StrEnum):
    CURRENT = "current"
    SUCCESS = "success"
    FAILED = "failed"


class CsvImportResult(BaseModel):
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    resumed_from_row: int = 0


class CsvSyncResult(BaseModel):
    status: CsvSyncStatus
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    reason: Optional[str] = None
    error: Optional[str] = None
    remote_updated: Optional[datetime] = None
    last_import: Optional[datetime] = None


# =============================================================================
# Parsing helpers
# =============================================================================


def map_columns(headers: list[str]) -> dict[str, int]:
    """
    Map header names to field indexes by substring matching.

    Each header is assigned to the first rule it satisfies; when several
    headers satisfy the same rule the later one wins.

    Raises:
        CsvImportException: a required column is missing
    """
    mapping: dict[str, int] = {}
    for index, raw in enumerate(headers):
        header = raw.strip().lower()
        if "model_yr" in header or "year" in header or "model year" in header:
            mapping["year"] = index
        elif "make" in header and "model" not in header:
            mapping["make"] = index
        elif "model" in header and "year" not in header and "body" not in header:
            mapping["model"] = index
        elif "overall" in header and ("stars" in header or "rating" in header):
            mapping["overall_rating"] = index
        elif ("frnt" in header and "star" in header) or ("front" in header and "crash" in header):
            mapping["front_crash"] = index
        elif ("side" in header and "star" in header and "barrier" not in header) or (
            "side" in header and "crash" in header
        ):
            mapping["side_crash"] = index
        elif ("rollover" in header and "star" in header) or ("rollover" in header and "crash" in header):
            mapping["rollover"] = index

    missing = [name for name in REQUIRED_COLUMNS if name not in mapping]
    if missing:
        raise CsvImportException(
            CsvFailureReason.MISSING_REQUIRED_COLUMNS,
            message=f"CSV is missing required columns: {', '.join(missing)}",
        )
    return mapping


def parse_star(value: Optional[str]) -> Optional[float]:
    """A star value in [1, 5] with at most one decimal, anything else is None."""
    if value is None:
        return None
    text = value.strip()
    if not _STAR_PATTERN.match(text):
        return None
    return float(text)


def parse_row(row: list[str], mapping: dict[str, int]) -> Optional[dict[str, Any]]:
    """
    Turn one data row into upsert arguments.

    Returns:
        None when year, make or model is missing.
    """

    def cell(field: str) -> Optional[str]:
        index = mapping.get(field)
        if index is None or index >= len(row):
            return None
        return row[index]

    year_text = (cell("year") or "").strip()
    make = (cell("make") or "").strip()
    model = (cell("model") or "").strip()
    try:
        year = int(float(year_text)) if year_text else 0
    except ValueError:
        year = 0
    if not year or not make or not model:
        return None

    return {
        "year": year,
        "make": make,
        "model": model,
        "fields": {
            "overall_rating": parse_star(cell("overall_rating")),
            "front_crash": parse_star(cell("front_crash")),
            "side_crash": parse_star(cell("side_crash")),
            "rollover": parse_star(cell("rollover")),
        },
    }


def file_fingerprint(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


# =============================================================================
# Importer
# =============================================================================


class CsvImporter:
    """Keeps the Durable Store in step with the remote CSV dataset."""

    STATE_LAST_IMPORT = "csv_last_import"
    STATE_LAST_SUCCESS = "csv_last_success"
    STATE_LAST_ERROR = "csv_last_error"
    STATE_ERROR_HISTORY = "csv_error_history"
    STATE_CHECKPOINT = "csv_import_checkpoint"

    def __init__(
        self,
        store: DurableStore,
        cache: RatingCache,
        csv_url: str | None = None,
        cache_dir: str | Path | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.cache = cache
        self.csv_url = csv_url or settings.NHTSA_CSV_URL
        self.cache_dir = Path(cache_dir or settings.CSV_CACHE_DIR)
        self.csv_path = self.cache_dir / settings.CSV_FILENAME
        self._transport = transport
        self.logger = logger or get_logger(__name__)

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            headers={"User-Agent": f"{settings.PROJECT_NAME}/{settings.VERSION}"},
            transport=self._transport,
        )

    # =========================================================================
    # Remote header check
    # =========================================================================

    async def check_remote_updated(self) -> Optional[datetime]:
        """
        Last-Modified time of the remote dataset.

        The answer is cached for 24 hours. Transport failures and
        missing or unparseable headers return None.
        """
        cached = await self.cache.get_json(CachePrefix.CSV_LAST_MODIFIED)
        if cached:
            return _parse_timestamp(cached)

        start = utcnow()
        try:
            with track_external_api_call("nhtsa_csv", "head") as ctx:
                async with self._client(settings.CSV_HEAD_TIMEOUT) as client:
                    response = await client.head(self.csv_url)
                ctx["status_code"] = response.status_code
        except httpx.HTTPError as e:
            log_event(
                self.logger,
                logging.WARNING,
                "csv_header_check_failed",
                f"Error checking remote CSV headers: {e}",
                url=self.csv_url,
            )
            return None

        log_external_api_call(
            "nhtsa_csv", "head", "HEAD", response.status_code,
            (utcnow() - start).total_seconds() * 1000,
            success=response.is_success,
        )

        header = response.headers.get("last-modified")
        if not header:
            log_event(self.logger, logging.WARNING, "csv_header_check_failed", "No Last-Modified header found")
            return None

        try:
            remote = parsedate_to_datetime(header)
        except (TypeError, ValueError):
            log_event(
                self.logger,
                logging.WARNING,
                "csv_header_check_failed",
                f"Could not parse Last-Modified: {header}",
            )
            return None
        if remote.tzinfo is None:
            remote = remote.replace(tzinfo=UTC)

        await self.cache.set_json(CachePrefix.CSV_LAST_MODIFIED, remote.isoformat(), CacheTTL.CSV_LAST_MODIFIED)
        return remote

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync(self) -> CsvSyncResult:
        """Download and import the dataset when the remote copy is newer than the last import."""
        remote = await self.check_remote_updated()
        if remote is None:
            result = CsvSyncResult(
                status=CsvSyncStatus.FAILED,
                reason=CsvFailureReason.COULD_NOT_CHECK_REMOTE,
                error="Could not retrieve remote file headers",
            )
            await self._record_error(result)
            return result

        last_import = _parse_timestamp(await self.store.get_state(self.STATE_LAST_IMPORT))
        if last_import is not None and remote <= last_import:
            log_event(
                self.logger,
                logging.INFO,
                "csv_current",
                "CSV is current, no update needed",
                remote_updated=remote.isoformat(),
                last_import=last_import.isoformat(),
            )
            return CsvSyncResult(status=CsvSyncStatus.CURRENT, remote_updated=remote, last_import=last_import)

        log_event(self.logger, logging.INFO, "csv_update_detected", "CSV update detected, downloading")
        try:
            path = await self.download()
            counts = await self.import_file(path)
            result = CsvSyncResult(
                status=CsvSyncStatus.SUCCESS,
                imported=counts.imported,
                skipped=counts.skipped,
                errors=counts.errors,
                remote_updated=remote,
                last_import=remote,
            )
        except CsvImportException as e:
            result = CsvSyncResult(
                status=CsvSyncStatus.FAILED,
                reason=e.reason,
                error=e.message,
                remote_updated=remote,
                last_import=remote,
            )

        # The marker advances on failed attempts too
        await self.store.set_state(self.STATE_LAST_IMPORT, remote.isoformat())

        if result.status == CsvSyncStatus.SUCCESS:
            await self.store.set_state(self.STATE_LAST_SUCCESS, utcnow().isoformat())
            await self.store.delete_state(self.STATE_LAST_ERROR)
            log_event(
                self.logger,
                logging.INFO,
                "csv_sync_success",
                "CSV imported successfully",
                imported=result.imported,
                skipped=result.skipped,
                errors=result.errors,
            )
        else:
            await self._record_error(result)

        return result

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _stream_to(self, target: Path) -> int:
        with track_external_api_call("nhtsa_csv", "download") as ctx:
            async with self._client(settings.CSV_DOWNLOAD_TIMEOUT) as client:
                async with client.stream("GET", self.csv_url) as response:
                    ctx["status_code"] = response.status_code
                    response.raise_for_status()
                    written = 0
                    with target.open("wb") as handle:
                        async for chunk in response.aiter_bytes():
                            handle.write(chunk)
                            written += len(chunk)
        return written

    async def download(self) -> Path:
        """
        Stream the dataset to ``CSV_CACHE_DIR``.

        Raises:
            CsvImportException: download_failed or file_not_saved
        """
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        partial = self.csv_path.with_suffix(".part")
        try:
            written = await self._stream_to(partial)
        except (httpx.HTTPError, OSError) as e:
            partial.unlink(missing_ok=True)
            raise CsvImportException(
                CsvFailureReason.DOWNLOAD_FAILED,
                message=f"Failed to download CSV: {e}",
                original_error=e,
            ) from e

        if not partial.exists():
            raise CsvImportException(CsvFailureReason.FILE_NOT_SAVED)
        partial.replace(self.csv_path)

        log_event(
            self.logger,
            logging.INFO,
            "csv_downloaded",
            f"Downloaded CSV to {self.csv_path}",
            path=str(self.csv_path),
            size_bytes=written,
        )
        return self.csv_path

    # =========================================================================
    # Import
    # =========================================================================

    async def import_file(self, path: str | Path, resume: bool = True) -> CsvImportResult:
        """
        Import every data row of ``path`` with source ``csv``, permanently.

        Args:
            resume: continue after the stored checkpoint when it belongs to this file

        Raises:
            CsvImportException: the file cannot be read or lacks required columns
        """
        path = Path(path)
        if not path.exists():
            raise CsvImportException(CsvFailureReason.FILE_NOT_FOUND, message=f"CSV file not found: {path}")

        try:
            fingerprint = file_fingerprint(path)
            handle = path.open("r", newline="", encoding="utf-8-sig", errors="replace")
        except OSError as e:
            raise CsvImportException(CsvFailureReason.CANNOT_OPEN_FILE, original_error=e) from e

        result = CsvImportResult()
        with handle:
            reader = csv.reader(handle)
            try:
                headers = next(reader, None)
            except csv.Error as e:
                raise CsvImportException(CsvFailureReason.INVALID_CSV_FORMAT, original_error=e) from e
            if not headers:
                raise CsvImportException(CsvFailureReason.INVALID_CSV_FORMAT)

            mapping = map_columns(headers)
            log_event(
                self.logger,
                logging.INFO,
                "csv_columns_mapped",
                "Column mapping successful",
                column_map=mapping,
            )

            start_after = 0
            if resume:
                checkpoint = await self.store.get_state(self.STATE_CHECKPOINT)
                if checkpoint and checkpoint.get("fingerprint") == fingerprint:
                    start_after = int(checkpoint.get("row", 0))
                    result.resumed_from_row = start_after
                    log_event(
                        self.logger,
                        logging.INFO,
                        "csv_import_resumed",
                        f"Resuming CSV import after row {start_after}",
                        row=start_after,
                    )

            try:
                for row_number, row in enumerate(reader, start=1):
                    if row_number <= start_after:
                        continue
                    await self._import_row(row_number, row, mapping, fingerprint, result)
            except csv.Error as e:
                raise CsvImportException(
                    CsvFailureReason.IMPORT_EXCEPTION,
                    message=f"CSV parse error: {e}",
                    original_error=e,
                ) from e
            except PostgresConnectionException as e:
                raise CsvImportException(
                    CsvFailureReason.IMPORT_EXCEPTION,
                    message=e.message,
                    original_error=e,
                ) from e

        await self.store.delete_state(self.STATE_CHECKPOINT)
        log_event(
            self.logger,
            logging.INFO,
            "csv_import_complete",
            f"Import complete - Imported: {result.imported}, Skipped: {result.skipped}, Errors: {result.errors}",
            imported=result.imported,
            skipped=result.skipped,
            errors=result.errors,
        )
        return result

    async def _import_row(
        self,
        row_number: int,
        row: list[str],
        mapping: dict[str, int],
        fingerprint: str,
        result: CsvImportResult,
    ) -> None:
        data = parse_row(row, mapping)
        if data is None:
            result.skipped += 1
            track_csv_row("skipped")
            return

        try:
            outcome = await self.store.upsert(
                data["year"],
                data["make"],
                data["model"],
                data["fields"],
                source=RatingSource.CSV,
                ttl_hours=None,
            )
        except PostgresConnectionException:
            raise
        except (DatabaseException, SafetyRatingsException) as e:
            result.errors += 1
            track_csv_row("error")
            log_event(
                self.logger,
                logging.WARNING,
                "csv_row_error",
                f"Row {row_number} failed: {e.message}",
                row=row_number,
                year=data["year"],
                make=data["make"],
                model=data["model"],
            )
            return

        if outcome == UpsertOutcome.SKIPPED:
            result.skipped += 1
            track_csv_row("skipped")
        else:
            result.imported += 1
            track_csv_row("imported")
            await self.cache.evict_rating(data["year"], data["make"], data["model"])

        await self.store.set_state(self.STATE_CHECKPOINT, {"fingerprint": fingerprint, "row": row_number})

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def force_reimport(self, wipe: bool = True) -> CsvSyncResult:
        """
        Re-download and import regardless of the last import marker.

        Args:
            wipe: truncate the Durable Store and drop every cached entry first
        """
        if wipe:
            await self.store.truncate_all()
            await self.cache.clear_all()
        else:
            await self.store.delete_state(self.STATE_LAST_IMPORT)
            await self.store.delete_state(self.STATE_CHECKPOINT)
            await self.cache.delete(CachePrefix.CSV_LAST_MODIFIED)

        log_event(self.logger, logging.WARNING, "csv_force_reimport", "Forcing CSV reimport", wipe=wipe)
        return await self.sync()

    async def import_stats(self) -> dict[str, Any]:
        counts = await self.store.import_stats()
        return {
            "total_imported": counts["total"],
            "valid_entries": counts["valid"],
            "expired_entries": counts["expired"],
            "last_import": await self.store.get_state(self.STATE_LAST_IMPORT),
            "last_success": await self.store.get_state(self.STATE_LAST_SUCCESS),
        }

    async def last_error(self) -> Optional[dict[str, Any]]:
        return await self.store.get_state(self.STATE_LAST_ERROR)

    async def error_history(self) -> list[dict[str, Any]]:
        return list(await self.store.get_state(self.STATE_ERROR_HISTORY, []))

    async def _record_error(self, result: CsvSyncResult) -> None:
        entry = {
            "timestamp": utcnow().isoformat(),
            "reason": result.reason or "unknown",
            "error": result.error or "",
        }
        history = await self.error_history()
        history.append(entry)
        history = history[-settings.CSV_ERROR_HISTORY:]
        await self.store.set_state(self.STATE_ERROR_HISTORY, history)
        await self.store.set_state(self.STATE_LAST_ERROR, entry)
        log_event(
            self.logger,
            logging.ERROR,
            "csv_sync_failed",
            f"CSV import failed: {entry['reason']}",
            reason=entry["reason"],
            error_detail=entry["error"],
        )

    async def cleanup(self) -> None:
        """Remove the downloaded file and the cached remote header."""
        self.csv_path.unlink(missing_ok=True)
        if self.cache_dir.is_dir() and not any(self.cache_dir.iterdir()):
            self.cache_dir.rmdir()
        await self.cache.delete(CachePrefix.CSV_LAST_MODIFIED)
        log_event(self.logger, logging.INFO, "csv_cleanup", "Removed cached CSV file")
