"""
Health and validation reporting for the reconciliation pipeline.
"""

import logging
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field

from safety_ratings.core.logging import get_logger, log_event
from safety_ratings.core.metrics import set_sync_metrics
from safety_ratings.services.notifier import OperatorNotifier
from safety_ratings.services.records import SyncStats, utcnow
from safety_ratings.services.store import DurableStore

FAILURE_ALERT_PERCENT = 20.0
DEGRADED_FAILURE_SHARE = 0.1
HEALTHY_COVERAGE_PERCENT = 80.0


class HealthStatus(StrEnum):
    NOT_STARTED = "not_started"
    DEGRADED = "degraded"
    IN_PROGRESS = "in_progress"
    HEALTHY = "healthy"
    PARTIAL = "partial"


class Alert(BaseModel):
    level: str
    message: str


class HealthReport(BaseModel):
    status: HealthStatus
    coverage: float
    total_vehicles: int
    synchronized: int
    no_data: int
    pending: int
    failed: int
    last_run: Optional[str] = None


class ValidationReport(BaseModel):
    timestamp: str
    status: str = "completed"
    sync: dict[str, Any]
    cache: dict[str, Any]
    alerts: list[Alert] = Field(default_factory=list)


def health_status(stats: SyncStats) -> HealthStatus:
    if stats.total == 0:
        return HealthStatus.NOT_STARTED
    if stats.failed > (stats.success + stats.no_data) * DEGRADED_FAILURE_SHARE:
        return HealthStatus.DEGRADED
    if stats.pending > 0:
        return HealthStatus.IN_PROGRESS
    if stats.coverage >= HEALTHY_COVERAGE_PERCENT:
        return HealthStatus.HEALTHY
    return HealthStatus.PARTIAL


def generate_alerts(stats: SyncStats) -> list[Alert]:
    alerts: list[Alert] = []

    if stats.failed > 0 and stats.total > 0:
        failure_rate = stats.failed / stats.total * 100
        if failure_rate > FAILURE_ALERT_PERCENT:
            alerts.append(
                Alert(
                    level="warning",
                    message=(
                        f"High NHTSA fetch failure rate: {failure_rate:.1f}% "
                        f"({stats.failed}/{stats.total} failed)"
                    ),
                )
            )

    if stats.pending > 0 and stats.completion < 100:
        alerts.append(
            Alert(
                level="info",
                message=f"NHTSA sync in progress: {stats.completion:.1f}% complete ({stats.pending} pending)",
            )
        )

    if stats.total > 0 and stats.success == 0 and stats.no_data == stats.total:
        alerts.append(Alert(level="warning", message="No NHTSA data available for any vehicles"))

    return alerts


class HealthReporter:
    """Classifies pipeline health and produces the persisted validation report."""

    STATE_LATEST_REPORT = "validation_report"

    def __init__(
        self,
        store: DurableStore,
        notifier: OperatorNotifier,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.notifier = notifier
        self.logger = logger or get_logger(__name__)

    async def check_health(self) -> HealthReport:
        stats = await self.store.aggregate_stats()
        last_run = await self.store.last_sync_attempt()
        return HealthReport(
            status=health_status(stats),
            coverage=stats.coverage,
            total_vehicles=stats.total,
            synchronized=stats.success,
            no_data=stats.no_data,
            pending=stats.pending,
            failed=stats.failed,
            last_run=last_run.isoformat() if last_run else None,
        )

    async def validate_sync(self) -> ValidationReport:
        stats = await self.store.aggregate_stats()
        cache_stats = await self.store.cache_stats()
        set_sync_metrics(stats.model_dump(), stats.coverage)

        report = ValidationReport(
            timestamp=utcnow().isoformat(),
            sync=stats.as_dict(),
            cache=cache_stats,
            alerts=generate_alerts(stats),
        )
        await self.store.set_state(self.STATE_LATEST_REPORT, report.model_dump(mode="json"))

        log_event(
            self.logger,
            logging.INFO,
            "sync_validated",
            (
                f"Sync: {stats.total} vehicles, Success: {stats.success}, No Data: {stats.no_data}, "
                f"Failed: {stats.failed}, Coverage: {stats.coverage:.1f}%"
            ),
            total=stats.total,
            success=stats.success,
            no_data=stats.no_data,
            failed=stats.failed,
            coverage=stats.coverage,
            alert_count=len(report.alerts),
        )

        if report.alerts:
            await self.notifier.notify(
                report.model_dump(mode="json"),
                [alert.model_dump() for alert in report.alerts],
            )
        return report

    async def latest_report(self) -> Optional[ValidationReport]:
        data = await self.store.get_state(self.STATE_LATEST_REPORT)
        return ValidationReport.model_validate(data) if data else None
