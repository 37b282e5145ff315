"""
Periodic task runner built on APScheduler's ``AsyncIOScheduler``.

Jobs run on the application's event loop. Each job is single-instance
and coalesced, so a slow run is never overlapped by the next tick of
the same job within this process; cross-process exclusion is the
tasks' own business (the batch run takes a database lease).
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, Optional, Protocol

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from safety_ratings.core.config import settings
from safety_ratings.core.logging import get_logger, job_name_var, log_event


class ScheduledTasks(Protocol):
    """The work the scheduler triggers."""

    async def run_csv_sync(self) -> Any: ...

    async def run_validate(self) -> Any: ...

    async def run_cleanup(self) -> Any: ...

    async def run_batch(self) -> Any: ...


class PeriodicTaskRunner:
    """Registers the pipeline's periodic jobs and owns the scheduler lifecycle."""

    def __init__(
        self,
        tasks: ScheduledTasks,
        csv_sync_hours: Optional[int] = None,
        validate_hours: Optional[int] = None,
        cleanup_hours: Optional[int] = None,
        batch_minutes: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.tasks = tasks
        self.logger = logger or get_logger(__name__)
        self._scheduler = AsyncIOScheduler(timezone=UTC)
        self._runs: dict[str, int] = {}
        self._last_run: dict[str, datetime] = {}
        self._intervals = {
            "csv_sync": IntervalTrigger(hours=csv_sync_hours or settings.CSV_SYNC_INTERVAL_HOURS),
            "validate": IntervalTrigger(hours=validate_hours or settings.VALIDATE_INTERVAL_HOURS),
            "cleanup": IntervalTrigger(hours=cleanup_hours or settings.CLEANUP_INTERVAL_HOURS),
            "batch": IntervalTrigger(minutes=batch_minutes or settings.BATCH_INTERVAL_MINUTES),
        }

    def _job(self, name: str, task: Callable[[], Awaitable[Any]]) -> Callable[[], Awaitable[None]]:
        async def run() -> None:
            token = job_name_var.set(name)
            self._runs[name] = self._runs.get(name, 0) + 1
            self._last_run[name] = datetime.now(UTC)
            try:
                result = await task()
                log_event(
                    self.logger,
                    logging.INFO,
                    "scheduled_job_complete",
                    f"Scheduled job {name} finished",
                    job=name,
                    result=str(result) if result is not None else None,
                )
            except Exception:
                # Errors stay inside the job so the next tick runs
                self.logger.exception(f"Scheduled job {name} failed")
            finally:
                job_name_var.reset(token)

        return run

    def register(self) -> None:
        jobs = {
            "csv_sync": self.tasks.run_csv_sync,
            "validate": self.tasks.run_validate,
            "cleanup": self.tasks.run_cleanup,
            "batch": self.tasks.run_batch,
        }
        for name, task in jobs.items():
            self._scheduler.add_job(
                self._job(name, task),
                self._intervals[name],
                id=f"safety_ratings_{name}",
                name=name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )

    def start(self) -> None:
        """Register the jobs and start ticking on the running event loop."""
        self.register()
        self._scheduler.start()
        self.logger.info(f"Scheduler started with {len(self._scheduler.get_jobs())} jobs")

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            self.logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def job_ids(self) -> list[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def health(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "jobs": self.job_ids(),
            "runs": dict(self._runs),
            "last_run": {name: ts.isoformat() for name, ts in self._last_run.items()},
        }
