"""
Tests for the periodic task runner.
"""

import pytest

from safety_ratings.services.scheduler import PeriodicTaskRunner


class FakeTasks:
    def __init__(self):
        self.calls = []

    async def run_csv_sync(self):
        self.calls.append("csv_sync")
        return {"status": "current"}

    async def run_validate(self):
        self.calls.append("validate")

    async def run_cleanup(self):
        self.calls.append("cleanup")
        return {"removed": 0}

    async def run_batch(self):
        self.calls.append("batch")
        raise RuntimeError("database unavailable")


class TestPeriodicTaskRunner:
    """Tests for PeriodicTaskRunner."""

    def test_register_jobs(self):
        """Test that every periodic job is registered once."""
        runner = PeriodicTaskRunner(FakeTasks())

        runner.register()
        runner.register()

        assert sorted(runner.job_ids()) == [
            "safety_ratings_batch",
            "safety_ratings_cleanup",
            "safety_ratings_csv_sync",
            "safety_ratings_validate",
        ]

    @pytest.mark.asyncio
    async def test_job_wrapper_records_runs(self):
        """Test that a job run is counted and timestamped."""
        tasks = FakeTasks()
        runner = PeriodicTaskRunner(tasks)

        await runner._job("csv_sync", tasks.run_csv_sync)()

        health = runner.health()
        assert tasks.calls == ["csv_sync"]
        assert health["runs"] == {"csv_sync": 1}
        assert "csv_sync" in health["last_run"]

    @pytest.mark.asyncio
    async def test_failing_job_does_not_raise(self):
        """Test that a failing task is logged and the wrapper returns normally."""
        tasks = FakeTasks()
        runner = PeriodicTaskRunner(tasks)

        await runner._job("batch", tasks.run_batch)()
        await runner._job("batch", tasks.run_batch)()

        assert runner.health()["runs"] == {"batch": 2}

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        """Test the scheduler lifecycle on the running loop."""
        runner = PeriodicTaskRunner(FakeTasks(), batch_minutes=60)

        runner.start()
        try:
            assert runner.running is True
            assert len(runner.health()["jobs"]) == 4
        finally:
            runner.stop()

        assert runner.running is False
