"""
Tests for the operator command line and the application context tasks.
"""

import json
from datetime import timedelta

import pytest
from sqlalchemy import update

from safety_ratings.cli import build_parser, run
from safety_ratings.db.postgres.models import VehicleSafetyRating
from safety_ratings.services.records import RatingSource, utcnow
from safety_ratings.services.resolver import ResolutionTier


class TestParser:
    """Tests for argument parsing."""

    def test_run_batch_arguments(self):
        """Test the run-batch options."""
        args = build_parser().parse_args(["run-batch", "--batch-size", "25"])

        assert args.command == "run-batch"
        assert args.batch_size == 25

    def test_backfill_arguments(self):
        """Test the backfill options."""
        args = build_parser().parse_args(["backfill", "--resume", "--year", "2021"])

        assert args.resume is True
        assert args.year == 2021
        assert args.batch_size is None

    def test_command_required(self):
        """Test that a subcommand must be given."""
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestRun:
    """Tests for running commands against a wired context."""

    @pytest.mark.asyncio
    async def test_validate(self, app_context, capsys):
        """Test that validate prints the report and succeeds."""
        args = build_parser().parse_args(["validate"])

        code = await run(args, context=app_context)

        output = json.loads(capsys.readouterr().out)
        assert code == 0
        assert output["status"] == "completed"
        assert output["alerts"] == []

    @pytest.mark.asyncio
    async def test_failed_sync_exit_code(self, app_context, csv_server):
        """Test that a failed CSV sync exits with 1."""
        csv_server.head_fails = True
        args = build_parser().parse_args(["sync-csv"])

        assert await run(args, context=app_context) == 1

    @pytest.mark.asyncio
    async def test_import_missing_file(self, app_context, tmp_path, capsys):
        """Test that a pipeline error exits with 2 and prints the error."""
        args = build_parser().parse_args(["import-file", str(tmp_path / "missing.csv")])

        code = await run(args, context=app_context)

        err = capsys.readouterr().err
        error = json.loads(err[err.index("{"):])
        assert code == 2
        assert error["error"]["code"] == "ERR_4010"
        assert error["error"]["details"]["reason"] == "file_not_found"

    @pytest.mark.asyncio
    async def test_import_file(self, app_context, make_csv, capsys):
        """Test importing a local file."""
        args = build_parser().parse_args(["import-file", str(make_csv(["HONDA,CIVIC,2020,4DR,5,4,5,4"]))])

        code = await run(args, context=app_context)

        output = json.loads(capsys.readouterr().out)
        assert code == 0
        assert output["imported"] == 1

    @pytest.mark.asyncio
    async def test_backfill_resume_without_session(self, app_context):
        """Test that resuming a missing backfill session exits with 1."""
        args = build_parser().parse_args(["backfill", "--resume"])

        assert await run(args, context=app_context) == 1

    @pytest.mark.asyncio
    async def test_discover_then_run_batch(self, app_context, nhtsa, capsys):
        """Test seeding the sync log and draining it from the command line."""
        nhtsa.add_models(2020, "Honda", ["Civic"])
        nhtsa.add_rating(2020, "Honda", "Civic", OverallRating="5")
        await app_context.store.add_catalog_vehicle(2020, "Honda", "Civic")

        assert await run(build_parser().parse_args(["discover"]), context=app_context) == 0
        assert await run(build_parser().parse_args(["run-batch"]), context=app_context) == 0

        stats = await app_context.store.aggregate_stats()
        assert stats.success == 1


class TestContextTasks:
    """Tests for the scheduled task entry points on AppContext."""

    @pytest.mark.asyncio
    async def test_run_cleanup(self, app_context):
        """Test the cleanup task summary."""
        result = await app_context.run_cleanup()

        assert result["removed"] == 0
        assert result["sync"]["total"] == 0

    @pytest.mark.asyncio
    async def test_checks(self, app_context):
        """Test the database and cache probes."""
        assert await app_context.check_database() is True
        assert await app_context.check_cache() is True

    @pytest.mark.asyncio
    async def test_cleanup_keeps_expired_ratings(self, app_context, engine, nhtsa):
        """Test that the scheduled cleanup leaves expired rows for the stale tier."""
        store = app_context.store
        await store.upsert(2018, "Mazda", "CX-5", {"overall_rating": 5.0}, source=RatingSource.API, ttl_hours=1)
        async with engine.begin() as conn:
            await conn.execute(
                update(VehicleSafetyRating)
                .where(VehicleSafetyRating.model == "CX-5")
                .values(expires_at=utcnow() - timedelta(days=1))
            )
        nhtsa.fail(nhtsa.rating_path(2018, "Mazda", "CX-5"))

        result = await app_context.run_cleanup()

        assert result["removed"] == 0
        assert result["expired"] == 1
        assert await store.get_stale(2018, "Mazda", "CX-5") is not None
        resolution = await app_context.resolver.resolve(2018, "Mazda", "CX-5")
        assert resolution.tier == ResolutionTier.STALE

    @pytest.mark.asyncio
    async def test_purge_expired(self, app_context, engine):
        """Test that the operator purge deletes expired rows only."""
        store = app_context.store
        await store.upsert(2018, "Mazda", "CX-5", {"overall_rating": 5.0}, source=RatingSource.API, ttl_hours=1)
        await store.upsert(2020, "Honda", "Civic", {"overall_rating": 5.0}, source=RatingSource.CSV)
        async with engine.begin() as conn:
            await conn.execute(
                update(VehicleSafetyRating)
                .where(VehicleSafetyRating.model == "CX-5")
                .values(expires_at=utcnow() - timedelta(days=1))
            )

        assert await app_context.purge_expired() == {"removed": 1}
        assert await store.get_stale(2018, "Mazda", "CX-5") is None
        assert await store.get(2020, "Honda", "Civic") is not None
