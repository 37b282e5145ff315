"""
Tests for the operator, health and metrics endpoints.
"""

from datetime import timedelta

import pytest

from safety_ratings.db.redis_cache import models_key
from safety_ratings.services.batch_worker import BATCH_LEASE_NAME

ADMIN = "/api/v1/admin"


class TestCsvEndpoints:
    """Tests for CSV import control."""

    @pytest.mark.asyncio
    async def test_sync(self, async_client, app_context, csv_server):
        """Test that a changed file is imported."""
        csv_server.body += "HONDA,CIVIC,2020,4DR,5,4,5,4\nMAZDA,CX-5,2021,SUV,4,4,5,4\n"

        response = await async_client.post(f"{ADMIN}/csv/sync")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["data"]["status"] == "success"
        assert data["data"]["imported"] == 2
        assert (await app_context.store.get(2020, "HONDA", "CIVIC")).overall_rating == 5.0

    @pytest.mark.asyncio
    async def test_sync_failure(self, async_client, csv_server):
        """Test that an unreachable host is reported as a failed operation."""
        csv_server.head_fails = True

        response = await async_client.post(f"{ADMIN}/csv/sync")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["data"]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_status_records_errors(self, async_client, csv_server):
        """Test that a failed sync shows up in the import status."""
        csv_server.head_fails = True
        await async_client.post(f"{ADMIN}/csv/sync")

        response = await async_client.get(f"{ADMIN}/csv/status")

        assert response.status_code == 200
        data = response.json()
        assert data["last_error"] is not None
        assert len(data["error_history"]) == 1
        assert "import" in data

    @pytest.mark.asyncio
    async def test_reimport_keeps_rows(self, async_client, app_context, csv_server):
        """Test a reimport without wiping stored ratings."""
        await app_context.store.upsert(2019, "Kia", "Soul", {"overall_rating": 4.0}, source="manual")
        csv_server.body += "HONDA,CIVIC,2020,4DR,5,4,5,4\n"

        response = await async_client.post(f"{ADMIN}/csv/reimport", json={"wipe": False})

        assert response.status_code == 200
        assert response.json()["data"]["imported"] == 1
        assert await app_context.store.get(2019, "Kia", "Soul") is not None


class TestCacheEndpoints:
    """Tests for cache maintenance and rating deletion."""

    @pytest.mark.asyncio
    async def test_clear_cache(self, async_client, app_context):
        """Test dropping the ephemeral entries."""
        await app_context.cache.set_json(models_key(2020, "Honda"), ["Civic"], 60)

        response = await async_client.post(f"{ADMIN}/cache/clear")

        assert response.status_code == 200
        assert response.json()["data"]["removed"] >= 1

    @pytest.mark.asyncio
    async def test_cleanup(self, async_client):
        """Test the expired rating cleanup."""
        response = await async_client.post(f"{ADMIN}/cache/cleanup")

        assert response.status_code == 200
        assert response.json()["data"]["removed"] == 0

    @pytest.mark.asyncio
    async def test_delete_rating(self, async_client, app_context):
        """Test deleting one stored rating."""
        await app_context.store.upsert(2020, "Honda", "Civic", {"overall_rating": 5.0}, source="csv")

        response = await async_client.delete(f"{ADMIN}/ratings/2020/Honda/Civic")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert await app_context.store.get(2020, "Honda", "Civic") is None

    @pytest.mark.asyncio
    async def test_delete_missing_rating(self, async_client):
        """Test the 404 for a rating that is not stored."""
        response = await async_client.delete(f"{ADMIN}/ratings/2020/Honda/Civic")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_1002"


class TestSyncEndpoints:
    """Tests for the reconciliation endpoints."""

    @pytest.mark.asyncio
    async def test_discover_and_run_batch(self, async_client, app_context, nhtsa):
        """Test seeding the sync log and running a batch over it."""
        nhtsa.add_models(2020, "Honda", ["Civic"])
        nhtsa.add_rating(2020, "Honda", "Civic", OverallRating="5")
        await app_context.store.add_catalog_vehicle(2020, "Honda", "Civic")

        discovered = await async_client.post(f"{ADMIN}/sync/discover")
        assert discovered.status_code == 200
        assert discovered.json()["data"]["created"] == 1

        response = await async_client.post(f"{ADMIN}/sync/run-batch", json={"batch_size": 10})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["processed"] == 1
        assert data["success"] == 1

    @pytest.mark.asyncio
    async def test_run_batch_conflict(self, async_client, app_context):
        """Test the 409 when another worker holds the batch lease."""
        await app_context.store.acquire_lease(BATCH_LEASE_NAME, "worker-other", timedelta(minutes=5))

        response = await async_client.post(f"{ADMIN}/sync/run-batch")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ERR_4020"

    @pytest.mark.asyncio
    async def test_run_batch_invalid_size(self, async_client):
        """Test that an out of range batch size is rejected."""
        response = await async_client.post(f"{ADMIN}/sync/run-batch", json={"batch_size": 0})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_reset_failures(self, async_client):
        """Test resetting failures on an empty log."""
        response = await async_client.post(f"{ADMIN}/sync/reset-failures")

        assert response.status_code == 200
        assert response.json()["data"] == {"reset": 0}

    @pytest.mark.asyncio
    async def test_backfill_resume_without_session(self, async_client):
        """Test that resuming a missing backfill is reported as unsuccessful."""
        response = await async_client.post(f"{ADMIN}/sync/backfill", json={"start_new": False})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert "No active backfill session" in data["message"]


class TestReportEndpoints:
    """Tests for the pipeline health and validation reports."""

    @pytest.mark.asyncio
    async def test_pipeline_health(self, async_client):
        """Test the health report before any discovery."""
        response = await async_client.get(f"{ADMIN}/health")

        assert response.status_code == 200
        assert response.json()["status"] == "not_started"

    @pytest.mark.asyncio
    async def test_validate_then_report(self, async_client):
        """Test that validation is persisted and served as the latest report."""
        assert (await async_client.get(f"{ADMIN}/report")).json() is None

        validated = await async_client.post(f"{ADMIN}/validate")
        assert validated.status_code == 200

        report = (await async_client.get(f"{ADMIN}/report")).json()
        assert report["timestamp"] == validated.json()["timestamp"]
        assert report["status"] == "completed"

    @pytest.mark.asyncio
    async def test_stats(self, async_client, app_context):
        """Test the combined statistics."""
        await app_context.store.upsert(2020, "Honda", "Civic", {"overall_rating": None}, source="csv")

        response = await async_client.get(f"{ADMIN}/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["cache"]["total_entries"] == 1
        assert data["missing_ratings"] == 1
        assert data["fetch"]["total"] == 0


class TestHealthEndpoints:
    """Tests for the probes and metrics."""

    @pytest.mark.asyncio
    async def test_root_health(self, async_client):
        """Test the basic health check."""
        response = await async_client.get("/health")

        assert response.status_code == 200
        assert response.json()["service"] == "safety-ratings"

    @pytest.mark.asyncio
    async def test_liveness(self, async_client):
        """Test the liveness probe."""
        response = await async_client.get("/api/v1/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.asyncio
    async def test_readiness(self, async_client):
        """Test the readiness probe with a reachable database."""
        response = await async_client.get("/api/v1/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"] == {"database": True, "cache": True}

    @pytest.mark.asyncio
    async def test_detailed(self, async_client):
        """Test the detailed component health."""
        response = await async_client.get("/api/v1/health/detailed")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["services"]["scheduler"] == {"running": False}
        assert data["pipeline"]["status"] == "not_started"

    @pytest.mark.asyncio
    async def test_metrics(self, async_client):
        """Test that Prometheus metrics are exposed."""
        await async_client.get("/health")

        response = await async_client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
