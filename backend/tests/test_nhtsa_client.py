"""
Tests for the NHTSA live fetch client.
"""

import pytest

from safety_ratings.core.exceptions import ExternalAPIException, NetworkError, NHTSARateLimitException


class TestFetchRating:
    """Tests for SafetyRatingsClient.fetch_rating."""

    @pytest.mark.asyncio
    async def test_fetch_rating(self, client, nhtsa):
        """Test that a provider result is normalized into a record."""
        nhtsa.add_rating(
            2020,
            "Honda",
            "Civic",
            OverallRating="5",
            OverallFrontCrashRating="4",
            RolloverRating="4",
            VehicleId=17001,
        )

        record = await client.fetch_rating(2020, "Honda", "Civic")

        assert record is not None
        assert record.overall_rating == 5.0
        assert record.front_crash == 4.0
        assert record.side_crash is None
        assert record.vehicle_id == 17001

    @pytest.mark.asyncio
    async def test_empty_results_return_none(self, client):
        """Test that an empty Results list means no data."""
        assert await client.fetch_rating(2020, "Honda", "Unknown") is None

    @pytest.mark.asyncio
    async def test_non_200_returns_none(self, client, nhtsa):
        """Test that a provider error answer means no data rather than failure."""
        nhtsa.add_response(nhtsa.rating_path(2020, "Honda", "Civic"), 404)

        assert await client.fetch_rating(2020, "Honda", "Civic") is None

    @pytest.mark.asyncio
    async def test_transport_failure_raises_network_error(self, client, nhtsa):
        """Test that a connection failure surfaces as NetworkError."""
        nhtsa.fail(nhtsa.rating_path(2020, "Honda", "Civic"))

        with pytest.raises(NetworkError) as exc_info:
            await client.fetch_rating(2020, "Honda", "Civic")

        assert isinstance(exc_info.value, ExternalAPIException)
        assert exc_info.value.retriable is True

    @pytest.mark.asyncio
    async def test_rate_limited(self, client, nhtsa):
        """Test that a 429 answer raises with the provider's retry delay."""
        nhtsa.add_response(nhtsa.rating_path(2020, "Honda", "Civic"), 429)

        with pytest.raises(NHTSARateLimitException) as exc_info:
            await client.fetch_rating(2020, "Honda", "Civic")

        assert exc_info.value.retry_after == 60

    @pytest.mark.asyncio
    async def test_vehicle_id_follow_up(self, client, nhtsa):
        """Test that a summary result is completed from the VehicleId endpoint."""
        nhtsa.add_response(
            nhtsa.rating_path(2022, "Subaru", "Outback"),
            200,
            {"Count": 1, "Results": [{"VehicleId": 18500, "VehicleDescription": "2022 Subaru Outback AWD"}]},
        )
        nhtsa.add_response(
            "/SafetyRatings/VehicleId/18500",
            200,
            {"Count": 1, "Results": [{"OverallRating": "5", "VehiclePicture": "https://img/outback.jpg"}]},
        )

        record = await client.fetch_rating(2022, "Subaru", "Outback")

        assert record.overall_rating == 5.0
        assert record.vehicle_picture == "https://img/outback.jpg"
        assert record.description == "2022 Subaru Outback AWD"
        assert "/SafetyRatings/VehicleId/18500" in nhtsa.calls

    @pytest.mark.asyncio
    async def test_vehicle_id_follow_up_failure_keeps_summary(self, client, nhtsa):
        """Test that a failed detail lookup still returns the summary."""
        nhtsa.add_response(
            nhtsa.rating_path(2022, "Subaru", "Outback"),
            200,
            {"Count": 1, "Results": [{"VehicleId": 18500}]},
        )
        nhtsa.fail("/SafetyRatings/VehicleId/18500")

        record = await client.fetch_rating(2022, "Subaru", "Outback")

        assert record is not None
        assert record.vehicle_id == 18500
        assert record.overall_rating is None

    @pytest.mark.asyncio
    async def test_model_name_is_path_encoded(self, client, nhtsa):
        """Test that model names with spaces reach the right path."""
        nhtsa.add_rating(2020, "Ford", "F-150 4WD", OverallRating="4")

        record = await client.fetch_rating(2020, "Ford", "F-150 4WD")

        assert record.overall_rating == 4.0


class TestEnumeration:
    """Tests for model year, make and model enumeration."""

    @pytest.mark.asyncio
    async def test_models_are_cached(self, client, nhtsa):
        """Test that the model list is fetched once and then served from cache."""
        nhtsa.add_models(2020, "Honda", ["Civic", "Accord", "Civic"])

        first = await client.get_models(2020, "Honda")
        second = await client.get_models(2020, "Honda")

        assert first == ["Civic", "Accord"]
        assert second == first
        assert nhtsa.calls.count("/SafetyRatings/modelyear/2020/make/Honda") == 1

    @pytest.mark.asyncio
    async def test_model_years(self, client, nhtsa):
        """Test model year enumeration."""
        nhtsa.add_response(
            "/SafetyRatings/modelyear",
            200,
            {"Count": 2, "Results": [{"ModelYear": 2021}, {"ModelYear": "2020"}]},
        )

        assert await client.get_model_years() == [2021, 2020]

    @pytest.mark.asyncio
    async def test_makes_failure_answer_is_empty(self, client, nhtsa):
        """Test that a provider error while enumerating makes yields an empty list."""
        nhtsa.add_response("/SafetyRatings/modelyear/2020", 500)

        assert await client.get_makes(2020) == []
