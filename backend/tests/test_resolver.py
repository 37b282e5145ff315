"""
Tests for the multi-tier rating resolver.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from safety_ratings.db.postgres.models import VehicleSafetyRating
from safety_ratings.services.records import RatingRecord, RatingSource, utcnow
from safety_ratings.services.resolver import RatingResolver, ResolutionStatus, ResolutionTier


@pytest.fixture
def resolver(cache, store, client):
    return RatingResolver(cache, store, client, api_ttl_hours=720)


class TestResolve:
    """Tests for RatingResolver.resolve tier order."""

    @pytest.mark.asyncio
    async def test_cache_hit(self, resolver, cache, nhtsa):
        """Test that a cached rating is served without touching the store or API."""
        await cache.set_rating(RatingRecord(year=2020, make="Honda", model="Civic", overall_rating=5.0))

        resolution = await resolver.resolve(2020, "Honda", "Civic")

        assert resolution.status == ResolutionStatus.FOUND
        assert resolution.tier == ResolutionTier.EPHEMERAL
        assert resolution.record.overall_rating == 5.0
        assert nhtsa.calls == []

    @pytest.mark.asyncio
    async def test_stored_rating_short_circuits(self, resolver, store, cache, nhtsa):
        """Test that a stored rating is served and cached without an API call."""
        await store.upsert(2020, "Honda", "Civic", {"overall_rating": 5.0}, source=RatingSource.CSV)

        first = await resolver.resolve(2020, "Honda", "Civic")
        second = await resolver.resolve(2020, "Honda", "Civic")

        assert first.tier == ResolutionTier.DURABLE
        assert first.record.overall_rating == 5.0
        assert second.tier == ResolutionTier.EPHEMERAL
        assert nhtsa.calls == []

    @pytest.mark.asyncio
    async def test_gap_fill(self, resolver, store, nhtsa):
        """Test that a ratingless stored row is filled from the live API."""
        await store.upsert(2021, "Toyota", "Camry", {"overall_rating": None}, source=RatingSource.CSV)
        nhtsa.add_rating(2021, "Toyota", "Camry", OverallRating="4.5")

        resolution = await resolver.resolve(2021, "Toyota", "Camry")

        assert resolution.tier == ResolutionTier.GAP_FILL
        assert resolution.record.overall_rating == 4.5
        stored = await store.get(2021, "Toyota", "Camry")
        assert stored.overall_rating == 4.5
        assert stored.source == RatingSource.API
        assert stored.expires_at is not None

    @pytest.mark.asyncio
    async def test_ratingless_row_when_api_has_nothing(self, resolver, store, cache):
        """Test that a ratingless row is served and cached when the API confirms no data."""
        await store.upsert(2021, "Toyota", "Camry", {"overall_rating": None}, source=RatingSource.CSV)

        resolution = await resolver.resolve(2021, "Toyota", "Camry")

        assert resolution.status == ResolutionStatus.FOUND
        assert resolution.tier == ResolutionTier.DURABLE
        assert resolution.record.overall_rating is None
        assert await cache.get_rating(2021, "Toyota", "Camry") is not None

    @pytest.mark.asyncio
    async def test_ratingless_row_when_api_not_rated(self, resolver, store, cache, nhtsa):
        """Test that an unrated live answer serves the stored row as it is."""
        await store.upsert(
            2021,
            "Toyota",
            "Camry",
            {"overall_rating": None, "front_crash": 4.0, "rollover": 4.0},
            source=RatingSource.CSV,
        )
        nhtsa.add_rating(2021, "Toyota", "Camry")

        resolution = await resolver.resolve(2021, "Toyota", "Camry")

        assert resolution.tier == ResolutionTier.DURABLE
        assert resolution.record.source == RatingSource.CSV
        assert resolution.record.front_crash == 4.0
        stored = await store.get(2021, "Toyota", "Camry")
        assert stored.source == RatingSource.CSV
        assert stored.rollover == 4.0
        assert stored.expires_at is None
        assert (await cache.get_rating(2021, "Toyota", "Camry")).front_crash == 4.0

    @pytest.mark.asyncio
    async def test_ratingless_row_when_api_down(self, resolver, store, cache, nhtsa):
        """Test that a ratingless row is served but not cached when the API is unreachable."""
        await store.upsert(2021, "Toyota", "Camry", {"overall_rating": None}, source=RatingSource.CSV)
        nhtsa.fail(nhtsa.rating_path(2021, "Toyota", "Camry"))

        resolution = await resolver.resolve(2021, "Toyota", "Camry")

        assert resolution.tier == ResolutionTier.DURABLE
        assert resolution.record.source == RatingSource.CSV
        assert await cache.get_rating(2021, "Toyota", "Camry") is None

    @pytest.mark.asyncio
    async def test_live_fetch_for_unknown_vehicle(self, resolver, store, nhtsa):
        """Test that an unseen vehicle is fetched live and persisted."""
        nhtsa.add_rating(2023, "Kia", "Telluride", OverallRating="5", VehicleId=19001)

        resolution = await resolver.resolve(2023, "Kia", "Telluride")

        assert resolution.tier == ResolutionTier.LIVE
        assert resolution.record.overall_rating == 5.0
        stored = await store.get(2023, "Kia", "Telluride")
        assert stored.source == RatingSource.API
        assert stored.vehicle_id == 19001

    @pytest.mark.asyncio
    async def test_stale_row_served_when_api_down(self, resolver, store, engine, nhtsa):
        """Test that an expired row is served when the API cannot be reached."""
        await store.upsert(2018, "Mazda", "CX-5", {"overall_rating": 5.0}, source=RatingSource.API, ttl_hours=1)
        async with engine.begin() as conn:
            await conn.execute(
                update(VehicleSafetyRating)
                .where(VehicleSafetyRating.model == "CX-5")
                .values(expires_at=utcnow() - timedelta(hours=1))
            )
        nhtsa.fail(nhtsa.rating_path(2018, "Mazda", "CX-5"))

        resolution = await resolver.resolve(2018, "Mazda", "CX-5")

        assert resolution.status == ResolutionStatus.FOUND
        assert resolution.tier == ResolutionTier.STALE
        assert resolution.record.overall_rating == 5.0

    @pytest.mark.asyncio
    async def test_unavailable_when_api_down(self, resolver, nhtsa):
        """Test that a network failure with no stored data is reported as unavailable."""
        nhtsa.fail(nhtsa.rating_path(2023, "Kia", "Telluride"))

        resolution = await resolver.resolve(2023, "Kia", "Telluride")

        assert resolution.status == ResolutionStatus.UNAVAILABLE
        assert resolution.tier == ResolutionTier.NONE
        assert resolution.record is None
        assert resolution.found is False

    @pytest.mark.asyncio
    async def test_not_found(self, resolver):
        """Test that a confirmed absence everywhere is reported as not found."""
        resolution = await resolver.resolve(2023, "Kia", "Nonexistent")

        assert resolution.status == ResolutionStatus.NOT_FOUND
        assert resolution.tier == ResolutionTier.NONE


class TestRefreshFromLive:
    """Tests for RatingResolver.refresh_from_live."""

    @pytest.mark.asyncio
    async def test_ratingless_answer_does_not_replace_rating(self, resolver, store, nhtsa):
        """Test that a live answer without a rating leaves a stored rating intact."""
        await store.upsert(2020, "Honda", "Civic", {"overall_rating": 5.0}, source=RatingSource.CSV)
        nhtsa.add_rating(2020, "Honda", "Civic")

        record = await resolver.refresh_from_live(2020, "Honda", "Civic")

        assert record.overall_rating == 5.0
        assert (await store.get(2020, "Honda", "Civic")).source == RatingSource.CSV

    @pytest.mark.asyncio
    async def test_nothing_returned(self, resolver, store):
        """Test that an empty answer writes nothing."""
        assert await resolver.refresh_from_live(2020, "Honda", "Civic") is None
        assert await store.get_stale(2020, "Honda", "Civic") is None

    @pytest.mark.asyncio
    async def test_ratingless_answer_keeps_csv_subscores(self, resolver, store, nhtsa):
        """Test that an unrated live answer leaves a ratingless CSV row untouched."""
        await store.upsert(
            2021,
            "Toyota",
            "Camry",
            {"overall_rating": None, "front_crash": 4.0, "rollover": 4.0},
            source=RatingSource.CSV,
        )
        nhtsa.add_rating(2021, "Toyota", "Camry")

        record = await resolver.refresh_from_live(2021, "Toyota", "Camry")

        assert record.source == RatingSource.CSV
        stored = await store.get(2021, "Toyota", "Camry")
        assert stored.front_crash == 4.0
        assert stored.rollover == 4.0
        assert stored.expires_at is None

    @pytest.mark.asyncio
    async def test_ratingless_answer_persisted_for_unknown_vehicle(self, resolver, store, nhtsa):
        """Test that an unrated answer is stored when no row exists yet."""
        nhtsa.add_rating(2022, "Ford", "Maverick", VehicleId=18800)

        record = await resolver.refresh_from_live(2022, "Ford", "Maverick")

        assert record.overall_rating is None
        stored = await store.get(2022, "Ford", "Maverick")
        assert stored.source == RatingSource.API
        assert stored.vehicle_id == 18800
