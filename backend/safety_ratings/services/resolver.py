"""
Multi-tier rating resolver.

Answers "what is the rating for (year, make, model)" by walking the
tiers in a fixed order:

1. ephemeral cache
2. Durable Store row with an overall rating
3. live fetch to fill a ratingless row (gap fill)
4. live fetch for a vehicle the store has never seen
5. expired store row (stale)

Callers receive a ``Resolution`` whose status distinguishes a confirmed
"no data anywhere" (``not_found``) from "could not ask" (``unavailable``).
"""

import logging
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel

from safety_ratings.core.config import settings
from safety_ratings.core.exceptions import ExternalAPIException
from safety_ratings.core.logging import get_logger, log_event
from safety_ratings.core.metrics import track_resolver_tier
from safety_ratings.db.redis_cache import RatingCache
from safety_ratings.services.nhtsa_client import SafetyRatingsClient
from safety_ratings.services.records import RatingRecord, RatingSource
from safety_ratings.services.store import DurableStore


class ResolutionStatus(StrEnum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


class ResolutionTier(StrEnum):
    EPHEMERAL = "ephemeral"
    DURABLE = "durable"
    GAP_FILL = "gap_fill"
    LIVE = "live"
    STALE = "stale"
    NONE = "none"


class Resolution(BaseModel):
    status: ResolutionStatus
    tier: ResolutionTier
    record: Optional[RatingRecord] = None

    @property
    def found(self) -> bool:
        return self.status == ResolutionStatus.FOUND


class RatingResolver:
    """Tiered lookup over the ephemeral cache, the Durable Store and the live API."""

    def __init__(
        self,
        cache: RatingCache,
        store: DurableStore,
        client: SafetyRatingsClient,
        api_ttl_hours: int | None = None,
        logger: logging.Logger | None = None,
    ):
        self.cache = cache
        self.store = store
        self.client = client
        self.api_ttl_hours = api_ttl_hours or settings.API_RATING_TTL_HOURS
        self.logger = logger or get_logger(__name__)

    def _found(self, tier: ResolutionTier, record: RatingRecord) -> Resolution:
        track_resolver_tier(tier.value, ResolutionStatus.FOUND.value)
        return Resolution(status=ResolutionStatus.FOUND, tier=tier, record=record)

    async def resolve(self, year: int, make: str, model: str) -> Resolution:
        cached = await self.cache.get_rating(year, make, model)
        if cached is not None:
            return self._found(ResolutionTier.EPHEMERAL, cached)

        stored = await self.store.get(year, make, model)
        if stored is not None and stored.has_rating:
            await self.cache.set_rating(stored)
            return self._found(ResolutionTier.DURABLE, stored)

        network_failed = False
        try:
            live = await self.refresh_from_live(year, make, model)
        except ExternalAPIException as e:
            network_failed = True
            live = None
            log_event(
                self.logger,
                logging.WARNING,
                "live_fetch_failed",
                f"Live fetch failed for {year} {make} {model}: {e.message}",
                year=year,
                make=make,
                model=model,
                error_code=e.code,
            )

        if stored is not None:
            if live is not None and live.has_rating:
                return self._found(ResolutionTier.GAP_FILL, live)
            if not network_failed:
                await self.cache.set_rating(stored)
            return self._found(ResolutionTier.DURABLE, stored)

        if live is not None:
            return self._found(ResolutionTier.LIVE, live)

        stale = await self.store.get_stale(year, make, model)
        if stale is not None:
            log_event(
                self.logger,
                logging.INFO,
                "stale_rating_served",
                f"Serving expired rating for {year} {make} {model}",
                year=year,
                make=make,
                model=model,
            )
            return self._found(ResolutionTier.STALE, stale)

        status = ResolutionStatus.UNAVAILABLE if network_failed else ResolutionStatus.NOT_FOUND
        track_resolver_tier(ResolutionTier.NONE.value, status.value)
        return Resolution(status=status, tier=ResolutionTier.NONE)

    async def refresh_from_live(self, year: int, make: str, model: str) -> RatingRecord | None:
        """
        Fetch from the live API and persist the answer.

        A rated answer is written with source ``api`` and the API TTL. A
        ratingless answer is only written for a vehicle with no current
        stored row; otherwise the stored row is returned unchanged.

        Raises:
            ExternalAPIException: the provider could not be reached
        """
        record = await self.client.fetch_rating(year, make, model)
        if record is None:
            return None

        if not record.has_rating:
            existing = await self.store.get(year, make, model)
            if existing is not None:
                return existing

        await self.store.upsert(
            year,
            make,
            model,
            record.payload(),
            source=RatingSource.API,
            ttl_hours=self.api_ttl_hours,
        )
        persisted = await self.store.get(year, make, model)
        if persisted is not None:
            record = persisted
        await self.cache.set_rating(record)
        return record
