"""
Vehicle discovery.

Matches the site's vehicle catalog against the models the provider
publishes and seeds the sync log with one ``pending`` entry per match.
"""

import logging
from collections import defaultdict
from typing import Any, Optional

from pydantic import BaseModel

from safety_ratings.core.exceptions import DatabaseException, SafetyRatingsException
from safety_ratings.core.logging import get_logger, log_event
from safety_ratings.services.nhtsa_client import SafetyRatingsClient
from safety_ratings.services.records import utcnow
from safety_ratings.services.store import DurableStore

MAX_FUZZY_DISTANCE = 2


class DiscoveryResult(BaseModel):
    created: int = 0
    skipped: int = 0
    errors: int = 0


def normalize_model_name(model: str) -> str:
    return model.lower().replace("-", "").replace(" ", "")


def levenshtein(a: str, b: str) -> int:
    """Edit distance with unit costs for insert, delete and substitute."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (char_a != char_b),
                )
            )
        previous = current
    return previous[-1]


def find_model_match(catalog_model: str, provider_models: list[str]) -> Optional[str]:
    """
    Provider model name for a catalog model.

    Exact match after normalization wins; otherwise the closest name
    within ``MAX_FUZZY_DISTANCE``, ties going to the lexicographically
    smallest provider name.
    """
    target = normalize_model_name(catalog_model)
    for candidate in provider_models:
        if normalize_model_name(candidate) == target:
            return candidate

    scored = [
        (levenshtein(target, normalize_model_name(candidate)), candidate)
        for candidate in provider_models
    ]
    scored = [item for item in scored if item[0] <= MAX_FUZZY_DISTANCE]
    if not scored:
        return None
    return min(scored)[1]


class VehicleDiscovery:
    """Seeds the sync log from the vehicle catalog."""

    STATE_LAST_DISCOVERY = "last_discovery"

    def __init__(
        self,
        store: DurableStore,
        client: SafetyRatingsClient,
        logger: logging.Logger | None = None,
    ):
        self.store = store
        self.client = client
        self.logger = logger or get_logger(__name__)

    async def discover_vehicles(self) -> DiscoveryResult:
        result = DiscoveryResult()
        vehicles = await self.store.catalog_vehicles()
        if not vehicles:
            log_event(self.logger, logging.INFO, "discovery_empty", "Vehicle catalog is empty")
            return result

        grouped: dict[tuple[int, str], list[str]] = defaultdict(list)
        for vehicle in vehicles:
            models = grouped[(vehicle.year, vehicle.make.strip())]
            model = vehicle.model.strip()
            if model not in models:
                models.append(model)

        log_event(
            self.logger,
            logging.INFO,
            "discovery_started",
            f"Found {len(vehicles)} catalog vehicles to discover",
            count=len(vehicles),
        )

        for (year, make), catalog_models in grouped.items():
            try:
                provider_models = await self.client.get_models(year, make)
            except DatabaseException:
                raise
            except SafetyRatingsException as e:
                self.logger.warning(f"Model enumeration failed for {year} {make}: {e.message}")
                provider_models = []

            if not provider_models:
                log_event(
                    self.logger,
                    logging.WARNING,
                    "discovery_no_provider_models",
                    f"No NHTSA data for {year} {make}",
                    year=year,
                    make=make,
                )
                result.errors += 1
                continue

            for catalog_model in catalog_models:
                match = find_model_match(catalog_model, provider_models)
                if match is None:
                    log_event(
                        self.logger,
                        logging.INFO,
                        "discovery_no_match",
                        f"No match: {year} {make} {catalog_model}",
                        year=year,
                        make=make,
                        model=catalog_model,
                    )
                    result.skipped += 1
                    continue

                if await self.store.create_pending_entry(year, make, match, catalog_model=catalog_model):
                    result.created += 1
                else:
                    result.skipped += 1

        await self.store.set_state(self.STATE_LAST_DISCOVERY, utcnow().isoformat())
        log_event(
            self.logger,
            logging.INFO,
            "discovery_complete",
            f"Discovery complete - Created: {result.created}, Skipped: {result.skipped}, Errors: {result.errors}",
            created_count=result.created,
            skipped=result.skipped,
            errors=result.errors,
        )
        return result

    async def discovery_stats(self) -> dict[str, Any]:
        stats = await self.store.aggregate_stats()
        resolved = stats.success + stats.no_data
        return {
            "total": stats.total,
            "pending": stats.pending,
            "successful": stats.success,
            "no_data": stats.no_data,
            "failed": stats.failed,
            "coverage": round(stats.success / resolved * 100, 1) if resolved else 0.0,
            "last_discovery": await self.store.get_state(self.STATE_LAST_DISCOVERY),
        }

    async def reset_discovery(self) -> int:
        """Drop every sync log entry and the last discovery marker."""
        count = await self.store.delete_sync_log()
        await self.store.delete_state(self.STATE_LAST_DISCOVERY)
        log_event(self.logger, logging.WARNING, "discovery_reset", "All discovery entries cleared", count=count)
        return count
