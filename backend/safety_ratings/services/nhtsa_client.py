"""
NHTSA SafetyRatings API client.

Provides async methods to:
- Fetch the 5-star rating for a (year, make, model)
- Enumerate model years, makes and models (used by discovery)

Features:
- Async HTTP client with connection pooling
- Client-side rate limiting
- Hard per-request timeout; transport failures surface as NetworkError
- Enumeration responses memoized in the ephemeral cache
"""

import asyncio
import logging
import re
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from safety_ratings.core.config import settings
from safety_ratings.core.exceptions import NetworkError, NHTSARateLimitException
from safety_ratings.core.logging import get_logger, log_event, log_external_api_call
from safety_ratings.core.metrics import track_external_api_call
from safety_ratings.db.redis_cache import CachePrefix, CacheTTL, RatingCache, makes_key, models_key
from safety_ratings.services.records import RATING_FIELDS, RatingRecord, RatingSource

_RATING_PATTERN = re.compile(r"^\d+(\.\d+)?$")

# Provider field -> record field
FIELD_MAP = {
    "OverallRating": "overall_rating",
    "OverallFrontCrashRating": "front_crash",
    "OverallSideCrashRating": "side_crash",
    "RolloverRating": "rollover",
    "VehiclePicture": "vehicle_picture",
    "VehicleId": "vehicle_id",
    "VehicleDescription": "description",
    "ModelYear": "year",
}


def normalize_rating(value: Any) -> Optional[float]:
    """
    Convert a provider rating to a star value.

    "Not Rated", "", None, "0" and any other non-numeric or out-of-range
    value become None; "2.5" -> 2.5, "5" -> 5.0.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not _RATING_PATTERN.match(text):
            return None
        number = float(text)
    if 1.0 <= number <= 5.0:
        return number
    return None


def _safe_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def parse_result(result: Dict[str, Any], year: int, make: str, model: str) -> RatingRecord:
    """Map one provider result object onto a RatingRecord."""
    fields: Dict[str, Any] = {}
    for provider_field, record_field in FIELD_MAP.items():
        value = result.get(provider_field)
        if record_field in RATING_FIELDS:
            fields[record_field] = normalize_rating(value)
        elif record_field in ("vehicle_id", "year"):
            fields[record_field] = _safe_int(value)
        else:
            fields[record_field] = str(value).strip() if value not in (None, "") else None

    return RatingRecord(
        year=fields.pop("year") or year,
        make=make,
        model=model,
        raw_data=result,
        source=RatingSource.API,
        **fields,
    )


def _has_rating_fields(result: Dict[str, Any]) -> bool:
    return any(key in result for key in ("OverallRating", "OverallFrontCrashRating", "RolloverRating"))


class SafetyRatingsClient:
    """
    Async client for the NHTSA SafetyRatings API.

    ``fetch_rating`` returns None for "the provider has nothing" (non-200,
    empty Results) and raises NetworkError for "could not ask".
    """

    # Rate limiting window
    RATE_LIMIT_WINDOW = 1.0  # seconds

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        requests_per_second: int | None = None,
        cache: RatingCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: API root, defaults to settings.NHTSA_API_BASE_URL
            timeout: Per-request timeout in seconds
            requests_per_second: Client-side rate limit
            cache: Ephemeral cache for enumeration responses
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = (base_url or settings.NHTSA_API_BASE_URL).rstrip("/")
        self._timeout = timeout or settings.NHTSA_API_TIMEOUT
        self._requests_per_second = requests_per_second or settings.NHTSA_REQUESTS_PER_SECOND
        self._cache = cache
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._request_timestamps: list[float] = []
        self._rate_limit_lock = asyncio.Lock()
        self.logger = logger or get_logger(__name__)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
                headers={
                    "User-Agent": f"{settings.PROJECT_NAME}/{settings.VERSION}",
                    "Accept": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def _check_rate_limit(self) -> None:
        """Check and enforce rate limiting."""
        async with self._rate_limit_lock:
            now = time.monotonic()
            self._request_timestamps = [
                ts for ts in self._request_timestamps if now - ts < self.RATE_LIMIT_WINDOW
            ]
            if len(self._request_timestamps) >= self._requests_per_second:
                sleep_time = self.RATE_LIMIT_WINDOW - (now - self._request_timestamps[0])
                if sleep_time > 0:
                    self.logger.debug(f"Rate limit reached, sleeping for {sleep_time:.2f}s")
                    await asyncio.sleep(sleep_time)
            self._request_timestamps.append(time.monotonic())

    async def _get_results(self, path: str, endpoint: str) -> Optional[List[Dict[str, Any]]]:
        """
        GET ``path`` and return its ``Results`` list.

        Returns:
            The list (possibly empty), or None on a non-200 answer.

        Raises:
            NetworkError: transport, DNS, TLS or timeout failure
            NHTSARateLimitException: the provider answered 429
        """
        await self._check_rate_limit()
        client = await self._get_client()
        url = f"{self.base_url}{path}"
        start = time.time()

        with track_external_api_call("nhtsa_ratings", endpoint) as ctx:
            try:
                response = await client.get(url)
            except httpx.TransportError as e:
                log_external_api_call(
                    "nhtsa_ratings", endpoint, "GET", 0, (time.time() - start) * 1000,
                    success=False, error=str(e) or type(e).__name__,
                )
                raise NetworkError(url=url, original_error=e) from e
            ctx["status_code"] = response.status_code

        log_external_api_call(
            "nhtsa_ratings", endpoint, "GET", response.status_code, (time.time() - start) * 1000,
            success=response.status_code == 200,
        )

        if response.status_code == 429:
            retry_after = _safe_int(response.headers.get("Retry-After")) or 60
            raise NHTSARateLimitException(retry_after=retry_after)

        if response.status_code != 200:
            return None

        try:
            data = response.json()
        except ValueError:
            self.logger.warning(f"Undecodable response from {endpoint}")
            return None

        results = data.get("Results") if isinstance(data, dict) else None
        return results if isinstance(results, list) else []

    # =========================================================================
    # Ratings
    # =========================================================================

    async def fetch_rating(self, year: int, make: str, model: str) -> Optional[RatingRecord]:
        """
        Fetch the rating for a vehicle from the live API.

        Returns:
            RatingRecord (possibly without ratings) or None when the provider
            has no entry.

        Raises:
            NetworkError: when the provider could not be reached
        """
        path = f"/modelyear/{year}/make/{quote(make, safe='')}/model/{quote(model, safe='')}"
        results = await self._get_results(path, "modelyear_make_model")
        if not results:
            log_event(
                self.logger,
                logging.INFO,
                "live_fetch_empty",
                f"No NHTSA data for {year} {make} {model}",
                year=year,
                make=make,
                model=model,
            )
            return None

        first = results[0]
        vehicle_id = _safe_int(first.get("VehicleId"))
        if vehicle_id is not None and not _has_rating_fields(first):
            detail = await self._fetch_vehicle_detail(vehicle_id)
            if detail is not None:
                first = {**first, **detail}

        record = parse_result(first, year, make, model)
        log_event(
            self.logger,
            logging.INFO,
            "live_fetch_success",
            f"Fetched NHTSA data for {year} {make} {model}",
            year=year,
            make=make,
            model=model,
            overall_rating=record.overall_rating,
            vehicle_id=record.vehicle_id,
        )
        return record

    async def _fetch_vehicle_detail(self, vehicle_id: int) -> Optional[Dict[str, Any]]:
        """Rating detail for a provider vehicle id; failures keep the summary result."""
        try:
            results = await self._get_results(f"/VehicleId/{vehicle_id}", "vehicle_id")
        except NetworkError as e:
            self.logger.warning(f"Vehicle detail lookup failed for {vehicle_id}: {e.message}")
            return None
        return results[0] if results else None

    # =========================================================================
    # Enumeration
    # =========================================================================

    async def _cached_list(self, key: str, ttl: int, path: str, endpoint: str, field: str) -> List[Any]:
        if self._cache is not None:
            cached = await self._cache.get_json(key)
            if cached is not None:
                return list(cached)

        results = await self._get_results(path, endpoint)
        if results is None:
            return []

        values: List[Any] = []
        for item in results:
            value = item.get(field)
            if value not in (None, "") and value not in values:
                values.append(value)

        if self._cache is not None and values:
            await self._cache.set_json(key, values, ttl)
        return values

    async def get_model_years(self) -> List[int]:
        years = await self._cached_list(
            CachePrefix.MODEL_YEARS, CacheTTL.MODEL_YEARS, "/modelyear", "modelyear", "ModelYear"
        )
        return [int(y) for y in years if _safe_int(y) is not None]

    async def get_makes(self, year: int) -> List[str]:
        return await self._cached_list(
            makes_key(year), CacheTTL.MAKES, f"/modelyear/{year}", "modelyear_make", "Make"
        )

    async def get_models(self, year: int, make: str) -> List[str]:
        return await self._cached_list(
            models_key(year, make),
            CacheTTL.MODELS,
            f"/modelyear/{year}/make/{quote(make, safe='')}",
            "modelyear_make_models",
            "Model",
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SafetyRatingsClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
