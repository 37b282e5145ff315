"""
Pytest configuration and fixtures for the safety ratings pipeline tests.
"""

import os
import sys
from pathlib import Path

# Add backend to path for imports
backend_path = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_path))

# Set environment variables for testing BEFORE any imports
# These need to be set before the modules are imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("EMAIL_DEMO_MODE", "true")
os.environ.setdefault("BATCH_API_DELAY_MS", "0")
os.environ.setdefault("NHTSA_REQUESTS_PER_SECOND", "1000")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("ENVIRONMENT", "testing")

from typing import Any, Optional
from urllib.parse import unquote

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from safety_ratings.context import AppContext
from safety_ratings.core.config import Settings
from safety_ratings.db.postgres.models import Base
from safety_ratings.db.postgres.session import create_session_factory
from safety_ratings.db.redis_cache import InMemoryCacheBackend, RatingCache
from safety_ratings.services.nhtsa_client import SafetyRatingsClient
from safety_ratings.services.notifier import OperatorNotifier
from safety_ratings.services.store import DurableStore

API_BASE_URL = "https://api.nhtsa.test/SafetyRatings"
CSV_URL = "https://static.nhtsa.test/downloads/Safercar_data.csv"

CSV_HEADER = "MAKE,MODEL,MODEL_YR,BODY_STYLE,OVERALL_STARS,FRNT_STARS,SIDE_STARS,ROLLOVER_STARS\n"


class NHTSAStub:
    """
    Fake NHTSA SafetyRatings API for ``httpx.MockTransport``.

    Unknown paths answer 200 with an empty ``Results`` list, the way the
    provider answers for vehicles it has never rated.
    """

    def __init__(self) -> None:
        self.responses: dict[str, tuple[int, Any]] = {}
        self.failing: set[str] = set()
        self.calls: list[str] = []

    @staticmethod
    def rating_path(year: int, make: str, model: str) -> str:
        return f"/SafetyRatings/modelyear/{year}/make/{make}/model/{model}"

    def add_rating(self, year: int, make: str, model: str, **fields: Any) -> None:
        result = {
            "OverallRating": "Not Rated",
            "OverallFrontCrashRating": "Not Rated",
            "OverallSideCrashRating": "Not Rated",
            "RolloverRating": "Not Rated",
            "VehicleDescription": f"{year} {make} {model}",
        }
        result.update(fields)
        self.responses[self.rating_path(year, make, model)] = (200, {"Count": 1, "Results": [result]})

    def add_models(self, year: int, make: str, models: list[str]) -> None:
        self.responses[f"/SafetyRatings/modelyear/{year}/make/{make}"] = (
            200,
            {"Count": len(models), "Results": [{"ModelYear": year, "Make": make, "Model": m} for m in models]},
        )

    def add_response(self, path: str, status_code: int, body: Any = None) -> None:
        self.responses[path] = (status_code, body if body is not None else {})

    def fail(self, path: str) -> None:
        self.failing.add(path)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = unquote(request.url.path)
        self.calls.append(path)
        if path in self.failing:
            raise httpx.ConnectError("connection refused", request=request)
        status_code, body = self.responses.get(path, (200, {"Count": 0, "Results": []}))
        return httpx.Response(status_code, json=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class CsvServerStub:
    """Fake static file host serving the Safercar CSV."""

    def __init__(self, body: str = CSV_HEADER, last_modified: Optional[str] = "Mon, 05 Oct 2026 08:00:00 GMT"):
        self.body = body
        self.last_modified = last_modified
        self.head_fails = False
        self.get_status = 200
        self.requests: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.method)
        headers = {"Last-Modified": self.last_modified} if self.last_modified else {}
        if request.method == "HEAD":
            if self.head_fails:
                raise httpx.ConnectTimeout("timed out", request=request)
            return httpx.Response(200, headers=headers)
        if self.get_status != 200:
            return httpx.Response(self.get_status, headers=headers)
        return httpx.Response(200, headers=headers, content=self.body.encode("utf-8"))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings wired for in-process tests."""
    return Settings(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        CACHE_BACKEND="memory",
        NHTSA_API_BASE_URL=API_BASE_URL,
        NHTSA_CSV_URL=CSV_URL,
        NHTSA_REQUESTS_PER_SECOND=1000,
        CSV_CACHE_DIR=str(tmp_path / "csv"),
        BATCH_API_DELAY_MS=0,
        SCHEDULER_ENABLED=False,
        EMAIL_DEMO_MODE=True,
    )


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine with every table created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def store(engine) -> DurableStore:
    return DurableStore(create_session_factory(engine))


@pytest.fixture
def cache() -> RatingCache:
    return RatingCache(InMemoryCacheBackend(), rating_ttl=3600)


@pytest.fixture
def nhtsa() -> NHTSAStub:
    return NHTSAStub()


@pytest.fixture
def csv_server() -> CsvServerStub:
    return CsvServerStub()


@pytest_asyncio.fixture
async def client(nhtsa, cache):
    """Live fetch client talking to the NHTSA stub."""
    client = SafetyRatingsClient(
        base_url=API_BASE_URL,
        timeout=5.0,
        requests_per_second=1000,
        cache=cache,
        transport=nhtsa.transport,
    )
    yield client
    await client.close()


@pytest.fixture
def make_csv(tmp_path):
    """Factory writing a Safercar-style CSV file under tmp_path."""

    def write(rows: list[str], name: str = "Safercar_data.csv", header: str = CSV_HEADER) -> Path:
        path = tmp_path / name
        path.write_text(header + "".join(f"{row}\n" for row in rows), encoding="utf-8")
        return path

    return write


@pytest_asyncio.fixture
async def app_context(test_settings, engine, nhtsa, csv_server):
    """Fully wired pipeline over the test engine and the HTTP stubs."""
    ctx = AppContext.build(
        settings=test_settings,
        engine=engine,
        cache_backend=InMemoryCacheBackend(),
        api_transport=nhtsa.transport,
        csv_transport=csv_server.transport,
        notifier=OperatorNotifier(recipient=None, demo_mode=True),
    )
    yield ctx
    await ctx.client.close()
