"""
Application context.

Builds every pipeline component once, wires them together and owns
their shutdown. The FastAPI app, the CLI and the scheduler all work
through one ``AppContext`` instead of module-level singletons.
"""

import logging
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from safety_ratings.core.config import Settings, get_settings
from safety_ratings.core.logging import get_logger, log_event
from safety_ratings.core.metrics import set_sync_metrics
from safety_ratings.db.postgres.models import Base
from safety_ratings.db.postgres.session import check_database_connection, create_engine, create_session_factory
from safety_ratings.db.redis_cache import CacheBackend, RatingCache, create_cache_backend
from safety_ratings.services.batch_worker import BatchResult, BatchWorker
from safety_ratings.services.csv_importer import CsvImporter, CsvSyncResult
from safety_ratings.services.discovery import VehicleDiscovery
from safety_ratings.services.health import HealthReporter, ValidationReport
from safety_ratings.services.nhtsa_client import SafetyRatingsClient
from safety_ratings.services.notifier import OperatorNotifier
from safety_ratings.services.resolver import RatingResolver
from safety_ratings.services.store import DurableStore


class AppContext:
    """Container for the wired pipeline; also the scheduler's task set."""

    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine,
        cache: RatingCache,
        store: DurableStore,
        client: SafetyRatingsClient,
        importer: CsvImporter,
        resolver: RatingResolver,
        worker: BatchWorker,
        discovery: VehicleDiscovery,
        notifier: OperatorNotifier,
        reporter: HealthReporter,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings
        self.engine = engine
        self.cache = cache
        self.store = store
        self.client = client
        self.importer = importer
        self.resolver = resolver
        self.worker = worker
        self.discovery = discovery
        self.notifier = notifier
        self.reporter = reporter
        self.logger = logger or get_logger(__name__)

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        engine: Optional[AsyncEngine] = None,
        cache_backend: Optional[CacheBackend] = None,
        api_transport: Optional[httpx.AsyncBaseTransport] = None,
        csv_transport: Optional[httpx.AsyncBaseTransport] = None,
        notifier: Optional[OperatorNotifier] = None,
    ) -> "AppContext":
        """
        Wire the pipeline.

        Tests pass an aiosqlite engine, an in-memory cache backend and
        ``httpx.MockTransport`` instances; production uses the defaults.
        """
        settings = settings or get_settings()
        engine = engine or create_engine(settings.DATABASE_URL)
        session_factory = create_session_factory(engine)

        cache = RatingCache(
            cache_backend or create_cache_backend(settings.CACHE_BACKEND, settings.REDIS_URL),
            rating_ttl=settings.EPHEMERAL_TTL_HOURS * 3600,
        )
        store = DurableStore(session_factory, logger=get_logger("safety_ratings.store"))
        client = SafetyRatingsClient(
            base_url=settings.NHTSA_API_BASE_URL,
            timeout=settings.NHTSA_API_TIMEOUT,
            requests_per_second=settings.NHTSA_REQUESTS_PER_SECOND,
            cache=cache,
            transport=api_transport,
        )
        importer = CsvImporter(
            store,
            cache,
            csv_url=settings.NHTSA_CSV_URL,
            cache_dir=settings.CSV_CACHE_DIR,
            transport=csv_transport,
        )
        resolver = RatingResolver(cache, store, client, api_ttl_hours=settings.API_RATING_TTL_HOURS)
        worker = BatchWorker(
            store,
            resolver,
            client,
            cache,
            api_delay_ms=settings.BATCH_API_DELAY_MS,
            lease_seconds=settings.BATCH_LEASE_SECONDS,
        )
        notifier = notifier or OperatorNotifier(
            recipient=settings.ALERT_EMAIL,
            demo_mode=settings.EMAIL_DEMO_MODE,
            api_key=settings.RESEND_API_KEY,
            sender=settings.EMAIL_FROM,
        )

        return cls(
            settings=settings,
            engine=engine,
            cache=cache,
            store=store,
            client=client,
            importer=importer,
            resolver=resolver,
            worker=worker,
            discovery=VehicleDiscovery(store, client),
            notifier=notifier,
            reporter=HealthReporter(store, notifier),
        )

    async def create_schema(self) -> None:
        """Create missing tables; development and test databases only."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def check_database(self) -> bool:
        return await check_database_connection(self.store.session_factory)

    async def check_cache(self) -> bool:
        return await self.cache.backend.ping()

    async def close(self) -> None:
        await self.client.close()
        await self.cache.close()
        await self.engine.dispose()
        self.logger.info("Application context closed")

    # =========================================================================
    # Scheduled tasks
    # =========================================================================

    async def run_csv_sync(self) -> CsvSyncResult:
        return await self.importer.sync()

    async def run_validate(self) -> ValidationReport:
        return await self.reporter.validate_sync()

    async def run_cleanup(self) -> dict[str, Any]:
        """
        Daily maintenance tick.

        Refreshes the sync gauges and reports expiry counts. Rating rows
        are left in place: expired rows back the stale tier.
        """
        stats = await self.store.aggregate_stats()
        set_sync_metrics(stats.model_dump(), stats.coverage)
        cache = await self.store.cache_stats()
        log_event(
            self.logger,
            logging.INFO,
            "cleanup_complete",
            f"Cleanup tick: {cache['expired_entries']} expired ratings kept for stale lookups",
            expired=cache["expired_entries"],
            coverage=stats.coverage,
        )
        return {"removed": 0, "expired": cache["expired_entries"], "sync": stats.as_dict()}

    async def purge_expired(self) -> dict[str, Any]:
        """Operator action: delete every expired rating row."""
        removed = await self.store.cleanup_expired()
        log_event(
            self.logger,
            logging.WARNING,
            "expired_ratings_purged",
            f"Removed {removed} expired ratings",
            removed=removed,
        )
        return {"removed": removed}

    async def run_batch(self) -> BatchResult:
        return await self.worker.fetch_pending_batch(self.settings.BATCH_SIZE)
