"""
Process wiring.

Builds the storage backend, query engine, ingestion service and alert
lifecycle engine from settings, and manages the background scheduler.

Usage:
    async with lifespan() as app:
        await app.ingestion.ingest({"message": "disk full", "level": "ERROR"})
        result = await app.query_engine.search(Query(text="disk"))
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from loglens.core.config import Settings, settings
from loglens.core.logging import setup_logging
from loglens.core.redis import close_redis
from loglens.db.session import create_engine_from_settings, create_session_maker, init_models
from loglens.services.alert_lifecycle import AlertLifecycleEngine
from loglens.services.alert_scanner import AlertScanner
from loglens.services.ingestion import LogIngestionService
from loglens.services.notification import build_dispatcher
from loglens.services.query_engine import QueryEngine
from loglens.services.scheduler import SchedulerService
from loglens.services.storage import LogStorageAdapter, create_storage

logger = logging.getLogger(__name__)


@dataclass
class LogLens:
    config: Settings
    storage: LogStorageAdapter
    query_engine: QueryEngine
    ingestion: LogIngestionService
    alerts: AlertLifecycleEngine
    scanner: AlertScanner
    scheduler: SchedulerService
    db_engine: AsyncEngine

    async def close(self) -> None:
        await self.scanner.shutdown()
        await self.storage.close()
        await self.db_engine.dispose()


async def build_app(config: Settings | None = None) -> LogLens:
    """Create every service from settings; the scheduler is not started."""
    config = config or settings

    storage = await create_storage(config)

    db_engine = create_engine_from_settings(config.DATABASE_URL)
    await init_models(db_engine)
    session_maker = create_session_maker(db_engine)

    alerts = AlertLifecycleEngine(session_maker, config)
    scanner = AlertScanner(alerts, build_dispatcher(config), config)
    ingestion = LogIngestionService(storage, config)

    return LogLens(
        config=config,
        storage=storage,
        query_engine=QueryEngine(storage, config),
        ingestion=ingestion,
        alerts=alerts,
        scanner=scanner,
        scheduler=SchedulerService(scanner, ingestion, config),
        db_engine=db_engine,
    )


@asynccontextmanager
async def lifespan(config: Settings | None = None, start_scheduler: bool = True) -> AsyncIterator[LogLens]:
    """Manage startup and shutdown of the whole service."""
    setup_logging(config)

    app = await build_app(config)
    if start_scheduler:
        logger.info("Starting scheduler service")
        app.scheduler.start()

    try:
        yield app
    finally:
        if start_scheduler:
            logger.info("Stopping scheduler service")
            app.scheduler.stop()
        await app.close()
        await close_redis()
