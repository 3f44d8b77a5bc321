"""Select the storage backend named by STORAGE_BACKEND."""

import logging

from loglens.core.config import Settings, settings
from loglens.services.storage.base import LogStorageAdapter

logger = logging.getLogger(__name__)


async def create_storage(config: Settings | None = None) -> LogStorageAdapter:
    """Build and prepare the configured backend.

    Backends are imported lazily so a memory-only deployment never loads the
    database or search client stacks.
    """
    config = config or settings
    backend = config.STORAGE_BACKEND

    if backend == "memory":
        from loglens.services.storage.memory import MemoryLogStorage

        storage: LogStorageAdapter = MemoryLogStorage()

    elif backend == "relational":
        from loglens.db.session import create_engine_from_settings
        from loglens.services.storage.relational import RelationalLogStorage

        storage = RelationalLogStorage(create_engine_from_settings(config.DATABASE_URL))
        await storage.create_schema()

    elif backend == "opensearch":
        from loglens.services.storage.opensearch import OpenSearchLogStorage, create_client

        client = create_client(
            host=config.OPENSEARCH_HOST,
            port=config.OPENSEARCH_PORT,
            username=config.OPENSEARCH_USERNAME,
            password=config.OPENSEARCH_PASSWORD,
            use_ssl=config.OPENSEARCH_USE_SSL,
            verify_certs=config.OPENSEARCH_VERIFY_CERTS,
        )
        storage = OpenSearchLogStorage(client, config.OPENSEARCH_INDEX)
        await storage.ensure_index()

    else:
        raise ValueError(f"Unknown storage backend: {backend}")

    logger.info("Using %s storage backend", storage.name)
    return storage
