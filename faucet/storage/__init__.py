"""
Storage backends behind the capability interfaces.

create_store() picks the backend named by settings.storage_backend.
"""

import asyncio
from datetime import timedelta

from structlog import get_logger

from faucet.config import Settings
from faucet.storage.interfaces import FaucetStore
from faucet.storage.memory import MemoryStore

logger = get_logger(__name__)

__all__ = ["FaucetStore", "MemoryStore", "create_store"]


async def create_store(config: Settings) -> FaucetStore:
    """Connect the configured backend. Drivers are imported only when selected."""
    visibility_timeout = timedelta(seconds=config.queue_visibility_timeout_seconds)

    if config.storage_backend == "postgres":
        from faucet.db.migration_runner import run_migrations
        from faucet.db.session import build_engine
        from faucet.observability.tracing import instrument_sqlalchemy
        from faucet.storage.postgres import PostgresStore

        if config.run_migrations:
            await asyncio.to_thread(run_migrations, config.database_url)
        engine = build_engine(config)
        instrument_sqlalchemy(engine)
        store: FaucetStore = PostgresStore(engine, visibility_timeout)

    elif config.storage_backend == "mongodb":
        from faucet.storage.mongo import MongoStore

        store = await MongoStore.connect(
            config.mongodb_url,
            config.mongodb_database,
            visibility_timeout,
            timeout_ms=config.mongodb_timeout_ms,
        )

    else:
        store = MemoryStore(visibility_timeout)

    logger.info("store_connected", backend=store.backend_name)
    return store
