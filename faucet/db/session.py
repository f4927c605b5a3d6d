"""
Database Session Management - Async SQLAlchemy session factory.

The PostgreSQL store owns one engine per process and disposes it on close().
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from faucet.config import Settings


def build_engine(config: Settings) -> AsyncEngine:
    """Create an engine from explicit settings (used by tests and the store factory)."""
    return create_async_engine(
        config.database_url,
        pool_size=config.database_pool_size,
        max_overflow=config.database_max_overflow,
        pool_timeout=config.database_pool_timeout,
        pool_recycle=config.database_pool_recycle,
        pool_pre_ping=True,
        echo=config.log_level == "DEBUG",
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to an engine; objects stay usable after commit."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

