"""Async engine and session factories for the alert store and relational backend."""

import os

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from loglens.core.config import settings
from loglens.db.base import Base


def create_engine_from_settings(url: str | None = None) -> AsyncEngine:
    """Create the async engine; pool settings only apply to server databases."""
    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)

    # Configurable pool settings via environment variables
    pool_size = int(os.getenv("DATABASE_POOL_SIZE", "20"))
    max_overflow = int(os.getenv("DATABASE_MAX_OVERFLOW", "40"))

    return create_async_engine(
        url,
        echo=False,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Snapshots are read after commit, so instances must not expire
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create tables for all registered models."""
    import loglens.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
