"""Pytest fixtures for loglens tests."""

import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from loglens.core.config import Settings
from loglens.db.base import Base
from loglens.schemas.log_record import LogRecord

# In-memory SQLite by default; point at PostgreSQL to exercise the partial index for real
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Controllable clock passed to services in place of utc_now."""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def _settings(**overrides) -> Settings:
    """Settings isolated from the developer's .env file."""
    return Settings(_env_file=None, **overrides)


def _record(**fields) -> LogRecord:
    fields.setdefault("timestamp", BASE_TIME)
    fields.setdefault("message", "request handled")
    return LogRecord(**fields)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> Settings:
    return _settings()


@pytest.fixture
def make_settings():
    return _settings


@pytest.fixture
def make_record():
    return _record


@pytest_asyncio.fixture(scope="function")
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine with a clean schema."""
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_async_engine(
            TEST_DATABASE_URL,
            echo=False,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)

    # Register models on the metadata
    import loglens.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def base_time() -> datetime:
    return BASE_TIME
