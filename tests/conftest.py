"""Pytest configuration and fixtures."""

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from delegate_vote_tracker.storage.database import DatabaseManager
from delegate_vote_tracker.storage.models import Base
from tests.factories import FakeClock, FakeRedis


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def db(async_engine) -> DatabaseManager:
    """Database manager bound to the in-memory engine."""
    return DatabaseManager("sqlite+aiosqlite:///:memory:", engine=async_engine)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
