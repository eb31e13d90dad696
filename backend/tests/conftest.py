"""
Test Configuration — Fixtures for the async archival database and fixed clocks.

The archival repository commits each transition, so every test gets its own
in-memory SQLite database instead of a rolled-back savepoint.
"""

from datetime import datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from core.clock import FixedClock
from db.session import create_schema
import db.models  # noqa: F401  registers tables on Base.metadata

# StaticPool keeps a single connection so the in-memory database survives
# across sessions opened from the same engine.
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Nightly retention run used by every fixed clock.
RUN_START = datetime(2026, 3, 2, 2, 0, 0)


@pytest.fixture
async def test_engine():
    """Create a test database engine and build all tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    """Async session bound to the per-test database."""
    session = AsyncSession(bind=test_engine, expire_on_commit=False)
    yield session
    await session.close()


@pytest.fixture
def clock():
    """Clock frozen at the nightly retention run."""
    return FixedClock(RUN_START)
