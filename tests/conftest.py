"""
Shared test fixtures.

Uses an in-memory SQLite database (via aiosqlite) so tests run without
Docker / PostgreSQL / Redis.  The production models are plain SQLAlchemy
types, so the real tables are created as-is.  Redis-backed collaborators are
replaced by the in-process change feed and ``AsyncMock`` notification sinks.
"""

from datetime import datetime, timezone
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from src.infrastructure.change_feed import InMemoryChangeFeed
from src.infrastructure.database import Base, make_session_factory
from src.infrastructure.repositories import BookingRepository
from src.services.history import StatusHistoryRecorder
from src.services.payments import PaymentWebhookReconciler
from src.services.status_sync import StatusSynchronizer

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"
WEBHOOK_SECRET = "whsec_test_secret"


# ── Database ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create tables on a fresh in-memory database, then drop everything."""
    # One shared connection, otherwise every checkout sees an empty database
    engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def make_booking(session_factory):
    """Insert a booking with sensible defaults; keyword arguments override them."""

    async def _make(**fields):
        fields.setdefault("passenger_id", "passenger-1")
        async with session_factory() as session, session.begin():
            booking = await BookingRepository(session).create(**fields)
        return booking

    return _make


# ── Services ──────────────────────────────────────────────────────────


@pytest.fixture
def feed():
    return InMemoryChangeFeed()


@pytest.fixture
def notifier():
    sink = AsyncMock()
    sink.notify = AsyncMock(return_value=None)
    return sink


@pytest.fixture
def recorder(session_factory, feed):
    return StatusHistoryRecorder(session_factory, feed)


@pytest.fixture
def synchronizer(session_factory, recorder, feed):
    return StatusSynchronizer(session_factory, recorder, feed)


@pytest.fixture
def webhook_secret():
    return WEBHOOK_SECRET


@pytest.fixture
def reconciler(session_factory, recorder, feed, notifier, webhook_secret):
    return PaymentWebhookReconciler(
        session_factory,
        secret=webhook_secret,
        recorder=recorder,
        feed=feed,
        notifier=notifier,
    )


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
