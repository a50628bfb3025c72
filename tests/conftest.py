"""
Pytest configuration and shared fixtures.

Tests run against a throwaway SQLite file by default. Set TEST_DATABASE_URL
to a postgresql+asyncpg URL to run the same suite against PostgreSQL.
"""

import itertools
import os
from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from sync_coordinator.api.main import create_app
from sync_coordinator.clock import FrozenClock
from sync_coordinator.coordination.coordinator import SyncCoordinator
from sync_coordinator.coordination.lease_manager import LeaseManager
from sync_coordinator.coordination.ledger import RunLedger
from sync_coordinator.db import Base, create_session_factory, get_test_engine

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

# Fixed start time so expiry and throttle arithmetic are exact
START_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'coordination.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with a fresh schema."""
    engine = get_test_engine(database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return create_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session

        # Rollback any uncommitted changes
        await session.rollback()


@pytest.fixture
def clock() -> FrozenClock:
    """A clock that only moves when a test advances it."""
    return FrozenClock(START_TIME)


@pytest_asyncio.fixture
async def lease_manager(
    session_factory: async_sessionmaker[AsyncSession],
    clock: FrozenClock,
) -> AsyncGenerator[LeaseManager]:
    """Lease manager for a single simulated pod."""
    manager = LeaseManager(session_factory=session_factory, clock=clock)
    yield manager
    await manager.release_on_shutdown()


@pytest_asyncio.fixture
async def make_pod(session_factory: async_sessionmaker[AsyncSession], clock: FrozenClock):
    """
    Factory for extra simulated pods sharing the database and clock.

    Each pod gets its own LeaseManager and a recognizable holder id prefix.
    """
    pods: list[LeaseManager] = []

    def _make(name: str, **kwargs) -> LeaseManager:
        counter = itertools.count(1)
        manager = LeaseManager(
            session_factory=session_factory,
            clock=clock,
            holder_id_factory=lambda: f"{name}-{next(counter)}",
            **kwargs,
        )
        pods.append(manager)
        return manager

    yield _make

    for pod in pods:
        await pod.release_on_shutdown()


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession], clock: FrozenClock) -> RunLedger:
    """Run ledger on the test database."""
    return RunLedger(session_factory=session_factory, clock=clock)


@pytest.fixture
def coordinator(lease_manager: LeaseManager, ledger: RunLedger) -> SyncCoordinator:
    """Coordinator wired to the test lease manager and ledger."""
    return SyncCoordinator(lease_manager=lease_manager, ledger=ledger)


@pytest.fixture
def app(
    session_factory: async_sessionmaker[AsyncSession],
    lease_manager: LeaseManager,
    ledger: RunLedger,
    coordinator: SyncCoordinator,
) -> FastAPI:
    """Create a FastAPI app wired to the test database."""
    return create_app(
        session_factory=session_factory,
        lease_manager=lease_manager,
        ledger=ledger,
        coordinator=coordinator,
    )


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
