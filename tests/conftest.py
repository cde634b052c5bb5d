"""Shared fixtures: in-memory SQLite database, settings and retry policy."""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from nft_tracker.config import Settings
from nft_tracker.db.models import Base
from nft_tracker.db.store import SyncStore
from nft_tracker.worker.retry import RetryPolicy


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        admin_api_key="test-admin-key",
        marketplace_orders_url="https://orders.test/listed-orders",
        ownership_api_url="https://owners.test/owners/KASPUNKS",
        collection_ticker="KASPUNKS",
        feed_page_size=2,
        feed_max_pages=10,
        completed_orders_max_pages=5,
        ownership_max_pages=10,
        feed_page_delay_seconds=0,
        retry_max_attempts=3,
        retry_base_delay_seconds=0,
        retry_max_delay_seconds=0,
        sale_match_grace_seconds=300,
        listing_verification_sample_size=0,
        collection_total_supply=0,
        sync_enabled=True,
        sync_run_on_startup=False,
    )


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Fast retry policy: no real sleeping."""
    return RetryPolicy(max_attempts=3, base_delay=0, max_delay=0, sleep=AsyncMock())


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session_factory, retry_policy) -> SyncStore:
    return SyncStore(session_factory, retry_policy)
