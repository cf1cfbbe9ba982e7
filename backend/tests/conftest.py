"""Shared test fixtures for all test groups."""

import os

# Set before any app import: get_settings() is cached on first use
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("SUBSCRIPTION_FETCH_DELAY_SECONDS", "0")
os.environ.setdefault("METRICS_ENABLED", "false")

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.db.base import Base
from app.services.entitlement_store import EntitlementStore, WebhookEventLog
from tests.fakes import FakeProcessor


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    """SQLite test engine in a temp file.

    Also sets the global session factory so code calling
    get_session_factory() (provisioning, route dependencies) shares it.
    """
    import app.db.base as db_mod

    # Import all models so metadata is populated
    import app.db.models  # noqa: F401

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    db_mod._engine = engine
    db_mod._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    yield engine

    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory) -> EntitlementStore:
    return EntitlementStore(session_factory)


@pytest.fixture
def event_log(session_factory) -> WebhookEventLog:
    return WebhookEventLog(session_factory)


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()
