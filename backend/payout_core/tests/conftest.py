"""
Test configuration and fixtures for all tests.
"""

import os
import pytest
from uuid import uuid4
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.update({
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "SECRET_KEY": "test-secret-key-for-testing-minimum-32-characters-long",
    "WEBHOOK_SECRET": "test-webhook-secret-for-testing-minimum-32-characters",
    "WEBHOOK_TIMEOUT_SECONDS": "300",
    "RAIL_MODE": "mock",
    "RECONCILIATION_ENABLED": "false",
    "CORS_ALLOW_ORIGINS": '["http://localhost:3000"]',
    "APP_NAME": "Payout Processing Core Test",
    "DEBUG": "false",
    "LOG_LEVEL": "INFO"
})

from ..db.session import Base
from .. import models  # noqa: F401
from ..services.notifications import NotificationService
from ..services.rails.mock import MockRail
from ..services.rails.registry import RailRegistry
from .fixtures.api_fixtures import api_client, auth_headers, signed_webhook  # noqa: F401
from .fixtures.payout_fixtures import (  # noqa: F401
    bank_method,
    card_method,
    cash_pickup_method,
    crypto_method,
    international_method,
    make_method,
    make_payout,
)


@pytest.fixture
async def test_engine():
    """Create test database engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Session factory bound to the test engine, for code that opens its own sessions."""
    return async_sessionmaker(
        test_engine, class_=AsyncSession, autoflush=False, expire_on_commit=False
    )


@pytest.fixture
async def db_session(session_factory):
    """Create database session for tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def mock_rail():
    rail = MockRail(name="mock", hang_seconds=5.0)
    yield rail
    await rail.aclose()


@pytest.fixture
def rail_registry(mock_rail) -> RailRegistry:
    return RailRegistry.single(mock_rail)


@pytest.fixture
def notifier() -> NotificationService:
    """Notifier that records locally and never posts."""
    return NotificationService(webhook_url="")


@pytest.fixture
def user_id():
    return uuid4()
