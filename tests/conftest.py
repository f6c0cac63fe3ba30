"""Shared test fixtures."""

import os

from cryptography.fernet import Fernet

# Settings are read at import time; configure before the package is imported
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("GARMIN_CLIENT_ID", "test-client-id")
os.environ.setdefault("GARMIN_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("BACKFILL_REQUEST_DELAY_SECONDS", "0")
os.environ.setdefault("TOKEN_LOCK_WAIT_SECONDS", "0")

from collections.abc import AsyncIterator  # noqa: E402
from datetime import UTC, datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from garmin_sync_server.core.security import TokenEncryption, get_token_encryption  # noqa: E402
from garmin_sync_server.models.base import Base  # noqa: E402
from garmin_sync_server.stores.integration import IntegrationRecord, IntegrationStore  # noqa: E402

GARMIN_USER_ID = "garmin-user-001"
LOCAL_USER_ID = "local-user-001"


@pytest.fixture
async def async_engine() -> AsyncIterator[AsyncEngine]:
    """Create async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Enable foreign keys for SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def async_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Create async session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def encryption() -> TokenEncryption:
    """The process-wide token cipher (keyed from ENCRYPTION_KEY)."""
    return get_token_encryption()


@pytest.fixture
def integration_store(async_session: AsyncSession, encryption: TokenEncryption) -> IntegrationStore:
    return IntegrationStore(async_session, encryption)


@pytest.fixture
async def connected_integration(integration_store: IntegrationStore) -> IntegrationRecord:
    """A Garmin integration whose access token is valid for another 2 days."""
    return await integration_store.save_connection(
        user_id=LOCAL_USER_ID,
        provider_user_id=GARMIN_USER_ID,
        access_token="access-token-fresh",
        refresh_token="refresh-token-1",
        token_expires_at=datetime.now(UTC) + timedelta(days=2),
    )


@pytest.fixture
async def expiring_integration(integration_store: IntegrationStore) -> IntegrationRecord:
    """A Garmin integration whose access token expires in an hour."""
    return await integration_store.save_connection(
        user_id=LOCAL_USER_ID,
        provider_user_id=GARMIN_USER_ID,
        access_token="access-token-old",
        refresh_token="refresh-token-1",
        token_expires_at=datetime.now(UTC) + timedelta(hours=1),
    )
