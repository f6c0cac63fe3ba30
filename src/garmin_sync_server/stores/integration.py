"""Integration record store.

All writes to an integration row are targeted field-level UPDATEs so
concurrent writers (a token refresh in one process, a reconnect in another)
never overwrite each other's columns. Lease and token writes are committed
immediately: other processes must see them right away.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import Select, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from garmin_sync_server.core.database import dialect_insert
from garmin_sync_server.core.security import TokenEncryption
from garmin_sync_server.models.base import as_utc, generate_uuid, utcnow
from garmin_sync_server.models.integration import GARMIN_PROVIDER, Integration

logger = structlog.get_logger()


@dataclass
class IntegrationRecord:
    """Decrypted view of an integration row handed to the rest of the service."""

    id: str
    user_id: str
    provider_user_id: str
    access_token: str
    refresh_token: str | None
    token_expires_at: datetime | None
    refresh_token_expires_at: datetime | None
    refresh_lock_until: datetime | None
    refresh_token_invalid: bool
    is_active: bool
    last_synced_at: datetime | None = None


class IntegrationStore:
    """Read and update Garmin integrations."""

    def __init__(self, session: AsyncSession, encryption: TokenEncryption) -> None:
        self.session = session
        self.encryption = encryption
        self.logger = logger.bind(component="integration_store")

    def _to_record(self, row: Integration) -> IntegrationRecord:
        return IntegrationRecord(
            id=row.id,
            user_id=row.user_id,
            provider_user_id=row.provider_user_id,
            access_token=self.encryption.decrypt(row.access_token_encrypted),
            refresh_token=(
                self.encryption.decrypt(row.refresh_token_encrypted)
                if row.refresh_token_encrypted
                else None
            ),
            token_expires_at=as_utc(row.token_expires_at),
            refresh_token_expires_at=as_utc(row.refresh_token_expires_at),
            refresh_lock_until=as_utc(row.refresh_lock_until),
            refresh_token_invalid=row.refresh_token_invalid,
            is_active=row.is_active,
            last_synced_at=as_utc(row.last_synced_at),
        )

    async def _fetch_one(self, stmt: Select[Any]) -> IntegrationRecord | None:
        # populate_existing so a re-read after another writer's commit sees fresh values
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        row = result.scalar_one_or_none()
        return self._to_record(row) if row else None

    async def get(self, integration_id: str) -> IntegrationRecord | None:
        """Load an integration by its primary key."""
        return await self._fetch_one(select(Integration).where(Integration.id == integration_id))

    async def get_for_user(self, user_id: str) -> IntegrationRecord | None:
        """Load the user's Garmin integration."""
        return await self._fetch_one(
            select(Integration).where(
                Integration.user_id == user_id,
                Integration.provider == GARMIN_PROVIDER,
            )
        )

    async def find_by_provider_user_id(self, provider_user_id: str) -> IntegrationRecord | None:
        """Resolve a Garmin user ID (from a push) to an active integration."""
        return await self._fetch_one(
            select(Integration).where(
                Integration.provider == GARMIN_PROVIDER,
                Integration.provider_user_id == provider_user_id,
                Integration.is_active.is_(True),
            )
        )

    async def save_connection(
        self,
        user_id: str,
        provider_user_id: str,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
        refresh_token_expires_at: datetime | None = None,
    ) -> IntegrationRecord:
        """Store tokens from a completed OAuth connection.

        Reconnecting replaces the tokens and clears both the lease and the
        invalid flag, which is what lifts a ``reconnect_required`` state.
        """
        now = utcnow()
        token_values = {
            "provider_user_id": provider_user_id,
            "access_token_encrypted": self.encryption.encrypt(access_token),
            "refresh_token_encrypted": (
                self.encryption.encrypt(refresh_token) if refresh_token else None
            ),
            "token_expires_at": token_expires_at,
            "refresh_token_expires_at": refresh_token_expires_at,
            "refresh_lock_until": None,
            "refresh_token_invalid": False,
            "is_active": True,
            "updated_at": now,
        }
        stmt = dialect_insert(self.session, Integration).values(
            id=generate_uuid(),
            user_id=user_id,
            provider=GARMIN_PROVIDER,
            created_at=now,
            **token_values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "provider"],
            set_=token_values,
        )
        await self.session.execute(stmt)
        await self.session.commit()

        record = await self.get_for_user(user_id)
        assert record is not None
        self.logger.info("Garmin connection saved", user_id=user_id, integration_id=record.id)
        return record

    async def try_acquire_refresh_lease(
        self, integration_id: str, now: datetime, lease_seconds: int
    ) -> bool:
        """Take the refresh lease if nobody holds an unexpired one.

        A single conditional UPDATE; the row count says whether we won.
        """
        stmt = (
            update(Integration)
            .where(
                Integration.id == integration_id,
                or_(
                    Integration.refresh_lock_until.is_(None),
                    Integration.refresh_lock_until < now,
                ),
            )
            .values(refresh_lock_until=now + timedelta(seconds=lease_seconds))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount == 1

    async def save_refreshed_tokens(
        self,
        integration_id: str,
        access_token: str,
        refresh_token: str,
        token_expires_at: datetime,
        refresh_token_expires_at: datetime | None,
    ) -> None:
        """Persist a successful refresh and release the lease.

        Raises:
            SQLAlchemyError: If the write fails (after rolling back)
        """
        values = {
            "access_token_encrypted": self.encryption.encrypt(access_token),
            "refresh_token_encrypted": self.encryption.encrypt(refresh_token),
            "token_expires_at": token_expires_at,
            "refresh_lock_until": None,
            "refresh_token_invalid": False,
            "updated_at": utcnow(),
        }
        if refresh_token_expires_at is not None:
            values["refresh_token_expires_at"] = refresh_token_expires_at

        await self._update(integration_id, values)

    async def mark_refresh_token_invalid(self, integration_id: str) -> None:
        """Flag the refresh token as rejected and release the lease."""
        await self._update(
            integration_id,
            {"refresh_token_invalid": True, "refresh_lock_until": None, "updated_at": utcnow()},
        )

    async def release_refresh_lease(self, integration_id: str) -> None:
        """Release the lease without touching tokens."""
        await self._update(integration_id, {"refresh_lock_until": None})

    async def touch_last_synced(
        self, integration_id: str, synced_at: datetime | None = None
    ) -> None:
        """Record that data for this integration was just written."""
        await self._update(integration_id, {"last_synced_at": synced_at or utcnow()})

    async def _update(self, integration_id: str, values: dict[str, Any]) -> None:
        stmt = (
            update(Integration)
            .where(Integration.id == integration_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            raise
