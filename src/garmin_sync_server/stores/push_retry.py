"""Push retry queue store.

Rows are only ever moved between statuses with targeted UPDATEs, so a
replay run and a new push can both write to the queue without locking.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.expression import Executable

from garmin_sync_server.models.base import generate_uuid, utcnow
from garmin_sync_server.models.push_retry import PushRetry, PushRetryStatus

ERROR_MESSAGE_MAX_LENGTH = 1000


class PushRetryStore:
    """Persistence for queued push records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def enqueue(
        self,
        data_type: str,
        payload: dict[str, Any],
        garmin_user_id: str | None,
        error_message: str,
        next_retry_at: datetime,
    ) -> str:
        """Queue a pushed record for a later retry.

        Returns:
            ID of the queued row
        """
        now = utcnow()
        retry_id = generate_uuid()
        stmt = insert(PushRetry).values(
            id=retry_id,
            data_type=data_type,
            garmin_user_id=garmin_user_id,
            payload=payload,
            status=PushRetryStatus.PENDING.value,
            retry_count=0,
            next_retry_at=next_retry_at,
            process_error=error_message[:ERROR_MESSAGE_MAX_LENGTH],
            created_at=now,
            updated_at=now,
        )
        await self._execute_and_commit(stmt)
        return retry_id

    async def list_due(self, now: datetime, limit: int) -> list[PushRetry]:
        """Pending rows whose retry time has come, oldest first."""
        result = await self.session.execute(
            select(PushRetry)
            .where(
                PushRetry.status == PushRetryStatus.PENDING.value,
                PushRetry.next_retry_at <= now,
            )
            .order_by(PushRetry.created_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_by_status(self, status: PushRetryStatus) -> list[PushRetry]:
        """All rows in one status, oldest first."""
        result = await self.session.execute(
            select(PushRetry)
            .where(PushRetry.status == status.value)
            .order_by(PushRetry.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def mark_processed(self, retry_id: str) -> None:
        """The replay went through."""
        now = utcnow()
        await self._update(
            retry_id,
            status=PushRetryStatus.PROCESSED.value,
            retry_count=PushRetry.retry_count + 1,
            process_error=None,
            processed_at=now,
            updated_at=now,
        )

    async def schedule_retry(
        self, retry_id: str, retry_count: int, next_retry_at: datetime, error_message: str
    ) -> None:
        """Record a failed replay and when to try again."""
        await self._update(
            retry_id,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
            process_error=error_message[:ERROR_MESSAGE_MAX_LENGTH],
            updated_at=utcnow(),
        )

    async def mark_abandoned(self, retry_id: str, retry_count: int, error_message: str) -> None:
        """Give up on a row; it is kept for inspection."""
        await self._update(
            retry_id,
            status=PushRetryStatus.ABANDONED.value,
            retry_count=retry_count,
            process_error=error_message[:ERROR_MESSAGE_MAX_LENGTH],
            updated_at=utcnow(),
        )

    async def abandon_expired(self, cutoff: datetime) -> int:
        """Abandon pending rows queued before ``cutoff``.

        Returns:
            Number of rows abandoned
        """
        stmt = (
            update(PushRetry)
            .where(
                PushRetry.status == PushRetryStatus.PENDING.value,
                PushRetry.created_at < cutoff,
            )
            .values(status=PushRetryStatus.ABANDONED.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._execute_and_commit(stmt)
        return result.rowcount or 0

    async def _update(self, retry_id: str, **values: object) -> None:
        stmt = (
            update(PushRetry)
            .where(PushRetry.id == retry_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._execute_and_commit(stmt)

    async def _execute_and_commit(self, stmt: Executable) -> Any:
        try:
            result = await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            raise
        return result
