"""Backfill chunk store.

Chunk rows are never deleted; every status change is a conditional UPDATE
on the fields that transition owns, so the request loop and the push
processor can touch the same chunk without clobbering each other.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.expression import Executable

from garmin_sync_server.core.database import dialect_insert
from garmin_sync_server.models.backfill_chunk import BackfillChunk, ChunkStatus
from garmin_sync_server.models.base import generate_uuid, utcnow

# Statuses the request loop picks up
REQUESTABLE_STATUSES = (ChunkStatus.PENDING.value, ChunkStatus.FAILED.value)

ERROR_MESSAGE_MAX_LENGTH = 1000


class BackfillChunkStore:
    """Persistence for backfill chunks."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_chunks(
        self, user_id: str, windows: Iterable[tuple[datetime, datetime]]
    ) -> int:
        """Insert chunk windows, ignoring ones that already exist.

        Returns:
            Number of newly inserted chunks
        """
        now = utcnow()
        rows = [
            {
                "id": generate_uuid(),
                "user_id": user_id,
                "chunk_start": start,
                "chunk_end": end,
                "start_timestamp": int(start.timestamp()),
                "end_timestamp": int(end.timestamp()),
                "status": ChunkStatus.PENDING.value,
                "activity_count": 0,
                "retry_count": 0,
                "created_at": now,
                "updated_at": now,
            }
            for start, end in windows
        ]
        if not rows:
            return 0

        stmt = dialect_insert(self.session, BackfillChunk).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["user_id", "chunk_start", "chunk_end"])
        result = await self._execute_and_commit(stmt)
        return max(result.rowcount or 0, 0)

    async def list_for_user(self, user_id: str) -> list[BackfillChunk]:
        """All chunks for a user, oldest window first."""
        result = await self.session.execute(
            select(BackfillChunk)
            .where(BackfillChunk.user_id == user_id)
            .order_by(BackfillChunk.start_timestamp)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_horizon(self, user_id: str) -> tuple[int, int] | None:
        """Oldest chunk start and newest chunk end for a user, as epoch seconds."""
        result = await self.session.execute(
            select(
                func.min(BackfillChunk.start_timestamp),
                func.max(BackfillChunk.end_timestamp),
            ).where(BackfillChunk.user_id == user_id)
        )
        oldest_start, newest_end = result.one()
        if oldest_start is None:
            return None
        return int(oldest_start), int(newest_end)

    async def list_requestable(self, user_id: str) -> list[BackfillChunk]:
        """Pending and failed chunks, oldest window first."""
        result = await self.session.execute(
            select(BackfillChunk)
            .where(
                BackfillChunk.user_id == user_id,
                BackfillChunk.status.in_(REQUESTABLE_STATUSES),
            )
            .order_by(BackfillChunk.start_timestamp)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def mark_requested(self, chunk_id: str) -> None:
        """Garmin accepted the request; data will be pushed later."""
        now = utcnow()
        await self._update(
            chunk_id,
            status=ChunkStatus.REQUESTED.value,
            requested_at=now,
            error_message=None,
            updated_at=now,
        )

    async def mark_already_processed(self, chunk_id: str) -> None:
        """Garmin answered 409: this range was backfilled before."""
        now = utcnow()
        await self._update(
            chunk_id,
            status=ChunkStatus.ALREADY_PROCESSED.value,
            requested_at=now,
            error_message=None,
            updated_at=now,
        )

    async def mark_failed(self, chunk_id: str, error_message: str) -> None:
        """Record a failed request and bump the retry counter."""
        await self._update(
            chunk_id,
            status=ChunkStatus.FAILED.value,
            error_message=error_message[:ERROR_MESSAGE_MAX_LENGTH],
            retry_count=BackfillChunk.retry_count + 1,
            updated_at=utcnow(),
        )

    async def record_delivery(self, user_id: str, start_timestamp: int) -> bool:
        """Count a delivered activity against the requested chunk containing it.

        Windows share their boundaries, so a timestamp on a boundary is
        credited to the earlier chunk only.

        Returns:
            True if a requested chunk was updated
        """
        result = await self.session.execute(
            select(BackfillChunk.id)
            .where(
                BackfillChunk.user_id == user_id,
                BackfillChunk.status == ChunkStatus.REQUESTED.value,
                BackfillChunk.start_timestamp <= start_timestamp,
                BackfillChunk.end_timestamp >= start_timestamp,
            )
            .order_by(BackfillChunk.start_timestamp)
            .limit(1)
        )
        chunk_id = result.scalar_one_or_none()
        if chunk_id is None:
            return False

        now = utcnow()
        stmt = (
            update(BackfillChunk)
            .where(
                BackfillChunk.id == chunk_id,
                BackfillChunk.status == ChunkStatus.REQUESTED.value,
            )
            .values(
                activity_count=BackfillChunk.activity_count + 1,
                received_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        update_result = await self._execute_and_commit(stmt)
        return update_result.rowcount == 1

    async def mark_stale_received(self, cutoff: datetime, user_id: str | None = None) -> int:
        """Mark chunks requested before ``cutoff`` as received.

        Returns:
            Number of chunks transitioned
        """
        now = utcnow()
        stmt = update(BackfillChunk).where(
            BackfillChunk.status == ChunkStatus.REQUESTED.value,
            BackfillChunk.requested_at < cutoff,
        )
        if user_id is not None:
            stmt = stmt.where(BackfillChunk.user_id == user_id)
        stmt = stmt.values(
            status=ChunkStatus.RECEIVED.value,
            received_at=func.coalesce(BackfillChunk.received_at, now),
            updated_at=now,
        ).execution_options(synchronize_session=False)

        result = await self._execute_and_commit(stmt)
        return result.rowcount or 0

    async def reset_failed(self, user_id: str) -> int:
        """Move failed chunks back to pending so the next run retries them."""
        stmt = (
            update(BackfillChunk)
            .where(
                BackfillChunk.user_id == user_id,
                BackfillChunk.status == ChunkStatus.FAILED.value,
            )
            .values(
                status=ChunkStatus.PENDING.value,
                error_message=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._execute_and_commit(stmt)
        return result.rowcount or 0

    async def _update(self, chunk_id: str, **values: object) -> None:
        stmt = (
            update(BackfillChunk)
            .where(BackfillChunk.id == chunk_id)
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
