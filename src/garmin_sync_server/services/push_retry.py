"""Replay of push records that failed transiently.

A pushed record that hit a database error or lock contention is queued
in ``push_retries`` by the push processors. This service replays due rows
through the same processors:

    success                         -> processed
    transient failure, tries left   -> rescheduled with exponential backoff
    permanent failure or tries out  -> abandoned, last error kept
    queued longer than max age      -> abandoned without another attempt

It runs from the reconcile scheduler, the jobs endpoint and the CLI.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, NamedTuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from garmin_sync_server.core.config import settings
from garmin_sync_server.models.base import utcnow
from garmin_sync_server.schemas.push_retry import PushRetrySummary
from garmin_sync_server.services.error_handler import (
    IntegrationErrorHandler,
    retry_delay_seconds,
)
from garmin_sync_server.services.webhook_processor import (
    ACTIVITY_DATA_TYPES,
    HEALTH_DATA_TYPES,
    ActivityIngestionService,
    HealthPushProcessor,
)
from garmin_sync_server.stores.push_retry import PushRetryStore

logger = structlog.get_logger()


class QueuedPush(NamedTuple):
    """The parts of a queued row a replay needs."""

    id: str
    data_type: str
    payload: dict[str, Any]
    retry_count: int


class PushRetryService:
    """Replay queued push records with exponential backoff."""

    def __init__(
        self,
        session: AsyncSession,
        error_handler: IntegrationErrorHandler | None = None,
        max_attempts: int | None = None,
        max_age_hours: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        """Initialize push retry service.

        Limits default to the corresponding settings.

        Args:
            session: Database session
            error_handler: Classifier for failed replays
            max_attempts: Retries before a row is abandoned
            max_age_hours: Rows queued longer than this are abandoned
            batch_size: Rows replayed per run
        """
        self.session = session
        self.store = PushRetryStore(session)
        self.error_handler = error_handler or IntegrationErrorHandler()
        self.max_attempts = max_attempts or settings.push_retry_max_attempts
        self.max_age = timedelta(hours=max_age_hours or settings.push_retry_max_age_hours)
        self.batch_size = batch_size or settings.push_retry_batch_size
        self.health = HealthPushProcessor(
            session, error_handler=self.error_handler, queue_retries=False
        )
        self.activities = ActivityIngestionService(
            session, error_handler=self.error_handler, queue_retries=False
        )
        self.logger = logger.bind(service="push_retry")

    async def retry_due(self, now: datetime | None = None) -> PushRetrySummary:
        """Abandon expired rows, then replay every row whose retry time has come.

        Args:
            now: Reference time (default: now)

        Returns:
            Counts of what happened to each row
        """
        now = now or utcnow()
        summary = PushRetrySummary(
            expired=await self.store.abandon_expired(now - self.max_age),
        )
        due = [
            QueuedPush(r.id, r.data_type, r.payload, r.retry_count)
            for r in await self.store.list_due(now, self.batch_size)
        ]
        summary.due = len(due)

        for queued in due:
            log = self.logger.bind(retry_id=queued.id, data_type=queued.data_type)
            try:
                processed, message = await self._replay(queued)
            except Exception as e:
                await self._record_failure(summary, queued, e, now)
                continue

            await self.store.mark_processed(queued.id)
            summary.processed += 1
            log.info("Queued push record replayed", written=processed, result=message)

        if summary.due or summary.expired:
            self.logger.info("Push retry run complete", **summary.model_dump())
        return summary

    async def _replay(self, queued: QueuedPush) -> tuple[bool, str]:
        if queued.data_type in ACTIVITY_DATA_TYPES:
            return await self.activities.process_activity(queued.payload, source="webhook")
        if queued.data_type in HEALTH_DATA_TYPES:
            return await self.health.process_record(queued.data_type, queued.payload)
        raise ValueError(f"Unhandled data type: {queued.data_type}")

    async def _record_failure(
        self,
        summary: PushRetrySummary,
        queued: QueuedPush,
        exception: Exception,
        now: datetime,
    ) -> None:
        error = self.error_handler.classify(
            exception, context={"retry_id": queued.id, "data_type": queued.data_type}
        )
        if isinstance(exception, SQLAlchemyError):
            await self.session.rollback()

        attempts = queued.retry_count + 1
        if error.is_transient and attempts < self.max_attempts:
            next_retry_at = now + timedelta(seconds=retry_delay_seconds(error, attempts))
            await self.store.schedule_retry(queued.id, attempts, next_retry_at, error.message)
            summary.rescheduled += 1
            self.logger.warning(
                "Queued push record failed again",
                retry_id=queued.id,
                attempt=attempts,
                max_attempts=self.max_attempts,
                next_retry_at=next_retry_at.isoformat(),
            )
            return

        reason = (
            f"Max retries ({self.max_attempts}) exceeded. Last error: {error.message}"
            if error.is_transient
            else error.message
        )
        await self.store.mark_abandoned(queued.id, attempts, reason)
        summary.abandoned += 1
        self.logger.error("Queued push record abandoned", retry_id=queued.id, reason=reason)
