"""Garmin push ingestion.

Garmin delivers pushes as batches keyed by data type, often hundreds of
records per call. Every record is processed on its own: a malformed record
or a failed write is classified, logged and counted as skipped, and the
rest of the batch carries on. Each write commits independently, so one bad
record never rolls back its neighbours. Records that failed for a transient
reason (database errors, lock contention) are also queued in
``push_retries`` and replayed later; Garmin never redelivers them.

Health data types (dailies, sleeps, bodyComps, stressDetails, hrv) merge
into the daily ``health_metrics`` row. Activity data types are normalized
into ``activities``; health pseudo-activities and too-short movements are
diverted to health metric extraction instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from garmin_sync_server.core.security import TokenEncryption, get_token_encryption
from garmin_sync_server.models.activation import ActivationStep
from garmin_sync_server.models.base import utcnow
from garmin_sync_server.services.activation import ActivationService
from garmin_sync_server.services.backfill import BackfillService
from garmin_sync_server.services.error_handler import (
    IntegrationError,
    IntegrationErrorHandler,
    retry_delay_seconds,
)
from garmin_sync_server.stores.activity import ActivityStore
from garmin_sync_server.stores.health_metric import HealthMetricStore
from garmin_sync_server.stores.integration import IntegrationRecord, IntegrationStore
from garmin_sync_server.stores.push_retry import PushRetryStore
from garmin_sync_server.transformers import fields
from garmin_sync_server.transformers.activity import ActivityTransformer, activity_start_seconds
from garmin_sync_server.transformers.filters import (
    has_minimum_activity_metrics,
    should_filter_activity_type,
)
from garmin_sync_server.transformers.health import HEALTH_TRANSFORMERS, ActivityHealthTransformer

logger = structlog.get_logger()

HEALTH_DATA_TYPES = tuple(HEALTH_TRANSFORMERS)
ACTIVITY_DATA_TYPES = ("activities", "manuallyUpdatedActivities", "activityDetails")


@dataclass
class PushBatchResult:
    """Outcome of one pushed batch.

    Attributes:
        data_type: Garmin data type key of the batch
        processed: Records that resulted in a write
        skipped: Records that were ignored or failed
        queued: Failed records queued for a later retry (also counted as skipped)
        results: One line per record describing what happened
    """

    data_type: str
    processed: int = 0
    skipped: int = 0
    queued: int = 0
    results: list[str] = field(default_factory=list)

    def add(self, processed: bool, message: str) -> None:
        if processed:
            self.processed += 1
        else:
            self.skipped += 1
        self.results.append(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "queued": self.queued,
            "results": self.results,
        }


class _PushProcessorBase:
    """Shared user resolution and per-record isolation."""

    def __init__(
        self,
        session: AsyncSession,
        encryption: TokenEncryption | None = None,
        error_handler: IntegrationErrorHandler | None = None,
        queue_retries: bool = True,
    ) -> None:
        self.session = session
        self.integrations = IntegrationStore(session, encryption or get_token_encryption())
        self.health_metrics = HealthMetricStore(session)
        self.retries = PushRetryStore(session)
        self.error_handler = error_handler or IntegrationErrorHandler()
        # Replays report failures to their caller instead of queueing again
        self.queue_retries = queue_retries

    async def _resolve(self, record: Any) -> tuple[str, IntegrationRecord | None]:
        """Find the integration a record belongs to.

        Raises:
            TypeError: If the record is not an object
            ValueError: If the record has no userId
        """
        if not isinstance(record, dict):
            raise TypeError(f"Record must be an object, got {type(record).__name__}")
        garmin_user_id = record.get(fields.USER_ID)
        if not garmin_user_id:
            raise ValueError("Record has no userId")
        garmin_user_id = str(garmin_user_id)
        return garmin_user_id, await self.integrations.find_by_provider_user_id(garmin_user_id)

    async def _record_failure(
        self, batch: PushBatchResult, exception: Exception, record: Any
    ) -> None:
        context: dict[str, Any] = {"data_type": batch.data_type}
        if isinstance(record, dict):
            context["garmin_user_id"] = record.get(fields.USER_ID)
            context["calendar_date"] = record.get(fields.CALENDAR_DATE)
        error = self.error_handler.classify(exception, context=context)

        if isinstance(exception, SQLAlchemyError):
            # Leave the session usable for the rest of the batch
            await self.session.rollback()

        if (
            self.queue_retries
            and error.is_transient
            and isinstance(record, dict)
            and await self._queue_retry(batch.data_type, record, error)
        ):
            batch.queued += 1
            batch.add(False, f"error: {error.message} (queued for retry)")
            return
        batch.add(False, f"error: {error.message}")

    async def _queue_retry(
        self, data_type: str, record: dict[str, Any], error: IntegrationError
    ) -> bool:
        garmin_user_id = record.get(fields.USER_ID)
        next_retry_at = utcnow() + timedelta(seconds=retry_delay_seconds(error, 0))
        try:
            await self.retries.enqueue(
                data_type,
                record,
                str(garmin_user_id) if garmin_user_id else None,
                error.message,
                next_retry_at,
            )
        except SQLAlchemyError:
            logger.exception(
                "Failed to queue push record for retry",
                data_type=data_type,
                garmin_user_id=garmin_user_id,
            )
            return False

        logger.info(
            "Push record queued for retry",
            data_type=data_type,
            garmin_user_id=garmin_user_id,
            next_retry_at=next_retry_at.isoformat(),
        )
        return True

    async def _mark_synced(self, integration: IntegrationRecord) -> None:
        try:
            await self.integrations.touch_last_synced(integration.id)
        except SQLAlchemyError:
            # The data itself is stored; only the timestamp is stale
            logger.exception("Failed to update last_synced_at", integration_id=integration.id)

    async def extract_and_save_health_metrics(self, user_id: str, activity: dict[str, Any]) -> bool:
        """Derive health metrics from an activity payload and merge them.

        Returns:
            True if anything was written
        """
        update = ActivityHealthTransformer.transform(activity)
        if not update:
            return False
        saved = await self.health_metrics.upsert(user_id, update)
        if saved:
            logger.info(
                "Health metrics extracted from activity",
                user_id=user_id,
                metric_date=update.metric_date.isoformat(),
                **update.values,
            )
        return saved


class HealthPushProcessor(_PushProcessorBase):
    """Process pushed health summaries into daily health metrics."""

    def __init__(
        self,
        session: AsyncSession,
        encryption: TokenEncryption | None = None,
        error_handler: IntegrationErrorHandler | None = None,
        queue_retries: bool = True,
    ) -> None:
        super().__init__(session, encryption, error_handler, queue_retries)
        self.logger = logger.bind(service="health_push")

    async def process_push_batch(self, data_type: str, records: list[Any]) -> PushBatchResult:
        """Process one batch of health records.

        Never raises for a bad record; see PushBatchResult for the outcome.

        Args:
            data_type: Garmin data type key (dailies, sleeps, ...)
            records: Records from the push body

        Returns:
            Counts and per-record results
        """
        batch = PushBatchResult(data_type=data_type)
        transformer = HEALTH_TRANSFORMERS.get(data_type)
        if transformer is None:
            self.logger.info("Unhandled health data type", data_type=data_type)
            for _ in records:
                batch.add(False, f"skipped (unhandled type): {data_type}")
            return batch

        self.logger.info("Processing health push", data_type=data_type, records=len(records))

        for record in records:
            try:
                processed, message = await self.process_record(data_type, record)
                batch.add(processed, message)
            except Exception as e:
                await self._record_failure(batch, e, record)

        self.logger.info(
            "Health push processed",
            data_type=data_type,
            processed=batch.processed,
            skipped=batch.skipped,
        )
        return batch

    async def process_record(self, data_type: str, record: Any) -> tuple[bool, str]:
        """Process a single health record.

        Returns:
            Whether anything was written, and a one-line description

        Raises:
            Exception: Anything the record triggers; the batch loop classifies it
        """
        transformer = HEALTH_TRANSFORMERS[data_type]
        garmin_user_id, integration = await self._resolve(record)
        if integration is None:
            self.logger.warning("No integration for Garmin user", garmin_user_id=garmin_user_id)
            return False, f"skipped (no integration): {garmin_user_id}"

        update = transformer.transform(record)
        label = f"{data_type} {update.metric_date.isoformat()}"
        if not update:
            return False, f"{label}: no usable values"

        await self.health_metrics.upsert(integration.user_id, update)
        await self._mark_synced(integration)
        return True, f"{label}: {update.describe()}"


class ActivityIngestionService(_PushProcessorBase):
    """Process pushed activity summaries."""

    def __init__(
        self,
        session: AsyncSession,
        encryption: TokenEncryption | None = None,
        error_handler: IntegrationErrorHandler | None = None,
        queue_retries: bool = True,
    ) -> None:
        super().__init__(session, encryption, error_handler, queue_retries)
        self.activities = ActivityStore(session)
        self.backfill = BackfillService(session, error_handler=self.error_handler)
        self.activation = ActivationService(session)
        self.logger = logger.bind(service="activity_ingestion")

    async def process_activity_batch(
        self, records: list[Any], source: str = "webhook", data_type: str = "activities"
    ) -> PushBatchResult:
        """Process one batch of activity summaries.

        Args:
            records: Activity summaries from the push body
            source: Stored as ``imported_from``
            data_type: Garmin data type key, for reporting

        Returns:
            Counts and per-record results
        """
        batch = PushBatchResult(data_type=data_type)
        self.logger.info("Processing activity push", data_type=data_type, records=len(records))

        for record in records:
            try:
                processed, message = await self.process_activity(record, source)
                batch.add(processed, message)
            except Exception as e:
                await self._record_failure(batch, e, record)

        self.logger.info(
            "Activity push processed",
            data_type=data_type,
            processed=batch.processed,
            skipped=batch.skipped,
        )
        return batch

    async def process_activity(self, record: Any, source: str = "webhook") -> tuple[bool, str]:
        """Process a single activity summary.

        Returns:
            Whether anything was written, and a one-line description
        """
        garmin_user_id, integration = await self._resolve(record)
        if integration is None:
            self.logger.warning("No integration for Garmin user", garmin_user_id=garmin_user_id)
            return False, f"skipped (no integration): {garmin_user_id}"

        user_id = integration.user_id
        activity_type = record.get(fields.ACTIVITY_TYPE)

        if should_filter_activity_type(activity_type):
            saved = await self.extract_and_save_health_metrics(user_id, record)
            if saved:
                await self._mark_synced(integration)
            outcome = "metrics saved" if saved else "no metrics"
            return saved, f"health activity {activity_type}: {outcome}"

        if not has_minimum_activity_metrics(record):
            saved = await self.extract_and_save_health_metrics(user_id, record)
            if saved:
                await self._mark_synced(integration)
            return saved, f"filtered (too short): {activity_type or 'unknown'}"

        activity = ActivityTransformer.transform(record, user_id, source)
        activity_id, created = await self.activities.upsert(activity)
        await self._mark_synced(integration)
        label = f"activity {activity['provider_activity_id']}"
        if not created:
            return True, f"{label}: updated"

        # Only newly created activities count, so re-delivery never double counts
        start = activity_start_seconds(record)
        in_backfill = (
            await self.backfill.record_activity_delivery(user_id, start)
            if start is not None
            else False
        )
        if not in_backfill:
            await self.activation.complete_activation_step(user_id, ActivationStep.FIRST_SYNC)
            await self.activation.enqueue_insight(user_id, activity_id)

        self.logger.info(
            "Activity imported",
            user_id=user_id,
            activity_id=activity_id,
            type=activity["type"],
            in_backfill=in_backfill,
        )
        return True, f"{label}: imported"
