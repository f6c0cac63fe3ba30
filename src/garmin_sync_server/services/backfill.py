"""Backfill chunk orchestrator.

Garmin only accepts bounded ranges per backfill request and answers
asynchronously: a 202 means "queued", and the activities arrive later
through the push webhook. A multi-year history is therefore split into
calendar-month windows (chunks), requested one at a time with a delay
between requests, and each chunk is tracked as a small state machine:

    pending/failed --request--> requested | already_processed | failed
    requested --pushes--> (activity_count grows, status unchanged)
    requested --stale sweep--> received

Silence is treated as completion: a chunk still ``requested`` after the
stale window has received everything Garmin is going to send.
"""

from __future__ import annotations

import asyncio
import calendar
from datetime import UTC, datetime, timedelta
from typing import NamedTuple

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from garmin_sync_server.core.config import settings
from garmin_sync_server.exceptions import GarminAPIError, RateLimitError
from garmin_sync_server.models.backfill_chunk import ChunkStatus
from garmin_sync_server.models.base import as_utc, utcnow
from garmin_sync_server.schemas.backfill import (
    BackfillProgress,
    BackfillSummary,
    ChunkError,
    ChunkProgress,
)
from garmin_sync_server.services.error_handler import IntegrationErrorHandler
from garmin_sync_server.services.garmin_client import GarminClient
from garmin_sync_server.stores.backfill import BackfillChunkStore

logger = structlog.get_logger()


class ChunkTarget(NamedTuple):
    """The parts of a chunk the request loop needs."""

    id: str
    start_timestamp: int
    end_timestamp: int
    label: str


def shift_months(moment: datetime, months: int) -> datetime:
    """Move a datetime by whole calendar months, clamping the day to the month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def start_of_utc_day(moment: datetime | None = None) -> datetime:
    """Midnight UTC of the given moment (default: now)."""
    moment = moment or utcnow()
    return moment.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)


def generate_backfill_chunks(
    years_back: int,
    now: datetime,
    chunk_months: int | None = None,
    max_years: int | None = None,
) -> list[tuple[datetime, datetime]]:
    """Split ``[now - years_back, now]`` into contiguous calendar-month windows.

    Pure and deterministic: the same arguments always give the same windows.
    Windows share boundaries (one window's end is the next one's start) and
    the last window is truncated to ``now``.

    Args:
        years_back: Years of history to cover, capped at ``max_years``
        now: End of the horizon
        chunk_months: Months per window (default from settings, 2)
        max_years: Garmin's maximum lookback (default from settings, 5)

    Returns:
        List of (start, end) tuples, oldest first

    Raises:
        ValueError: If years_back or chunk_months is less than 1
    """
    chunk_months = chunk_months or settings.backfill_chunk_months
    max_years = max_years or settings.backfill_max_years
    if years_back < 1:
        raise ValueError(f"years_back must be at least 1, got {years_back}")
    if chunk_months < 1:
        raise ValueError(f"chunk_months must be at least 1, got {chunk_months}")

    years = min(years_back, max_years)
    return split_into_windows(shift_months(now, -12 * years), now, chunk_months)


def split_into_windows(
    start: datetime, end: datetime, chunk_months: int
) -> list[tuple[datetime, datetime]]:
    """Split ``[start, end]`` into ``chunk_months`` windows, the last truncated to ``end``."""
    windows: list[tuple[datetime, datetime]] = []
    window_start = start
    step = 0
    while window_start < end:
        step += 1
        # Always shift from the start so day clamping never drifts
        window_end = min(shift_months(start, step * chunk_months), end)
        windows.append((window_start, window_end))
        window_start = window_end

    return windows


class BackfillService:
    """Create, request and reconcile backfill chunks for users."""

    def __init__(
        self,
        session: AsyncSession,
        client: GarminClient | None = None,
        error_handler: IntegrationErrorHandler | None = None,
        request_delay_seconds: float | None = None,
    ) -> None:
        """Initialize backfill service.

        Args:
            session: Database session
            client: Garmin client (only needed for start_backfill)
            error_handler: Classifier for failed requests
            request_delay_seconds: Delay between chunk requests (default from settings)
        """
        self.store = BackfillChunkStore(session)
        self.client = client
        self.error_handler = error_handler or IntegrationErrorHandler()
        self.request_delay_seconds = (
            settings.backfill_request_delay_seconds
            if request_delay_seconds is None
            else request_delay_seconds
        )
        self.logger = logger.bind(service="backfill")

    async def create_chunks(
        self, user_id: str, years_back: int | None = None, now: datetime | None = None
    ) -> int:
        """Create chunk rows for a user, skipping windows that already exist.

        ``now`` defaults to the start of the current UTC day so repeated runs
        on the same day produce identical windows. A user who already has
        chunks keeps their horizon: later runs only add windows after the
        newest chunk end and, for a longer ``years_back``, before the oldest
        chunk start. Existing ranges are never covered twice.

        Returns:
            Number of chunks newly created
        """
        years_back = years_back or settings.backfill_default_years
        now = now or start_of_utc_day()
        windows = generate_backfill_chunks(years_back, now)

        horizon = await self.store.get_horizon(user_id)
        if horizon is not None:
            windows = self._extend_horizon(horizon, windows[0][0], now)
        created = await self.store.insert_chunks(user_id, windows)

        self.logger.info(
            "Backfill chunks created",
            user_id=user_id,
            years_back=years_back,
            windows=len(windows),
            created=created,
        )
        return created

    @staticmethod
    def _extend_horizon(
        horizon: tuple[int, int], wanted_start: datetime, now: datetime
    ) -> list[tuple[datetime, datetime]]:
        """Windows needed to stretch an existing horizon to ``[wanted_start, now]``."""
        chunk_months = settings.backfill_chunk_months
        oldest_start = datetime.fromtimestamp(horizon[0], UTC)
        newest_end = datetime.fromtimestamp(horizon[1], UTC)

        windows: list[tuple[datetime, datetime]] = []
        if wanted_start < oldest_start:
            windows.extend(split_into_windows(wanted_start, oldest_start, chunk_months))
        if newest_end < now:
            windows.extend(split_into_windows(newest_end, now, chunk_months))
        return windows

    async def start_backfill(
        self,
        user_id: str,
        access_token: str,
        years_back: int | None = None,
        now: datetime | None = None,
    ) -> BackfillSummary:
        """Create chunks and request every pending or failed one from Garmin.

        Requests go out one at a time, oldest first, with a fixed delay in
        between. A 401 stops the loop (the token is dead, further requests
        would only burn rate limit); any other failure is recorded on the
        chunk and the loop moves on.

        Args:
            user_id: Local user ID
            access_token: Valid Garmin access token
            years_back: Years of history (default from settings)
            now: Horizon end (default: start of today, UTC)

        Returns:
            Summary of the run
        """
        if self.client is None:
            raise RuntimeError("BackfillService needs a GarminClient to request chunks")

        created = await self.create_chunks(user_id, years_back, now)
        targets = [
            ChunkTarget(c.id, c.start_timestamp, c.end_timestamp, c.range_label)
            for c in await self.store.list_requestable(user_id)
        ]

        summary = BackfillSummary(user_id=user_id, total=len(targets), chunks_created=created)
        log = self.logger.bind(user_id=user_id)
        log.info("Starting backfill requests", chunks=len(targets))

        for index, target in enumerate(targets):
            if index > 0 and self.request_delay_seconds > 0:
                await asyncio.sleep(self.request_delay_seconds)

            try:
                response = await self.client.request_backfill(
                    access_token, target.start_timestamp, target.end_timestamp
                )
            except httpx.HTTPError as e:
                error = self.error_handler.classify(
                    e, context={"user_id": user_id, "chunk_id": target.id}
                )
                await self._record_failure(summary, target, error.message, None)
                continue

            if response.accepted:
                await self.store.mark_requested(target.id)
                summary.requested += 1
                log.debug("Chunk requested", range=target.label)
            elif response.status_code == 409:
                await self.store.mark_already_processed(target.id)
                summary.already_processed += 1
                log.debug("Chunk already processed", range=target.label)
            elif response.status_code == 401:
                await self._record_failure(
                    summary, target, "Unauthorized: access token rejected", 401
                )
                summary.unauthorized = True
                log.warning(
                    "Backfill aborted, Garmin rejected the access token",
                    remaining=len(targets) - index - 1,
                )
                break
            else:
                error = self.error_handler.classify(
                    _response_error(response.status_code, response.body),
                    context={"user_id": user_id, "chunk_id": target.id},
                )
                await self._record_failure(summary, target, error.message, response.status_code)

        log.info(
            "Backfill requests complete",
            requested=summary.requested,
            already_processed=summary.already_processed,
            failed=summary.failed,
            unauthorized=summary.unauthorized,
        )
        return summary

    async def _record_failure(
        self,
        summary: BackfillSummary,
        target: ChunkTarget,
        message: str,
        status_code: int | None,
    ) -> None:
        await self.store.mark_failed(target.id, message)
        summary.failed += 1
        summary.errors.append(
            ChunkError(
                chunk_id=target.id, range=target.label, status_code=status_code, error=message
            )
        )

    async def record_activity_delivery(self, user_id: str, start_timestamp: int) -> bool:
        """Credit a delivered activity to the requested chunk covering its start time.

        The chunk stays ``requested``: more pushes for the same window may
        still be on their way.
        """
        updated = await self.store.record_delivery(user_id, start_timestamp)
        if updated:
            self.logger.debug(
                "Backfill delivery recorded", user_id=user_id, start_timestamp=start_timestamp
            )
        return updated

    async def mark_stale_chunks_received(
        self, user_id: str | None = None, max_age: timedelta | None = None
    ) -> int:
        """Mark chunks requested longer than ``max_age`` ago as received.

        Args:
            user_id: Limit to one user (default: all users)
            max_age: Staleness window (default from settings, 24h)

        Returns:
            Number of chunks marked received
        """
        max_age = max_age or timedelta(hours=settings.backfill_stale_after_hours)
        count = await self.store.mark_stale_received(utcnow() - max_age, user_id)
        if count:
            self.logger.info("Stale backfill chunks marked received", count=count, user_id=user_id)
        return count

    async def reset_failed_chunks(self, user_id: str) -> int:
        """Move failed chunks back to pending for the next run."""
        count = await self.store.reset_failed(user_id)
        self.logger.info("Failed backfill chunks reset", user_id=user_id, count=count)
        return count

    async def get_progress(self, user_id: str) -> BackfillProgress:
        """Counts per status, activities received and completion percentage."""
        chunks = await self.store.list_for_user(user_id)
        progress = BackfillProgress(user_id=user_id, total=len(chunks))
        if not chunks:
            return progress

        counters = {
            ChunkStatus.PENDING.value: "pending",
            ChunkStatus.REQUESTED.value: "requested",
            ChunkStatus.RECEIVED.value: "received",
            ChunkStatus.ALREADY_PROCESSED.value: "already_processed",
            ChunkStatus.FAILED.value: "failed",
        }
        completed = 0
        for chunk in chunks:
            attribute = counters.get(chunk.status)
            if attribute:
                setattr(progress, attribute, getattr(progress, attribute) + 1)
            progress.activities_received += chunk.activity_count or 0
            progress.chunks.append(
                ChunkProgress(
                    id=chunk.id,
                    chunk_start=as_utc(chunk.chunk_start),
                    chunk_end=as_utc(chunk.chunk_end),
                    status=chunk.status,
                    is_complete=chunk.is_complete,
                    activity_count=chunk.activity_count,
                    retry_count=chunk.retry_count,
                    requested_at=as_utc(chunk.requested_at),
                    received_at=as_utc(chunk.received_at),
                    error_message=chunk.error_message,
                )
            )
            if chunk.is_complete:
                completed += 1

        # Half-up rounding: 12.5% reports as 13
        progress.percent_complete = int(completed * 100 / progress.total + 0.5)
        progress.oldest_chunk = as_utc(chunks[0].chunk_start)
        progress.newest_chunk = as_utc(chunks[-1].chunk_end)
        return progress


def _response_error(status_code: int, body: str) -> GarminAPIError:
    """Wrap a non-success backfill response for classification."""
    endpoint = "backfill/activities"
    if status_code == 429:
        return RateLimitError(
            "Backfill request rate limited",
            endpoint=endpoint,
            response_body=body,
        )
    return GarminAPIError(
        f"Backfill request failed with HTTP {status_code}",
        endpoint=endpoint,
        status_code=status_code,
        response_body=body,
    )
