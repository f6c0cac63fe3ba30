"""Tests for the in-process reconcile scheduler."""

from datetime import UTC, datetime, timedelta

from sqlalchemy import update

from garmin_sync_server.core.config import settings
from garmin_sync_server.models.backfill_chunk import BackfillChunk, ChunkStatus
from garmin_sync_server.models.push_retry import PushRetryStatus
from garmin_sync_server.services.backfill import BackfillService
from garmin_sync_server.services.scheduler import (
    ReconcileScheduler,
    get_scheduler,
    set_scheduler,
)
from garmin_sync_server.stores.push_retry import PushRetryStore


async def test_run_once_marks_stale_chunks(session_factory, async_session):
    """A sweep closes chunks that were requested longer ago than the stale window."""
    service = BackfillService(async_session)
    await service.create_chunks(
        "local-user-001", years_back=1, now=datetime(2025, 6, 1, tzinfo=UTC)
    )
    await async_session.execute(
        update(BackfillChunk).values(
            status=ChunkStatus.REQUESTED.value,
            requested_at=datetime.now(UTC) - timedelta(days=3),
        )
    )
    await async_session.commit()

    scheduler = ReconcileScheduler(session_factory)
    marked = await scheduler.run_once()

    assert marked == 6
    assert scheduler.last_run_at is not None
    assert scheduler.last_run_stats["marked_received"] == 6
    progress = await service.get_progress("local-user-001")
    assert progress.received == 6
    assert progress.percent_complete == 100


async def test_run_once_replays_queued_pushes(
    session_factory, async_session, connected_integration
):
    """The same run replays push records whose retry time has come."""
    store = PushRetryStore(async_session)
    await store.enqueue(
        "dailies",
        {
            "userId": "garmin-user-001",
            "calendarDate": "2025-05-01",
            "restingHeartRateInBeatsPerMinute": 50,
        },
        "garmin-user-001",
        "Database error: OperationalError",
        datetime.now(UTC) - timedelta(minutes=1),
    )

    scheduler = ReconcileScheduler(session_factory)
    await scheduler.run_once()

    assert scheduler.last_run_stats["pushes_replayed"] == 1
    assert scheduler.last_run_stats["pushes_abandoned"] == 0
    assert await store.list_by_status(PushRetryStatus.PENDING) == []


async def test_run_once_survives_failures():
    """A failing sweep is recorded, not raised."""

    def broken_factory():
        raise RuntimeError("database unavailable")

    scheduler = ReconcileScheduler(broken_factory)

    assert await scheduler.run_once() == 0
    assert scheduler.last_run_stats["error"] == "database unavailable"
    assert scheduler.last_run_at is None


async def test_disabled_by_default(session_factory):
    scheduler = ReconcileScheduler(session_factory)

    await scheduler.start()

    assert not scheduler.is_running
    assert scheduler.get_status()["enabled"] is False
    await scheduler.stop()


async def test_start_and_stop(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "reconcile_enabled", True)
    scheduler = ReconcileScheduler(session_factory)

    await scheduler.start()
    try:
        status = scheduler.get_status()
        assert status["is_running"] is True
        assert status["next_run_at"] is not None
        assert status["interval_minutes"] == settings.reconcile_interval_minutes
    finally:
        await scheduler.stop()

    assert not scheduler.is_running


async def test_global_scheduler(session_factory):
    scheduler = ReconcileScheduler(session_factory)

    set_scheduler(scheduler)
    try:
        assert get_scheduler() is scheduler
    finally:
        set_scheduler(None)

    assert get_scheduler() is None
