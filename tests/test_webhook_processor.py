"""Tests for push ingestion: health batches and activity batches."""

from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from garmin_sync_server.models.activation import ActivationStep
from garmin_sync_server.models.base import as_utc
from garmin_sync_server.models.push_retry import PushRetryStatus
from garmin_sync_server.services.activation import ActivationService
from garmin_sync_server.services.backfill import BackfillService
from garmin_sync_server.services.webhook_processor import (
    ActivityIngestionService,
    HealthPushProcessor,
    PushBatchResult,
)
from garmin_sync_server.stores.activation import ActivationStore
from garmin_sync_server.stores.activity import ActivityStore
from garmin_sync_server.stores.health_metric import HealthMetricStore
from garmin_sync_server.stores.push_retry import PushRetryStore

GARMIN_USER_ID = "garmin-user-001"
LOCAL_USER_ID = "local-user-001"
DAY = "2025-05-01"

# 2024-06-01 07:00 UTC
RUN_START = 1717225200


def daily(**values) -> dict:
    return {"userId": GARMIN_USER_ID, "calendarDate": DAY, **values}


def run_activity(**overrides) -> dict:
    activity = {
        "userId": GARMIN_USER_ID,
        "summaryId": "run-1001",
        "activityType": "RUNNING",
        "startTimeInSeconds": RUN_START,
        "startTimeOffsetInSeconds": 3600,
        "durationInSeconds": 1800,
        "distanceInMeters": 5000.0,
        "averageHeartRateInBeatsPerMinute": 150,
        "maxHeartRateInBeatsPerMinute": 176,
        "activeKilocalories": 400,
    }
    activity.update(overrides)
    return activity


@pytest.fixture
def processor(async_session, encryption) -> HealthPushProcessor:
    return HealthPushProcessor(async_session, encryption)


@pytest.fixture
def ingestion(async_session, encryption) -> ActivityIngestionService:
    return ActivityIngestionService(async_session, encryption)


class TestPushBatchResult:
    def test_counts(self) -> None:
        batch = PushBatchResult(data_type="dailies")
        batch.add(True, "written")
        batch.add(False, "ignored")
        batch.add(True, "written")

        assert batch.to_dict() == {
            "processed": 2,
            "skipped": 1,
            "queued": 0,
            "results": ["written", "ignored", "written"],
        }


class TestHealthPush:
    """Health batches merge into one row per user per day."""

    async def test_daily_summary(self, processor, async_session, connected_integration) -> None:
        batch = await processor.process_push_batch(
            "dailies",
            [
                daily(
                    restingHeartRateInBeatsPerMinute=52,
                    averageStressLevel=60,
                    bodyBatteryChargedValue=70,
                )
            ],
        )

        assert batch.processed == 1
        assert batch.skipped == 0
        assert batch.results[0].startswith(f"dailies {DAY}:")

        row = await HealthMetricStore(async_session).get(LOCAL_USER_ID, date(2025, 5, 1))
        assert row.resting_hr == 52
        assert row.stress_level == 3
        assert row.body_battery == 70
        assert row.source == "garmin"

    async def test_types_merge_without_clobbering(
        self, processor, async_session, connected_integration
    ) -> None:
        await processor.process_push_batch(
            "dailies", [daily(restingHeartRateInBeatsPerMinute=52, averageStressLevel=60)]
        )
        await processor.process_push_batch(
            "sleeps",
            [daily(durationInSeconds=27000, overallSleepScore={"value": 85})],
        )
        await processor.process_push_batch("hrv", [daily(lastNightAvg=48.0)])
        # A later daily without resting HR keeps the earlier value
        await processor.process_push_batch("dailies", [daily(averageStressLevel=20)])

        row = await HealthMetricStore(async_session).get(LOCAL_USER_ID, date(2025, 5, 1))
        assert row.resting_hr == 52
        assert row.stress_level == 1
        assert row.sleep_hours == 7.5
        assert row.sleep_quality == 4
        assert row.hrv_ms == 48.0

    async def test_malformed_record_does_not_abort_batch(
        self, processor, async_session, connected_integration
    ) -> None:
        records = [
            {**daily(restingHeartRateInBeatsPerMinute=50), "calendarDate": "2025-05-01"},
            {**daily(restingHeartRateInBeatsPerMinute="fast"), "calendarDate": "2025-05-02"},
            {**daily(restingHeartRateInBeatsPerMinute=51), "calendarDate": "2025-05-03"},
            {**daily(restingHeartRateInBeatsPerMinute=53), "calendarDate": "2025-05-04"},
        ]

        batch = await processor.process_push_batch("dailies", records)

        assert batch.processed == 3
        assert batch.skipped == 1
        assert batch.results[1].startswith("error: Malformed record")

        store = HealthMetricStore(async_session)
        assert (await store.get(LOCAL_USER_ID, date(2025, 5, 4))).resting_hr == 53
        assert await store.get(LOCAL_USER_ID, date(2025, 5, 2)) is None

    @pytest.mark.parametrize(
        "record",
        [
            "not an object",
            {"calendarDate": DAY, "restingHeartRateInBeatsPerMinute": 50},
            {"userId": GARMIN_USER_ID, "restingHeartRateInBeatsPerMinute": 50},
            {"userId": GARMIN_USER_ID, "calendarDate": "01/05/2025"},
        ],
    )
    async def test_malformed_records_are_skipped(
        self, processor, connected_integration, record
    ) -> None:
        batch = await processor.process_push_batch("dailies", [record])

        assert batch.processed == 0
        assert batch.skipped == 1
        assert batch.results[0].startswith("error:")

    async def test_unknown_user(self, processor, connected_integration) -> None:
        batch = await processor.process_push_batch(
            "dailies", [{**daily(restingHeartRateInBeatsPerMinute=50), "userId": "stranger"}]
        )

        assert batch.skipped == 1
        assert batch.results == ["skipped (no integration): stranger"]

    async def test_unhandled_type(self, processor, connected_integration) -> None:
        batch = await processor.process_push_batch("epochs", [daily(), daily()])

        assert batch.processed == 0
        assert batch.skipped == 2
        assert batch.results[0] == "skipped (unhandled type): epochs"

    async def test_record_without_usable_values(self, processor, connected_integration) -> None:
        batch = await processor.process_push_batch(
            "dailies", [daily(restingHeartRateInBeatsPerMinute=300)]
        )

        assert batch.skipped == 1
        assert batch.results == [f"dailies {DAY}: no usable values"]

    async def test_zero_body_battery_is_kept(
        self, processor, async_session, connected_integration
    ) -> None:
        batch = await processor.process_push_batch("dailies", [daily(bodyBatteryChargedValue=0)])

        assert batch.processed == 1
        row = await HealthMetricStore(async_session).get(LOCAL_USER_ID, date(2025, 5, 1))
        assert row.body_battery == 0

    async def test_stress_details_latest_body_battery(
        self, processor, async_session, connected_integration
    ) -> None:
        record = daily(timeOffsetBodyBatteryValues={"0": 40, "3600": 55, "600": 90})

        batch = await processor.process_push_batch("stressDetails", [record])

        assert batch.processed == 1
        row = await HealthMetricStore(async_session).get(LOCAL_USER_ID, date(2025, 5, 1))
        assert row.body_battery == 55

    async def test_body_composition(self, processor, async_session, connected_integration) -> None:
        record = {
            "userId": GARMIN_USER_ID,
            "measurementTimeInSeconds": RUN_START,
            "weightInGrams": 72400,
            "bodyFatInPercent": 18.5,
        }

        batch = await processor.process_push_batch("bodyComps", [record])

        assert batch.processed == 1
        row = await HealthMetricStore(async_session).get(LOCAL_USER_ID, date(2024, 6, 1))
        assert row.weight_kg == 72.4
        assert row.body_fat_percent == 18.5

    async def test_body_composition_without_date(self, processor, connected_integration) -> None:
        batch = await processor.process_push_batch(
            "bodyComps", [{"userId": GARMIN_USER_ID, "weightInGrams": 72400}]
        )

        assert batch.skipped == 1
        assert batch.results[0].startswith("error:")


class TestActivityIngestion:
    async def test_new_activity_is_stored(
        self, ingestion, async_session, connected_integration
    ) -> None:
        batch = await ingestion.process_activity_batch([run_activity()])

        assert batch.processed == 1
        assert batch.results == ["activity run-1001: imported"]

        (activity,) = await ActivityStore(async_session).list_for_user(LOCAL_USER_ID)
        assert activity.provider == "garmin"
        assert activity.name == "Morning Run"
        assert activity.type == "Run"
        assert activity.sport_type == "RUNNING"
        assert activity.distance == 5000.0
        assert activity.elapsed_time == 1800
        assert activity.kilojoules == pytest.approx(1673.6)
        assert activity.trainer is False
        assert activity.imported_from == "webhook"
        assert activity.raw_data["summaryId"] == "run-1001"

    async def test_live_activity_completes_first_sync_and_queues_insight(
        self, ingestion, async_session, connected_integration
    ) -> None:
        await ingestion.process_activity_batch([run_activity()])

        steps = await ActivationService(async_session).completed_steps(LOCAL_USER_ID)
        assert steps == [ActivationStep.FIRST_SYNC.value]
        insights = await ActivationStore(async_session).pending_insights(LOCAL_USER_ID)
        assert len(insights) == 1
        assert insights[0].insight_type == "activity_analysis"

    async def test_redelivery_updates_in_place(
        self, ingestion, async_session, connected_integration
    ) -> None:
        await ingestion.process_activity_batch([run_activity()])
        batch = await ingestion.process_activity_batch(
            [run_activity(activityName="Parkrun", distanceInMeters=5010.0)]
        )

        assert batch.results == ["activity run-1001: updated"]
        (activity,) = await ActivityStore(async_session).list_for_user(LOCAL_USER_ID)
        assert activity.name == "Parkrun"
        assert activity.distance == 5010.0
        insights = await ActivationStore(async_session).pending_insights(LOCAL_USER_ID)
        assert len(insights) == 1

    async def test_backfilled_activity_credits_chunk(
        self, ingestion, async_session, connected_integration
    ) -> None:
        backfill = BackfillService(async_session)
        await backfill.create_chunks(
            LOCAL_USER_ID, years_back=1, now=datetime(2025, 6, 1, tzinfo=UTC)
        )
        for chunk in await backfill.store.list_for_user(LOCAL_USER_ID):
            await backfill.store.mark_requested(chunk.id)

        await ingestion.process_activity_batch([run_activity()], source="backfill")
        # Re-delivery of the same activity must not count twice
        await ingestion.process_activity_batch([run_activity()], source="backfill")

        progress = await backfill.get_progress(LOCAL_USER_ID)
        assert progress.activities_received == 1
        assert progress.chunks[0].activity_count == 1

        assert await ActivationService(async_session).completed_steps(LOCAL_USER_ID) == []
        assert await ActivationStore(async_session).pending_insights(LOCAL_USER_ID) == []
        (activity,) = await ActivityStore(async_session).list_for_user(LOCAL_USER_ID)
        assert activity.imported_from == "backfill"

    async def test_health_pseudo_activity_goes_to_health_metrics(
        self, ingestion, async_session, connected_integration
    ) -> None:
        record = {
            "userId": GARMIN_USER_ID,
            "summaryId": "sed-1",
            "activityType": "SEDENTARY",
            "startTimeInSeconds": RUN_START,
            "durationInSeconds": 36000,
            "averageHeartRateInBeatsPerMinute": 58,
        }

        batch = await ingestion.process_activity_batch([record])

        assert batch.processed == 1
        assert batch.results == ["health activity SEDENTARY: metrics saved"]
        assert await ActivityStore(async_session).list_for_user(LOCAL_USER_ID) == []
        row = await HealthMetricStore(async_session).get(LOCAL_USER_ID, date(2024, 6, 1))
        assert row.resting_hr == 58

    async def test_short_activity_is_filtered(
        self, ingestion, async_session, connected_integration
    ) -> None:
        batch = await ingestion.process_activity_batch(
            [run_activity(durationInSeconds=60, distanceInMeters=50.0)]
        )

        assert batch.processed == 0
        assert batch.skipped == 1
        assert batch.results == ["filtered (too short): RUNNING"]
        assert await ActivityStore(async_session).list_for_user(LOCAL_USER_ID) == []

    async def test_auto_detected_walk_needs_higher_bar(
        self, ingestion, async_session, connected_integration
    ) -> None:
        walk = run_activity(
            activityType="WALKING",
            durationInSeconds=200,
            distanceInMeters=400.0,
            isAutoDetected=True,
        )

        batch = await ingestion.process_activity_batch([walk])

        assert batch.results == ["filtered (too short): WALKING"]

    async def test_activity_without_id_is_skipped(
        self, ingestion, async_session, connected_integration
    ) -> None:
        record = run_activity()
        del record["summaryId"]

        batch = await ingestion.process_activity_batch([record, run_activity(summaryId="run-2")])

        assert batch.processed == 1
        assert batch.skipped == 1
        assert batch.results[0].startswith("error: Malformed record")

    async def test_unknown_user(self, ingestion, connected_integration) -> None:
        batch = await ingestion.process_activity_batch([run_activity(userId="stranger")])

        assert batch.results == ["skipped (no integration): stranger"]


def database_locked() -> OperationalError:
    return OperationalError("INSERT", {}, Exception("database is locked"))


class TestLastSynced:
    async def test_imported_activity_updates_last_synced(
        self, ingestion, integration_store, connected_integration
    ) -> None:
        assert connected_integration.last_synced_at is None
        before = datetime.now(UTC)

        await ingestion.process_activity_batch([run_activity()])

        stored = await integration_store.get(connected_integration.id)
        assert stored.last_synced_at is not None
        assert stored.last_synced_at >= before - timedelta(seconds=1)

    async def test_health_push_updates_last_synced(
        self, processor, integration_store, connected_integration
    ) -> None:
        await processor.process_push_batch("dailies", [daily(restingHeartRateInBeatsPerMinute=50)])

        stored = await integration_store.get(connected_integration.id)
        assert stored.last_synced_at is not None

    async def test_nothing_written_leaves_last_synced(
        self, ingestion, integration_store, connected_integration
    ) -> None:
        await ingestion.process_activity_batch(
            [run_activity(durationInSeconds=30, distanceInMeters=10)]
        )

        stored = await integration_store.get(connected_integration.id)
        assert stored.last_synced_at is None


class TestTransientFailures:
    """Records that failed for a transient reason are queued for replay."""

    async def test_database_error_queues_record(
        self, ingestion, async_session, connected_integration, monkeypatch
    ) -> None:
        monkeypatch.setattr(
            ingestion.activities, "upsert", AsyncMock(side_effect=database_locked())
        )
        before = datetime.now(UTC)

        batch = await ingestion.process_activity_batch(
            [run_activity()], data_type="manuallyUpdatedActivities"
        )

        assert batch.skipped == 1
        assert batch.queued == 1
        assert batch.results == ["error: Database error: OperationalError (queued for retry)"]

        (queued,) = await PushRetryStore(async_session).list_by_status(PushRetryStatus.PENDING)
        assert queued.data_type == "manuallyUpdatedActivities"
        assert queued.garmin_user_id == GARMIN_USER_ID
        assert queued.payload["summaryId"] == "run-1001"
        assert queued.retry_count == 0
        assert queued.process_error == "Database error: OperationalError"
        delay = as_utc(queued.next_retry_at) - before
        assert timedelta(seconds=59) <= delay <= timedelta(seconds=65)

    async def test_health_database_error_queues_record(
        self, processor, async_session, connected_integration, monkeypatch
    ) -> None:
        monkeypatch.setattr(
            processor.health_metrics, "upsert", AsyncMock(side_effect=database_locked())
        )

        batch = await processor.process_push_batch(
            "sleeps", [daily(durationInSeconds=27000), daily(calendarDate="2025-05-02")]
        )

        assert batch.queued == 1
        (queued,) = await PushRetryStore(async_session).list_by_status(PushRetryStatus.PENDING)
        assert queued.data_type == "sleeps"

    async def test_malformed_record_is_not_queued(
        self, ingestion, async_session, connected_integration
    ) -> None:
        batch = await ingestion.process_activity_batch([run_activity(distanceInMeters="far")])

        assert batch.queued == 0
        assert await PushRetryStore(async_session).list_by_status(PushRetryStatus.PENDING) == []

    async def test_replaying_processor_does_not_queue(
        self, async_session, encryption, connected_integration, monkeypatch
    ) -> None:
        ingestion = ActivityIngestionService(async_session, encryption, queue_retries=False)
        monkeypatch.setattr(
            ingestion.activities, "upsert", AsyncMock(side_effect=database_locked())
        )

        batch = await ingestion.process_activity_batch([run_activity()])

        assert batch.queued == 0
        assert batch.results == ["error: Database error: OperationalError"]
        assert await PushRetryStore(async_session).list_by_status(PushRetryStatus.PENDING) == []
