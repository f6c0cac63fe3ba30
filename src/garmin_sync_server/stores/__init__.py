"""Persistence layer: one store per table, each taking an explicit session."""

from garmin_sync_server.stores.activation import ActivationStore
from garmin_sync_server.stores.activity import ActivityStore
from garmin_sync_server.stores.backfill import BackfillChunkStore
from garmin_sync_server.stores.health_metric import HealthMetricStore
from garmin_sync_server.stores.integration import IntegrationRecord, IntegrationStore
from garmin_sync_server.stores.push_retry import PushRetryStore

__all__ = [
    "ActivationStore",
    "ActivityStore",
    "BackfillChunkStore",
    "HealthMetricStore",
    "IntegrationRecord",
    "IntegrationStore",
    "PushRetryStore",
]
