"""Database models."""

from garmin_sync_server.models.activation import (
    ActivationStep,
    InsightStatus,
    ProactiveInsight,
    UserActivationStep,
)
from garmin_sync_server.models.activity import Activity
from garmin_sync_server.models.backfill_chunk import BackfillChunk, ChunkStatus
from garmin_sync_server.models.base import Base
from garmin_sync_server.models.health_metric import HEALTH_METRIC_FIELDS, HealthMetric
from garmin_sync_server.models.integration import GARMIN_PROVIDER, Integration
from garmin_sync_server.models.push_retry import PushRetry, PushRetryStatus

__all__ = [
    "Base",
    "ActivationStep",
    "Activity",
    "BackfillChunk",
    "ChunkStatus",
    "GARMIN_PROVIDER",
    "HEALTH_METRIC_FIELDS",
    "HealthMetric",
    "InsightStatus",
    "Integration",
    "ProactiveInsight",
    "PushRetry",
    "PushRetryStatus",
    "UserActivationStep",
]
