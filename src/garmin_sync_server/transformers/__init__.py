"""Garmin payload -> Database dict transformers."""

from garmin_sync_server.transformers.activity import ActivityTransformer
from garmin_sync_server.transformers.health import (
    HEALTH_TRANSFORMERS,
    ActivityHealthTransformer,
    BodyCompTransformer,
    DailySummaryTransformer,
    HealthMetricUpdate,
    HrvSummaryTransformer,
    SleepSummaryTransformer,
    StressDetailsTransformer,
)

__all__ = [
    "HEALTH_TRANSFORMERS",
    "ActivityHealthTransformer",
    "ActivityTransformer",
    "BodyCompTransformer",
    "DailySummaryTransformer",
    "HealthMetricUpdate",
    "HrvSummaryTransformer",
    "SleepSummaryTransformer",
    "StressDetailsTransformer",
]
