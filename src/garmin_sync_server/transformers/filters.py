"""Activity filters applied before anything reaches activity storage."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from garmin_sync_server.transformers import fields

# Garmin "activities" that are really all-day monitoring or wellness sessions.
HEALTH_ACTIVITY_TYPES = frozenset(
    {
        "sedentary",
        "sleep",
        "sleeping",
        "nap",
        "monitoring",
        "all_day_tracking",
        "all_day_stress",
        "meditation",
        "breathwork",
        "breathing",
        "respiration",
        "mindfulness",
    }
)

INDOOR_TYPE_MARKERS = ("indoor", "virtual", "treadmill")

MIN_DURATION_SECONDS = 120
MIN_DISTANCE_METERS = 100
# Auto-detected movements (Move IQ) must clear a higher bar
MIN_AUTO_DETECTED_DURATION_SECONDS = 300
MIN_AUTO_DETECTED_DISTANCE_METERS = 1000


def normalize_activity_type(activity_type: str | None) -> str:
    """Lowercase a Garmin activity type and replace spaces with underscores."""
    return (activity_type or "").strip().lower().replace(" ", "_")


def should_filter_activity_type(activity_type: str | None) -> bool:
    """Return True for health/monitoring pseudo-activities."""
    return normalize_activity_type(activity_type) in HEALTH_ACTIVITY_TYPES


def is_indoor_activity_type(activity_type: str | None) -> bool:
    """Return True if the activity type names an indoor/virtual variant."""
    normalized = normalize_activity_type(activity_type)
    return any(marker in normalized for marker in INDOOR_TYPE_MARKERS)


def has_minimum_activity_metrics(payload: Mapping[str, Any]) -> bool:
    """Return True if the activity is long or far enough to be a real workout.

    Either duration or distance clearing its threshold is enough.
    """
    duration = fields.number_field(payload, fields.ELAPSED_SECONDS, "duration") or 0
    distance = fields.number_field(payload, fields.DISTANCE_METERS, "distance") or 0

    if fields.first_present(payload, fields.AUTO_DETECTED) is True:
        return (
            duration >= MIN_AUTO_DETECTED_DURATION_SECONDS
            or distance >= MIN_AUTO_DETECTED_DISTANCE_METERS
        )

    return duration >= MIN_DURATION_SECONDS or distance >= MIN_DISTANCE_METERS
