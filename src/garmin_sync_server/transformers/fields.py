"""Ordered field-name tables for Garmin payloads.

Garmin reports the same concept under different keys depending on the
channel (Push notification, Activity API, FIT-derived summary). Each table
lists the candidate keys for one concept, most authoritative first; lookups
take the first key whose value is present.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

# Activity summary concepts
ACTIVITY_ID = ("summaryId", "activityId")
ACTIVITY_NAME = ("activityName", "activityDescription")
DISTANCE_METERS = ("distanceInMeters", "distance")
MOVING_SECONDS = ("movingDurationInSeconds", "durationInSeconds", "duration")
ELAPSED_SECONDS = ("elapsedDurationInSeconds", "durationInSeconds", "duration")
ELEVATION_GAIN_METERS = (
    "elevationGainInMeters",
    "totalElevationGainInMeters",
    "totalElevationGain",
    "total_ascent",
)
AVERAGE_SPEED = ("averageSpeedInMetersPerSecond", "averageSpeed", "avg_speed")
MAX_SPEED = ("maxSpeedInMetersPerSecond", "maxSpeed", "max_speed")
AVERAGE_POWER = ("averageBikingPowerInWatts", "averagePower", "avgPower", "avg_power")
ACTIVE_KILOCALORIES = ("activeKilocalories", "calories")
AVERAGE_HEART_RATE = (
    "averageHeartRateInBeatsPerMinute",
    "averageHeartRate",
    "avgHeartRate",
    "avg_heart_rate",
)
MAX_HEART_RATE = ("maxHeartRateInBeatsPerMinute", "maxHeartRate", "max_heart_rate")
AVERAGE_CADENCE = (
    "averageBikingCadenceInRPM",
    "averageRunningCadenceInStepsPerMinute",
    "avgCadence",
    "avg_cadence",
)
AUTO_DETECTED = ("isAutoDetected", "autoDetected")

# Health summary concepts
RESTING_HEART_RATE = ("restingHeartRateInBeatsPerMinute",)
AVERAGE_STRESS = ("averageStressLevel",)
BODY_BATTERY_CHARGED = ("bodyBatteryChargedValue",)
SLEEP_SECONDS = ("durationInSeconds",)
WEIGHT_GRAMS = ("weightInGrams",)
BODY_FAT_PERCENT = ("bodyFatInPercent",)
HRV_LAST_NIGHT_MS = ("lastNightAvg",)
MEASUREMENT_SECONDS = ("measurementTimeInSeconds",)

# Keys that every Garmin record uses the same way
USER_ID = "userId"
CALENDAR_DATE = "calendarDate"
START_TIME_SECONDS = "startTimeInSeconds"
START_OFFSET_SECONDS = "startTimeOffsetInSeconds"
ACTIVITY_TYPE = "activityType"
DEVICE_NAME = "deviceName"


def first_present(payload: Mapping[str, Any], keys: Sequence[str]) -> Any:
    """Return the value of the first key in ``keys`` that is present and not None."""
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def to_number(value: Any, field: str) -> float | None:
    """Coerce a payload value to a float.

    Args:
        value: Raw payload value (int, float or numeric string)
        field: Concept name, used in the error message

    Returns:
        The float value, or None if ``value`` is None

    Raises:
        ValueError: If the value is not numeric
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"{field}: expected a number, got {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"{field}: expected a number, got {value!r}") from None
    raise ValueError(f"{field}: expected a number, got {type(value).__name__}")


def number_field(payload: Mapping[str, Any], keys: Sequence[str], field: str) -> float | None:
    """Look up a numeric concept through its key table."""
    return to_number(first_present(payload, keys), field)
