"""Garmin health push transformers.

Each Garmin health data type (dailies, sleeps, bodyComps, stressDetails,
hrv) fills a different subset of the daily ``health_metrics`` row. The
transformers return only the fields they could read with plausible values;
absent or out-of-range values are left out so the upsert never overwrites
existing data with nothing.

Malformed records (no usable date, non-numeric values) raise ValueError;
the push processor counts those as skipped.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

from garmin_sync_server.transformers import fields
from garmin_sync_server.transformers.filters import normalize_activity_type

# Plausible ranges (inclusive)
RESTING_HR_RANGE = (25, 120)
STRESS_RANGE = (0, 100)
SLEEP_SCORE_RANGE = (0, 100)
BODY_BATTERY_RANGE = (0, 100)
SLEEP_HOURS_RANGE = (0, 24)
WEIGHT_KG_RANGE = (20, 400)
BODY_FAT_RANGE = (2, 75)
HRV_MS_RANGE = (1, 300)

# Activity types whose average HR is effectively a resting HR
RESTING_ACTIVITY_TYPES = frozenset({"sedentary", "monitoring", "all_day_tracking"})
RESTING_ACTIVITY_MAX_HR = 100


@dataclass
class HealthMetricUpdate:
    """Fields to merge into one user's health row for one day."""

    metric_date: date
    values: dict[str, Any] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.values)

    def describe(self) -> str:
        """Short ``key=value`` summary for batch results."""
        return ", ".join(f"{key}={value}" for key, value in self.values.items())


def round_half_up(value: float, digits: int = 0) -> float:
    """Round like a calculator (2.5 -> 3), unlike Python's banker's rounding."""
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


def rescale_to_five(value: float) -> int:
    """Map a 0-100 provider score onto the internal 1-5 scale."""
    return max(1, min(5, int(round_half_up(value / 20))))


def plausible(value: float | None, bounds: tuple[float, float]) -> float | None:
    """Return the value if it is within bounds, else None."""
    if value is None:
        return None
    low, high = bounds
    return value if low <= value <= high else None


def parse_calendar_date(record: dict[str, Any]) -> date:
    """Read Garmin's ``calendarDate`` (YYYY-MM-DD).

    Raises:
        ValueError: If the date is missing or not ISO formatted
    """
    raw = record.get(fields.CALENDAR_DATE)
    if not raw:
        raise ValueError("Record is missing calendarDate")
    if not isinstance(raw, str):
        raise ValueError(f"calendarDate must be a string, got {type(raw).__name__}")
    return date.fromisoformat(raw)


def date_from_epoch(seconds: float) -> date:
    """UTC calendar date of an epoch timestamp."""
    return datetime.fromtimestamp(seconds, tz=UTC).date()


class DailySummaryTransformer:
    """Transform Garmin ``dailies`` record -> health metric update."""

    @staticmethod
    def transform(record: dict[str, Any]) -> HealthMetricUpdate:
        """Resting HR, stress level (1-5) and charged body battery."""
        update = HealthMetricUpdate(metric_date=parse_calendar_date(record))

        resting_hr = plausible(
            fields.number_field(record, fields.RESTING_HEART_RATE, "resting_hr"),
            RESTING_HR_RANGE,
        )
        if resting_hr is not None:
            update.values["resting_hr"] = int(resting_hr)

        stress = plausible(
            fields.number_field(record, fields.AVERAGE_STRESS, "stress_level"), STRESS_RANGE
        )
        if stress is not None:
            update.values["stress_level"] = rescale_to_five(stress)

        battery = plausible(
            fields.number_field(record, fields.BODY_BATTERY_CHARGED, "body_battery"),
            BODY_BATTERY_RANGE,
        )
        if battery is not None:
            update.values["body_battery"] = int(battery)

        return update


class SleepSummaryTransformer:
    """Transform Garmin ``sleeps`` record -> health metric update."""

    @staticmethod
    def transform(record: dict[str, Any]) -> HealthMetricUpdate:
        """Sleep hours (1 decimal) and sleep quality (1-5 from the overall score)."""
        update = HealthMetricUpdate(metric_date=parse_calendar_date(record))

        seconds = fields.number_field(record, fields.SLEEP_SECONDS, "sleep_duration")
        if seconds:
            hours = plausible(round_half_up(seconds / 3600, 1), SLEEP_HOURS_RANGE)
            if hours is not None:
                update.values["sleep_hours"] = hours

        score = record.get("overallSleepScore")
        if isinstance(score, dict):
            score = score.get("value")
        score_value = plausible(fields.to_number(score, "sleep_score"), SLEEP_SCORE_RANGE)
        if score_value is not None:
            update.values["sleep_quality"] = rescale_to_five(score_value)

        return update


class BodyCompTransformer:
    """Transform Garmin ``bodyComps`` record -> health metric update."""

    @staticmethod
    def transform(record: dict[str, Any]) -> HealthMetricUpdate:
        """Weight in kg (1 decimal) and body fat percent.

        Body composition records are dated by measurement time rather than
        calendarDate; either is accepted.
        """
        measured_at = fields.number_field(record, fields.MEASUREMENT_SECONDS, "measurement_time")
        if record.get(fields.CALENDAR_DATE):
            metric_date = parse_calendar_date(record)
        elif measured_at is not None:
            metric_date = date_from_epoch(measured_at)
        else:
            raise ValueError("Body composition record has no measurement time")

        update = HealthMetricUpdate(metric_date=metric_date)

        grams = fields.number_field(record, fields.WEIGHT_GRAMS, "weight")
        if grams:
            weight = plausible(round_half_up(grams / 1000, 1), WEIGHT_KG_RANGE)
            if weight is not None:
                update.values["weight_kg"] = weight

        body_fat = plausible(
            fields.number_field(record, fields.BODY_FAT_PERCENT, "body_fat"), BODY_FAT_RANGE
        )
        if body_fat is not None:
            update.values["body_fat_percent"] = body_fat

        return update


class StressDetailsTransformer:
    """Transform Garmin ``stressDetails`` record -> health metric update."""

    @staticmethod
    def transform(record: dict[str, Any]) -> HealthMetricUpdate:
        """Body battery from the most recent intraday sample.

        ``timeOffsetBodyBatteryValues`` maps seconds-since-midnight (as
        strings) to a body battery reading; the largest offset wins.
        """
        update = HealthMetricUpdate(metric_date=parse_calendar_date(record))

        samples = record.get("timeOffsetBodyBatteryValues")
        if not samples:
            return update
        if not isinstance(samples, dict):
            raise ValueError("timeOffsetBodyBatteryValues must be an object")

        offsets = {int(offset): value for offset, value in samples.items()}
        latest = offsets[max(offsets)]
        battery = plausible(fields.to_number(latest, "body_battery"), BODY_BATTERY_RANGE)
        if battery is not None:
            update.values["body_battery"] = int(battery)

        return update


class HrvSummaryTransformer:
    """Transform Garmin ``hrv`` record -> health metric update."""

    @staticmethod
    def transform(record: dict[str, Any]) -> HealthMetricUpdate:
        """Last night's average HRV in milliseconds."""
        update = HealthMetricUpdate(metric_date=parse_calendar_date(record))

        hrv = plausible(fields.number_field(record, fields.HRV_LAST_NIGHT_MS, "hrv"), HRV_MS_RANGE)
        if hrv is not None:
            update.values["hrv_ms"] = hrv

        return update


class ActivityHealthTransformer:
    """Derive health metrics from an ordinary activity payload.

    Used for health/monitoring pseudo-activities and too-short activities,
    which never reach activity storage.
    """

    @staticmethod
    def transform(activity: dict[str, Any]) -> HealthMetricUpdate:
        """Resting HR (low-intensity types under 100 bpm), stress level, body battery."""
        start = fields.to_number(activity.get(fields.START_TIME_SECONDS), "start_time")
        metric_date = date_from_epoch(start) if start is not None else datetime.now(UTC).date()
        update = HealthMetricUpdate(metric_date=metric_date)

        activity_type = normalize_activity_type(activity.get(fields.ACTIVITY_TYPE))
        average_hr = fields.number_field(activity, fields.AVERAGE_HEART_RATE, "average_heartrate")
        if (
            average_hr
            and activity_type in RESTING_ACTIVITY_TYPES
            and average_hr < RESTING_ACTIVITY_MAX_HR
        ):
            resting_hr = plausible(average_hr, RESTING_HR_RANGE)
            if resting_hr is not None:
                update.values["resting_hr"] = int(resting_hr)

        stress = plausible(
            fields.number_field(activity, fields.AVERAGE_STRESS, "stress_level"), STRESS_RANGE
        )
        if stress is not None:
            update.values["stress_level"] = rescale_to_five(stress)

        battery = plausible(
            fields.number_field(activity, fields.BODY_BATTERY_CHARGED, "body_battery"),
            BODY_BATTERY_RANGE,
        )
        if battery is not None:
            update.values["body_battery"] = int(battery)

        return update


# Garmin push data type -> transformer
HEALTH_TRANSFORMERS: dict[str, Any] = {
    "dailies": DailySummaryTransformer,
    "sleeps": SleepSummaryTransformer,
    "bodyComps": BodyCompTransformer,
    "stressDetails": StressDetailsTransformer,
    "hrv": HrvSummaryTransformer,
}
