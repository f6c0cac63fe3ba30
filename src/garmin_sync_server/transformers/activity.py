"""Garmin activity summary transformer.

Converts a Garmin activity payload (Push or Activity API) to a
database-ready dict for the ``activities`` table.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from garmin_sync_server.transformers import fields
from garmin_sync_server.transformers.filters import is_indoor_activity_type, normalize_activity_type

KCAL_TO_KJ = 4.184

# Garmin activity type -> normalized activity type
ACTIVITY_TYPE_MAP: dict[str, str] = {
    # Cycling
    "cycling": "Ride",
    "road_biking": "Ride",
    "road_cycling": "Ride",
    "virtual_ride": "VirtualRide",
    "indoor_cycling": "VirtualRide",
    "mountain_biking": "MountainBikeRide",
    "gravel_cycling": "GravelRide",
    "cyclocross": "Ride",
    "e_biking": "EBikeRide",
    "bmx": "Ride",
    "recumbent_cycling": "Ride",
    "track_cycling": "Ride",
    # Running
    "running": "Run",
    "trail_running": "TrailRun",
    "treadmill_running": "Run",
    "indoor_running": "Run",
    "track_running": "Run",
    "ultra_run": "Run",
    # Walking and hiking
    "walking": "Walk",
    "casual_walking": "Walk",
    "speed_walking": "Walk",
    "indoor_walking": "Walk",
    "treadmill_walking": "Walk",
    "hiking": "Hike",
    # Swimming
    "swimming": "Swim",
    "lap_swimming": "Swim",
    "open_water_swimming": "Swim",
    "pool_swimming": "Swim",
    # Gym
    "strength_training": "WeightTraining",
    "cardio": "Workout",
    "elliptical": "Elliptical",
    "stair_climbing": "StairStepper",
    "rowing": "Rowing",
    "indoor_rowing": "Rowing",
    "yoga": "Yoga",
    "pilates": "Workout",
    "fitness_equipment": "Workout",
    # Winter
    "resort_skiing": "AlpineSki",
    "resort_snowboarding": "Snowboard",
    "cross_country_skiing": "NordicSki",
    "backcountry_skiing": "BackcountrySki",
    # Water
    "stand_up_paddleboarding": "StandUpPaddling",
    "kayaking": "Kayaking",
    "surfing": "Surfing",
    # Multi-sport
    "multi_sport": "Workout",
    "triathlon": "Workout",
    "duathlon": "Workout",
    "transition": "Workout",
}

# Garmin activity type -> display name used when the activity has no name
ACTIVITY_DISPLAY_NAMES: dict[str, str] = {
    "cycling": "Ride",
    "road_biking": "Road Ride",
    "road_cycling": "Road Ride",
    "mountain_biking": "Mountain Bike Ride",
    "gravel_cycling": "Gravel Ride",
    "indoor_cycling": "Indoor Ride",
    "virtual_ride": "Virtual Ride",
    "e_biking": "E-Bike Ride",
    "bmx": "BMX Ride",
    "recumbent_cycling": "Recumbent Ride",
    "track_cycling": "Track Ride",
    "cyclocross": "Cyclocross Ride",
    "running": "Run",
    "trail_running": "Trail Run",
    "treadmill_running": "Treadmill Run",
    "indoor_running": "Indoor Run",
    "track_running": "Track Run",
    "ultra_run": "Ultra Run",
    "walking": "Walk",
    "casual_walking": "Walk",
    "speed_walking": "Speed Walk",
    "indoor_walking": "Indoor Walk",
    "treadmill_walking": "Treadmill Walk",
    "hiking": "Hike",
    "swimming": "Swim",
    "lap_swimming": "Lap Swim",
    "open_water_swimming": "Open Water Swim",
    "pool_swimming": "Pool Swim",
    "strength_training": "Strength Training",
    "cardio": "Cardio Workout",
    "elliptical": "Elliptical",
    "stair_climbing": "Stair Climbing",
    "rowing": "Row",
    "indoor_rowing": "Indoor Row",
    "yoga": "Yoga",
    "pilates": "Pilates",
    "fitness_equipment": "Workout",
    "resort_skiing": "Ski",
    "resort_snowboarding": "Snowboard",
    "cross_country_skiing": "Nordic Ski",
    "backcountry_skiing": "Backcountry Ski",
    "stand_up_paddleboarding": "Paddleboard",
    "kayaking": "Kayak",
    "surfing": "Surf",
    "multi_sport": "Workout",
    "triathlon": "Triathlon",
    "duathlon": "Duathlon",
    "transition": "Transition",
}


def map_activity_type(garmin_type: str | None) -> str:
    """Map a Garmin activity type to the normalized taxonomy (``Workout`` if unknown)."""
    return ACTIVITY_TYPE_MAP.get(normalize_activity_type(garmin_type), "Workout")


def time_of_day(hour: int) -> str:
    """Morning before noon, Afternoon before 17:00, Evening after."""
    if hour < 12:
        return "Morning"
    if hour < 17:
        return "Afternoon"
    return "Evening"


def generate_activity_name(
    activity_type: str | None,
    start_time_seconds: int | None,
    offset_seconds: int = 0,
) -> str:
    """Build a name like ``Morning Road Ride`` from the type and local start time."""
    if start_time_seconds is None:
        local_start = datetime.now(UTC)
    else:
        local_start = datetime.fromtimestamp(start_time_seconds + offset_seconds, tz=UTC)

    display = ACTIVITY_DISPLAY_NAMES.get(normalize_activity_type(activity_type), "Workout")
    return f"{time_of_day(local_start.hour)} {display}"


def activity_start_seconds(payload: dict[str, Any]) -> int | None:
    """Epoch start time of an activity payload, if it has one."""
    value = fields.to_number(payload.get(fields.START_TIME_SECONDS), "start_time")
    return int(value) if value is not None else None


def activity_id_of(payload: dict[str, Any]) -> str:
    """Garmin's identifier for the activity.

    Raises:
        ValueError: If the payload carries neither summaryId nor activityId
    """
    activity_id = fields.first_present(payload, fields.ACTIVITY_ID)
    if activity_id is None or str(activity_id).strip() == "":
        raise ValueError("Activity payload has no summaryId or activityId")
    return str(activity_id)


def _is_trainer(payload: dict[str, Any]) -> bool:
    if is_indoor_activity_type(payload.get(fields.ACTIVITY_TYPE)):
        return True
    device_name = str(payload.get(fields.DEVICE_NAME) or "").lower()
    return "indoor" in device_name or "trainer" in device_name


class ActivityTransformer:
    """Transform Garmin activity payload -> Database Activity dict."""

    @staticmethod
    def transform(payload: dict[str, Any], user_id: str, source: str = "webhook") -> dict[str, Any]:
        """Convert a Garmin activity payload to a database-ready dict.

        The full payload is kept in ``raw_data`` so nothing Garmin sent is
        lost, even for fields we do not map yet.

        Args:
            payload: Activity summary from a push or the Activity API
            user_id: Local user the activity belongs to
            source: ``webhook`` or ``backfill``

        Returns:
            Dict of Activity column values

        Raises:
            ValueError: If the payload has no activity ID or a non-numeric metric
        """
        garmin_type = payload.get(fields.ACTIVITY_TYPE)
        start_seconds = activity_start_seconds(payload)
        offset = fields.to_number(payload.get(fields.START_OFFSET_SECONDS), "start_offset") or 0

        if start_seconds is None:
            start_date = datetime.now(UTC)
            start_date_local = start_date
        else:
            start_date = datetime.fromtimestamp(start_seconds, tz=UTC)
            start_date_local = start_date + timedelta(seconds=offset)

        name = fields.first_present(payload, fields.ACTIVITY_NAME) or generate_activity_name(
            garmin_type, start_seconds, int(offset)
        )

        kilocalories = fields.number_field(payload, fields.ACTIVE_KILOCALORIES, "calories")

        return {
            "user_id": user_id,
            "provider": "garmin",
            "provider_activity_id": activity_id_of(payload),
            "name": str(name)[:255],
            "type": map_activity_type(garmin_type),
            "sport_type": garmin_type or None,
            "start_date": start_date,
            "start_date_local": start_date_local,
            "distance": fields.number_field(payload, fields.DISTANCE_METERS, "distance"),
            "moving_time": _optional_int(
                fields.number_field(payload, fields.MOVING_SECONDS, "moving_time")
            ),
            "elapsed_time": _optional_int(
                fields.number_field(payload, fields.ELAPSED_SECONDS, "elapsed_time")
            ),
            "total_elevation_gain": fields.number_field(
                payload, fields.ELEVATION_GAIN_METERS, "elevation_gain"
            ),
            "average_speed": fields.number_field(payload, fields.AVERAGE_SPEED, "average_speed"),
            "max_speed": fields.number_field(payload, fields.MAX_SPEED, "max_speed"),
            "average_watts": fields.number_field(payload, fields.AVERAGE_POWER, "average_watts"),
            "kilojoules": kilocalories * KCAL_TO_KJ if kilocalories else None,
            "average_heartrate": fields.number_field(
                payload, fields.AVERAGE_HEART_RATE, "average_heartrate"
            ),
            "max_heartrate": fields.number_field(payload, fields.MAX_HEART_RATE, "max_heartrate"),
            "average_cadence": fields.number_field(
                payload, fields.AVERAGE_CADENCE, "average_cadence"
            ),
            "trainer": _is_trainer(payload),
            "raw_data": payload,
            "imported_from": source,
        }


def _optional_int(value: float | None) -> int | None:
    return int(round(value)) if value is not None else None
