"""Normalized activity model."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from garmin_sync_server.models.base import Base, TimestampMixin, UserScopedMixin, generate_uuid


class Activity(Base, UserScopedMixin, TimestampMixin):
    """A workout imported from Garmin (push or backfill).

    Units follow the normalized activity shape used across providers:
    meters, seconds, m/s, watts, kJ, bpm.
    """

    __tablename__ = "activities"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "provider",
            "provider_activity_id",
            name="uq_activities_user_provider_activity",
        ),
        {"comment": "Normalized activities with the original provider payload"},
    )

    # Primary key
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid,
    )

    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="garmin")
    provider_activity_id: Mapped[str] = mapped_column(String(64), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    sport_type: Mapped[str | None] = mapped_column(String(64))

    start_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    start_date_local: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Distance and timing
    distance: Mapped[float | None] = mapped_column(Float, comment="meters")
    moving_time: Mapped[int | None] = mapped_column(Integer, comment="seconds")
    elapsed_time: Mapped[int | None] = mapped_column(Integer, comment="seconds")
    total_elevation_gain: Mapped[float | None] = mapped_column(Float, comment="meters")

    # Speed and power
    average_speed: Mapped[float | None] = mapped_column(Float, comment="m/s")
    max_speed: Mapped[float | None] = mapped_column(Float, comment="m/s")
    average_watts: Mapped[float | None] = mapped_column(Float)
    kilojoules: Mapped[float | None] = mapped_column(Float)

    # Heart rate and cadence
    average_heartrate: Mapped[float | None] = mapped_column(Float)
    max_heartrate: Mapped[float | None] = mapped_column(Float)
    average_cadence: Mapped[float | None] = mapped_column(Float)

    trainer: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    raw_data: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    imported_from: Mapped[str | None] = mapped_column(
        String(32), comment="webhook or backfill"
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<Activity(user_id={self.user_id}, provider_activity_id={self.provider_activity_id}, "
            f"type={self.type}, start_date={self.start_date})>"
        )
