"""Daily health metrics model."""

from datetime import date

from sqlalchemy import Date, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from garmin_sync_server.models.base import Base, TimestampMixin, UserScopedMixin, generate_uuid

# Columns a health upsert may write. Anything else in a mapped payload is ignored.
HEALTH_METRIC_FIELDS = (
    "resting_hr",
    "sleep_hours",
    "sleep_quality",
    "weight_kg",
    "body_fat_percent",
    "body_battery",
    "stress_level",
    "hrv_ms",
)


class HealthMetric(Base, UserScopedMixin, TimestampMixin):
    """One row per user per calendar day.

    Different Garmin push types (dailies, sleeps, bodyComps, stressDetails,
    hrv) each fill a subset of the columns; upserts only write what they
    carry so the types compose instead of clobbering each other.
    """

    __tablename__ = "health_metrics"
    __table_args__ = (
        UniqueConstraint("user_id", "metric_date", name="uq_health_metrics_user_date"),
        {"comment": "Daily health metrics merged from Garmin push data"},
    )

    # Primary key
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid,
    )

    metric_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)

    resting_hr: Mapped[int | None] = mapped_column(Integer)
    sleep_hours: Mapped[float | None] = mapped_column(Float)
    sleep_quality: Mapped[int | None] = mapped_column(Integer, comment="1-5 scale")
    weight_kg: Mapped[float | None] = mapped_column(Float)
    body_fat_percent: Mapped[float | None] = mapped_column(Float)
    body_battery: Mapped[int | None] = mapped_column(Integer, comment="0-100")
    stress_level: Mapped[int | None] = mapped_column(Integer, comment="1-5 scale")
    hrv_ms: Mapped[float | None] = mapped_column(Float)

    source: Mapped[str] = mapped_column(String(32), default="garmin", nullable=False)

    def __repr__(self) -> str:
        """String representation."""
        return f"<HealthMetric(user_id={self.user_id}, date={self.metric_date})>"
