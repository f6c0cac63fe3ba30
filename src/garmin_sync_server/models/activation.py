"""Activation milestones and pending insight requests."""

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from garmin_sync_server.models.base import (
    Base,
    TimestampMixin,
    UserScopedMixin,
    generate_uuid,
    utcnow,
)


class ActivationStep(str, Enum):
    """Onboarding milestones tracked per user."""

    CONNECT_DEVICE = "connect_device"
    FIRST_SYNC = "first_sync"
    FIRST_INSIGHT = "first_insight"
    FIRST_ROUTE = "first_route"
    FIRST_PLAN = "first_plan"


class InsightStatus(str, Enum):
    """Lifecycle of a proactive insight request."""

    PENDING = "pending"
    GENERATED = "generated"
    FAILED = "failed"


class UserActivationStep(Base, UserScopedMixin, TimestampMixin):
    """A completed onboarding milestone. Presence of the row means completed."""

    __tablename__ = "activation_steps"
    __table_args__ = (
        UniqueConstraint("user_id", "step", name="uq_activation_steps_user_step"),
        {"comment": "Completed onboarding milestones"},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    step: Mapped[str] = mapped_column(String(32), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        """String representation."""
        return f"<UserActivationStep(user_id={self.user_id}, step={self.step})>"


class ProactiveInsight(Base, UserScopedMixin, TimestampMixin):
    """An insight queued for generation after a new activity arrives.

    Generation itself happens elsewhere; this service only enqueues.
    """

    __tablename__ = "proactive_insights"
    __table_args__ = (
        UniqueConstraint("activity_id", "insight_type", name="uq_proactive_insights_activity_type"),
        {"comment": "Queued insight generation requests"},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    activity_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("activities.id", ondelete="CASCADE"), nullable=False
    )
    insight_type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=InsightStatus.PENDING.value, nullable=False
    )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<ProactiveInsight(activity_id={self.activity_id}, "
            f"type={self.insight_type}, status={self.status})>"
        )
