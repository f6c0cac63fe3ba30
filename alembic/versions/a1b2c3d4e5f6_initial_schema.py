"""Initial schema.

Creates the Garmin integration tables:
- integrations (OAuth tokens and refresh lease)
- backfill_chunks (historical request windows)
- health_metrics (daily metrics merged from pushes)
- activities (normalized workouts)
- activation_steps, proactive_insights (onboarding and insight queue)

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a1b2c3d4e5f6"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _user_id() -> sa.Column:
    return sa.Column(
        "user_id",
        sa.String(255),
        nullable=False,
        index=True,
        comment="Local application user ID",
    )


def upgrade() -> None:
    """Create all tables."""
    op.create_table(
        "integrations",
        sa.Column("id", sa.String(36), primary_key=True),
        _user_id(),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("provider_user_id", sa.String(255), nullable=False, index=True),
        sa.Column("access_token_encrypted", sa.Text(), nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refresh_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "refresh_lock_until",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="Refresh lease; set through a conditional UPDATE",
        ),
        sa.Column(
            "refresh_token_invalid",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
            comment="Garmin rejected the refresh token; reconnect required",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "provider", name="uq_integrations_user_provider"),
        sa.UniqueConstraint("provider", "provider_user_id", name="uq_integrations_provider_user"),
        comment="Connected third-party fitness accounts",
    )

    op.create_table(
        "backfill_chunks",
        sa.Column("id", sa.String(36), primary_key=True),
        _user_id(),
        sa.Column("chunk_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("chunk_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("start_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("end_timestamp", sa.BigInteger(), nullable=False),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default="pending",
            comment="pending, requested, received, already_processed, failed",
        ),
        sa.Column("activity_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "chunk_start", "chunk_end", name="uq_backfill_chunk_range"),
        comment="Historical backfill windows and their request status",
    )
    op.create_index("ix_backfill_chunks_user_status", "backfill_chunks", ["user_id", "status"])

    op.create_table(
        "health_metrics",
        sa.Column("id", sa.String(36), primary_key=True),
        _user_id(),
        sa.Column("metric_date", sa.Date(), nullable=False, index=True),
        sa.Column("resting_hr", sa.Integer(), nullable=True),
        sa.Column("sleep_hours", sa.Float(), nullable=True),
        sa.Column("sleep_quality", sa.Integer(), nullable=True, comment="1-5 scale"),
        sa.Column("weight_kg", sa.Float(), nullable=True),
        sa.Column("body_fat_percent", sa.Float(), nullable=True),
        sa.Column("body_battery", sa.Integer(), nullable=True, comment="0-100"),
        sa.Column("stress_level", sa.Integer(), nullable=True, comment="1-5 scale"),
        sa.Column("hrv_ms", sa.Float(), nullable=True),
        sa.Column("source", sa.String(32), nullable=False, server_default="garmin"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "metric_date", name="uq_health_metrics_user_date"),
        comment="Daily health metrics merged from Garmin push data",
    )

    op.create_table(
        "activities",
        sa.Column("id", sa.String(36), primary_key=True),
        _user_id(),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("provider_activity_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("sport_type", sa.String(64), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("start_date_local", sa.DateTime(timezone=True), nullable=True),
        sa.Column("distance", sa.Float(), nullable=True, comment="meters"),
        sa.Column("moving_time", sa.Integer(), nullable=True, comment="seconds"),
        sa.Column("elapsed_time", sa.Integer(), nullable=True, comment="seconds"),
        sa.Column("total_elevation_gain", sa.Float(), nullable=True, comment="meters"),
        sa.Column("average_speed", sa.Float(), nullable=True, comment="m/s"),
        sa.Column("max_speed", sa.Float(), nullable=True, comment="m/s"),
        sa.Column("average_watts", sa.Float(), nullable=True),
        sa.Column("kilojoules", sa.Float(), nullable=True),
        sa.Column("average_heartrate", sa.Float(), nullable=True),
        sa.Column("max_heartrate", sa.Float(), nullable=True),
        sa.Column("average_cadence", sa.Float(), nullable=True),
        sa.Column("trainer", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("raw_data", sa.JSON(), nullable=True),
        sa.Column("imported_from", sa.String(32), nullable=True, comment="webhook or backfill"),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id",
            "provider",
            "provider_activity_id",
            name="uq_activities_user_provider_activity",
        ),
        comment="Normalized activities with the original provider payload",
    )

    op.create_table(
        "activation_steps",
        sa.Column("id", sa.String(36), primary_key=True),
        _user_id(),
        sa.Column("step", sa.String(32), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "step", name="uq_activation_steps_user_step"),
        comment="Completed onboarding milestones",
    )

    op.create_table(
        "proactive_insights",
        sa.Column("id", sa.String(36), primary_key=True),
        _user_id(),
        sa.Column(
            "activity_id",
            sa.String(36),
            sa.ForeignKey("activities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("insight_type", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        *_timestamps(),
        sa.UniqueConstraint(
            "activity_id", "insight_type", name="uq_proactive_insights_activity_type"
        ),
        comment="Queued insight generation requests",
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("proactive_insights")
    op.drop_table("activation_steps")
    op.drop_table("activities")
    op.drop_table("health_metrics")
    op.drop_index("ix_backfill_chunks_user_status", table_name="backfill_chunks")
    op.drop_table("backfill_chunks")
    op.drop_table("integrations")
