"""Add push_retries table for replaying transiently failed push records.

Revision ID: b7c8d9e0f1a2
Revises: a1b2c3d4e5f6
Create Date: 2026-10-18 15:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "b7c8d9e0f1a2"
down_revision: str | None = "a1b2c3d4e5f6"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create push_retries table."""
    op.create_table(
        "push_retries",
        sa.Column("id", sa.String(36), primary_key=True),
        # The pushed record
        sa.Column("data_type", sa.String(50), nullable=False, comment="Garmin push key"),
        sa.Column("garmin_user_id", sa.String(255), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        # Retry state
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default="pending",
            comment="pending, processed, abandoned",
        ),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("process_error", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        comment="Pushed records queued for retry after a transient failure",
    )
    op.create_index(
        "ix_push_retries_status_next_retry", "push_retries", ["status", "next_retry_at"]
    )


def downgrade() -> None:
    """Drop push_retries table."""
    op.drop_index("ix_push_retries_status_next_retry", table_name="push_retries")
    op.drop_table("push_retries")
