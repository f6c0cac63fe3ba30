"""Queue of pushed records whose processing failed transiently.

Garmin does not redeliver a push we answered with 200, so a record that
hit a database error or lock contention is kept here and replayed later
with exponential backoff.

    pending ──replay ok──> processed
       │ └──transient failure──> pending (retry_count + 1, later next_retry_at)
       └──permanent failure, attempts exhausted or too old──> abandoned
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from garmin_sync_server.models.base import Base, TimestampMixin, generate_uuid


class PushRetryStatus(str, Enum):
    """Status of a queued push record.

    Attributes:
        PENDING: Waiting for its next retry
        PROCESSED: Replayed successfully
        ABANDONED: Given up; ``process_error`` says why
    """

    PENDING = "pending"
    PROCESSED = "processed"
    ABANDONED = "abandoned"


class PushRetry(Base, TimestampMixin):
    """One pushed record waiting to be processed again."""

    __tablename__ = "push_retries"
    __table_args__ = (
        Index("ix_push_retries_status_next_retry", "status", "next_retry_at"),
        {"comment": "Pushed records queued for retry after a transient failure"},
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid,
    )

    # What was pushed
    data_type: Mapped[str] = mapped_column(String(50), nullable=False)
    garmin_user_id: Mapped[str | None] = mapped_column(String(255))
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    # Retry state
    status: Mapped[str] = mapped_column(
        String(20), default=PushRetryStatus.PENDING.value, nullable=False
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_retry_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    process_error: Mapped[str | None] = mapped_column(Text)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<PushRetry(data_type={self.data_type}, status={self.status}, "
            f"retry_count={self.retry_count})>"
        )
