"""Backfill chunk model for tracking historical data requests.

Garmin backfill is asynchronous: a request only queues the time range and
the data is pushed to our webhook later. Each chunk row is a small state
machine recording where its window is in that round trip.

    pending ──200/202──> requested ──(stale sweep)──> received
       │  ↑                  │
       │  └──reset── failed <┘ (any other response)
       └──409──> already_processed
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from garmin_sync_server.models.base import Base, TimestampMixin, UserScopedMixin, generate_uuid


class ChunkStatus(str, Enum):
    """Status of a backfill chunk.

    Attributes:
        PENDING: Created, not yet requested
        REQUESTED: Garmin accepted the request; pushes may still arrive
        RECEIVED: Window considered complete
        ALREADY_PROCESSED: Garmin answered 409, the range was backfilled before
        FAILED: Request failed; eligible for retry
    """

    PENDING = "pending"
    REQUESTED = "requested"
    RECEIVED = "received"
    ALREADY_PROCESSED = "already_processed"
    FAILED = "failed"


class BackfillChunk(Base, UserScopedMixin, TimestampMixin):
    """One historical time window requested from Garmin for a user."""

    __tablename__ = "backfill_chunks"
    __table_args__ = (
        UniqueConstraint("user_id", "chunk_start", "chunk_end", name="uq_backfill_chunk_range"),
        Index("ix_backfill_chunks_user_status", "user_id", "status"),
        {"comment": "Historical backfill windows and their request status"},
    )

    # Primary key
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid,
    )

    # Window
    chunk_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    chunk_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    start_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # State
    status: Mapped[str] = mapped_column(
        String(20), default=ChunkStatus.PENDING.value, nullable=False
    )
    activity_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<BackfillChunk(user_id={self.user_id}, start={self.start_timestamp}, "
            f"end={self.end_timestamp}, status={self.status})>"
        )

    @property
    def is_complete(self) -> bool:
        """Return True if no more work is expected for this window."""
        return self.status in (ChunkStatus.RECEIVED.value, ChunkStatus.ALREADY_PROCESSED.value)

    @property
    def range_label(self) -> str:
        """Human-readable date range, e.g. ``2024-01-01 to 2024-03-01``."""
        return f"{self.chunk_start.date().isoformat()} to {self.chunk_end.date().isoformat()}"
