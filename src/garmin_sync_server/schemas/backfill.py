"""Pydantic schemas for backfill API responses."""

from datetime import datetime

from pydantic import BaseModel, Field


class ChunkError(BaseModel):
    """A chunk that could not be requested."""

    chunk_id: str
    range: str = Field(description="Date range, e.g. '2024-01-01 to 2024-03-01'")
    status_code: int | None = Field(default=None, description="Garmin HTTP status, if any")
    error: str


class BackfillSummary(BaseModel):
    """Result of one backfill request loop."""

    user_id: str
    total: int = Field(description="Chunks attempted in this run")
    requested: int = 0
    already_processed: int = 0
    failed: int = 0
    chunks_created: int = Field(default=0, description="New chunk rows created by this run")
    unauthorized: bool = Field(
        default=False, description="Garmin answered 401; the loop stopped early"
    )
    errors: list[ChunkError] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0 and not self.unauthorized


class ChunkProgress(BaseModel):
    """State of a single chunk."""

    id: str
    chunk_start: datetime
    chunk_end: datetime
    status: str
    is_complete: bool = Field(description="No more data is expected for this window")
    activity_count: int
    retry_count: int
    requested_at: datetime | None = None
    received_at: datetime | None = None
    error_message: str | None = None


class BackfillProgress(BaseModel):
    """Backfill progress for a user."""

    user_id: str
    total: int = 0
    pending: int = 0
    requested: int = 0
    received: int = 0
    already_processed: int = 0
    failed: int = 0
    activities_received: int = 0
    percent_complete: int = Field(
        default=0, description="(received + already_processed) / total, as a percentage"
    )
    oldest_chunk: datetime | None = None
    newest_chunk: datetime | None = None
    chunks: list[ChunkProgress] = Field(default_factory=list)


class ReconcileResult(BaseModel):
    """Result of a stale-chunk sweep."""

    marked_received: int
    stale_after_hours: int
