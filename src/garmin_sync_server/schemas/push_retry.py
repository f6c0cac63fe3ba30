"""Pydantic schemas for the push retry queue."""

from pydantic import BaseModel, Field


class PushRetrySummary(BaseModel):
    """Result of one replay run over the push retry queue."""

    due: int = Field(default=0, description="Queued records whose retry time had come")
    processed: int = Field(default=0, description="Replayed successfully")
    rescheduled: int = Field(default=0, description="Failed again, retried later")
    abandoned: int = Field(default=0, description="Failed permanently or ran out of attempts")
    expired: int = Field(default=0, description="Queued longer than the max age, not retried")
