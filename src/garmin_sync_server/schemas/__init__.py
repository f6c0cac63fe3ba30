"""Pydantic schemas for API responses."""

from garmin_sync_server.schemas.backfill import (
    BackfillProgress,
    BackfillSummary,
    ChunkError,
    ChunkProgress,
    ReconcileResult,
)
from garmin_sync_server.schemas.integration import (
    AccessTokenResponse,
    IntegrationConnect,
    IntegrationStatus,
)
from garmin_sync_server.schemas.push_retry import PushRetrySummary

__all__ = [
    "AccessTokenResponse",
    "BackfillProgress",
    "BackfillSummary",
    "ChunkError",
    "ChunkProgress",
    "IntegrationConnect",
    "IntegrationStatus",
    "PushRetrySummary",
    "ReconcileResult",
]
