"""Application services."""

from garmin_sync_server.services.activation import ActivationService
from garmin_sync_server.services.backfill import BackfillService
from garmin_sync_server.services.error_handler import IntegrationErrorHandler
from garmin_sync_server.services.garmin_client import GarminClient
from garmin_sync_server.services.push_retry import PushRetryService
from garmin_sync_server.services.token_manager import TokenManager
from garmin_sync_server.services.webhook_processor import (
    ActivityIngestionService,
    HealthPushProcessor,
)

__all__ = [
    "ActivationService",
    "ActivityIngestionService",
    "BackfillService",
    "GarminClient",
    "HealthPushProcessor",
    "IntegrationErrorHandler",
    "PushRetryService",
    "TokenManager",
]
