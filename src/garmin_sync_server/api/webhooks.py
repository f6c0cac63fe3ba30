"""Garmin push webhook.

Garmin POSTs batches keyed by data type::

    {"dailies": [{...}, ...], "sleeps": [...], "activities": [...]}

Garmin retries pushes that do not get a 200 and eventually disables the
endpoint, so the handler always answers 200 once the body parsed; bad
records are reported in the response body and the logs instead. Records
that failed for a transient reason are queued and replayed later.
"""

from typing import Any

import structlog
from litestar import Router, post
from litestar.status_codes import HTTP_200_OK
from sqlalchemy.ext.asyncio import AsyncSession

from garmin_sync_server.core.auth import garmin_push_guard
from garmin_sync_server.services.webhook_processor import (
    ACTIVITY_DATA_TYPES,
    HEALTH_DATA_TYPES,
    ActivityIngestionService,
    HealthPushProcessor,
    PushBatchResult,
)

logger = structlog.get_logger()


async def process_push(
    session: AsyncSession, payload: dict[str, Any]
) -> dict[str, PushBatchResult]:
    """Dispatch every batch in a push body to its processor.

    Args:
        session: Database session
        payload: Push body, data type key -> list of records

    Returns:
        Batch results keyed by data type
    """
    health = HealthPushProcessor(session)
    activities = ActivityIngestionService(session, error_handler=health.error_handler)
    results: dict[str, PushBatchResult] = {}

    for data_type, records in payload.items():
        if not isinstance(records, list):
            logger.warning("Ignoring push entry that is not a list", data_type=data_type)
            continue

        if data_type in ACTIVITY_DATA_TYPES:
            results[data_type] = await activities.process_activity_batch(
                records, source="webhook", data_type=data_type
            )
        elif data_type in HEALTH_DATA_TYPES:
            results[data_type] = await health.process_push_batch(data_type, records)
        else:
            logger.info("Unhandled push data type", data_type=data_type, records=len(records))
            results[data_type] = PushBatchResult(
                data_type=data_type,
                skipped=len(records),
                results=[f"skipped (unhandled type): {data_type}"],
            )

    return results


@post("/webhooks/garmin", status_code=HTTP_200_OK)
async def receive_garmin_push(data: dict[str, Any], session: AsyncSession) -> dict[str, Any]:
    """Receive a Garmin push notification.

    Example:
        POST /webhooks/garmin
        {"dailies": [{"userId": "abc", "calendarDate": "2025-01-15", ...}]}
    """
    results = await process_push(session, data)
    return {
        "status": "ok",
        "processed": sum(r.processed for r in results.values()),
        "skipped": sum(r.skipped for r in results.values()),
        "queued": sum(r.queued for r in results.values()),
        "results": {data_type: r.to_dict() for data_type, r in results.items()},
    }


webhooks_router = Router(
    path="/",
    guards=[garmin_push_guard],
    route_handlers=[receive_garmin_push],
)
