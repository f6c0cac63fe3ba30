"""Job endpoints for external schedulers (cron, Cloud Scheduler, ...)."""

from typing import Annotated

from litestar import Router, post
from litestar.params import Parameter
from litestar.status_codes import HTTP_200_OK
from sqlalchemy.ext.asyncio import AsyncSession

from garmin_sync_server.core.auth import api_key_guard
from garmin_sync_server.core.config import settings
from garmin_sync_server.schemas.backfill import ReconcileResult
from garmin_sync_server.schemas.push_retry import PushRetrySummary
from garmin_sync_server.services.backfill import BackfillService
from garmin_sync_server.services.push_retry import PushRetryService


@post("/jobs/backfill/reconcile", status_code=HTTP_200_OK)
async def reconcile_backfill(
    session: AsyncSession,
    user_id: Annotated[str | None, Parameter(query="user_id")] = None,
) -> ReconcileResult:
    """Mark requested chunks older than the stale window as received.

    Example:
        POST /api/v1/jobs/backfill/reconcile
    """
    marked = await BackfillService(session).mark_stale_chunks_received(user_id=user_id)
    return ReconcileResult(
        marked_received=marked,
        stale_after_hours=settings.backfill_stale_after_hours,
    )


@post("/jobs/webhooks/retry", status_code=HTTP_200_OK)
async def retry_pushes(session: AsyncSession) -> PushRetrySummary:
    """Replay queued push records whose retry time has come.

    Example:
        POST /api/v1/jobs/webhooks/retry
    """
    return await PushRetryService(session).retry_due()


jobs_router = Router(
    path="/",
    guards=[api_key_guard],
    route_handlers=[reconcile_backfill, retry_pushes],
)
