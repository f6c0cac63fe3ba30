"""Garmin integration, backfill and activation endpoints.

All routes sit under /api/v1 behind the service API key.
"""

from datetime import timedelta
from typing import Annotated, Any

from litestar import Router, get, post, put
from litestar.exceptions import ValidationException
from litestar.params import Parameter
from litestar.status_codes import HTTP_200_OK
from sqlalchemy.ext.asyncio import AsyncSession

from garmin_sync_server.core.auth import api_key_guard
from garmin_sync_server.core.config import settings
from garmin_sync_server.core.security import get_token_encryption
from garmin_sync_server.exceptions import IntegrationNotFoundError
from garmin_sync_server.models.activation import ActivationStep
from garmin_sync_server.models.base import utcnow
from garmin_sync_server.schemas.backfill import BackfillProgress
from garmin_sync_server.schemas.integration import (
    AccessTokenResponse,
    IntegrationConnect,
    IntegrationStatus,
)
from garmin_sync_server.services.activation import ActivationService
from garmin_sync_server.services.backfill import BackfillService
from garmin_sync_server.services.garmin_client import GarminClient
from garmin_sync_server.services.token_manager import TokenManager
from garmin_sync_server.stores.integration import IntegrationRecord, IntegrationStore


def _integration_store(session: AsyncSession) -> IntegrationStore:
    return IntegrationStore(session, get_token_encryption())


def _status(record: IntegrationRecord) -> IntegrationStatus:
    return IntegrationStatus(
        user_id=record.user_id,
        provider_user_id=record.provider_user_id,
        is_active=record.is_active,
        token_expires_at=record.token_expires_at,
        last_synced_at=record.last_synced_at,
        reconnect_required=record.refresh_token_invalid,
    )


@put("/users/{user_id:str}/garmin/integration", status_code=HTTP_200_OK)
async def connect_integration(
    user_id: str,
    data: IntegrationConnect,
    session: AsyncSession,
) -> IntegrationStatus:
    """Store tokens from a completed Garmin OAuth flow.

    Reconnecting replaces the stored tokens and lifts a previous
    ``reconnect_required`` state.
    """
    now = utcnow()
    expires_in = (
        settings.token_default_expires_in_seconds
        if data.expires_in is None
        else data.expires_in
    )
    refresh_expires_at = (
        now + timedelta(seconds=data.refresh_token_expires_in)
        if data.refresh_token_expires_in is not None
        else None
    )
    record = await _integration_store(session).save_connection(
        user_id=user_id,
        provider_user_id=data.provider_user_id,
        access_token=data.access_token,
        refresh_token=data.refresh_token,
        token_expires_at=now + timedelta(seconds=expires_in),
        refresh_token_expires_at=refresh_expires_at,
    )
    await ActivationService(session).complete_activation_step(
        user_id, ActivationStep.CONNECT_DEVICE
    )
    return _status(record)


@get("/users/{user_id:str}/garmin/integration", status_code=HTTP_200_OK)
async def get_integration(user_id: str, session: AsyncSession) -> IntegrationStatus:
    """Connection state of the user's Garmin integration."""
    record = await _integration_store(session).get_for_user(user_id)
    if record is None:
        raise IntegrationNotFoundError(user_id)
    return _status(record)


@post("/users/{user_id:str}/garmin/token", status_code=HTTP_200_OK)
async def get_access_token(user_id: str, session: AsyncSession) -> AccessTokenResponse:
    """Return a Garmin access token, refreshing it first if it expires soon.

    Errors:
        401 reconnect_required: refresh token rejected or missing
        503 refresh_in_progress: another caller is refreshing (see Retry-After)
        502 garmin_unavailable: Garmin failed in a retryable way
    """
    store = _integration_store(session)
    async with GarminClient() as client:
        access_token = await TokenManager(store, client).get_valid_token_for_user(user_id)

    record = await store.get_for_user(user_id)
    return AccessTokenResponse(
        user_id=user_id,
        access_token=access_token,
        expires_at=record.token_expires_at if record else None,
    )


@post("/users/{user_id:str}/garmin/backfill", status_code=HTTP_200_OK)
async def start_backfill(
    user_id: str,
    session: AsyncSession,
    years: Annotated[int | None, Parameter(query="years", ge=1, le=5)] = None,
) -> dict[str, Any]:
    """Create backfill chunks and request them from Garmin.

    Activities arrive later through the push webhook; poll the GET route for
    progress.

    Example:
        POST /api/v1/users/abc/garmin/backfill?years=2
    """
    store = _integration_store(session)
    async with GarminClient() as client:
        access_token = await TokenManager(store, client).get_valid_token_for_user(user_id)
        summary = await BackfillService(session, client).start_backfill(
            user_id, access_token, years_back=years
        )

    return {
        "status": "success" if summary.success else "partial",
        "reconnect_required": summary.unauthorized,
        **summary.model_dump(mode="json"),
    }


@get("/users/{user_id:str}/garmin/backfill", status_code=HTTP_200_OK)
async def get_backfill_progress(user_id: str, session: AsyncSession) -> BackfillProgress:
    """Backfill progress: chunk counts per status and activities received."""
    return await BackfillService(session).get_progress(user_id)


@post("/users/{user_id:str}/garmin/backfill/retry", status_code=HTTP_200_OK)
async def retry_failed_chunks(user_id: str, session: AsyncSession) -> dict[str, Any]:
    """Move failed chunks back to pending so the next backfill run requests them."""
    reset = await BackfillService(session).reset_failed_chunks(user_id)
    return {"user_id": user_id, "reset": reset}


@post("/users/{user_id:str}/activation/{step:str}", status_code=HTTP_200_OK)
async def complete_activation_step(
    user_id: str, step: str, session: AsyncSession
) -> dict[str, Any]:
    """Mark an onboarding milestone as completed (idempotent)."""
    service = ActivationService(session)
    try:
        created = await service.complete_activation_step(user_id, step)
    except ValueError as e:
        valid = ", ".join(s.value for s in ActivationStep)
        raise ValidationException(f"Unknown activation step '{step}'. Use one of: {valid}") from e

    return {
        "user_id": user_id,
        "step": step,
        "newly_completed": created,
        "completed_steps": await service.completed_steps(user_id),
    }


integrations_router = Router(
    path="/",
    guards=[api_key_guard],
    route_handlers=[
        connect_integration,
        get_integration,
        get_access_token,
        start_backfill,
        get_backfill_progress,
        retry_failed_chunks,
        complete_activation_step,
    ],
)
