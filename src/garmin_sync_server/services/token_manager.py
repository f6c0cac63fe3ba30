"""Token lifecycle manager.

Hands out valid Garmin access tokens, refreshing them ahead of expiry.

Refreshes are serialized per integration through a lease stored on the
integration row itself (``refresh_lock_until``), taken with one atomic
conditional UPDATE. That holds across processes and machines, which an
in-process lock would not. The lease expires on its own, so a caller that
crashes mid-refresh only delays the next refresh by the lease duration.

Flow for a token that needs refreshing:

    already rejected?  ──yes──> RefreshRejectedError (no Garmin call)
    take lease         ──lost─> wait, re-read: fresh token or LockContentionError
    re-read under lease ──fresh─> release lease, return the token another caller stored
    POST token endpoint
        200      -> persist tokens, clear lease and invalid flag
        400/401  -> flag refresh_token_invalid, clear lease, RefreshRejectedError
        other    -> clear lease, TokenRefreshError (transient)
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError

from garmin_sync_server.core.config import settings
from garmin_sync_server.exceptions import (
    CredentialsMissingError,
    GarminAPIError,
    IntegrationNotFoundError,
    LockContentionError,
    NoRefreshTokenError,
    RefreshRejectedError,
    TokenPersistError,
    TokenRefreshError,
)
from garmin_sync_server.models.base import utcnow
from garmin_sync_server.services.garmin_client import GarminClient
from garmin_sync_server.stores.integration import IntegrationRecord, IntegrationStore

logger = structlog.get_logger()

# Token endpoint statuses that mean the refresh token itself is dead
REJECTED_STATUS_CODES = (400, 401)


class TokenManager:
    """Return valid access tokens, refreshing under a cross-process lease."""

    def __init__(
        self,
        store: IntegrationStore,
        client: GarminClient,
        refresh_threshold_seconds: int | None = None,
        lease_seconds: int | None = None,
        lock_wait_seconds: float | None = None,
        min_validity_after_wait_seconds: int | None = None,
        default_expires_in_seconds: int | None = None,
    ) -> None:
        """Initialize token manager.

        Timing arguments default to the corresponding settings.

        Args:
            store: Integration store (session-bound)
            client: Garmin HTTP client
            refresh_threshold_seconds: Refresh tokens expiring within this window
            lease_seconds: Refresh lease duration
            lock_wait_seconds: Wait before re-reading when the lease is taken
            min_validity_after_wait_seconds: Validity a re-read token must still have
            default_expires_in_seconds: Lifetime assumed when Garmin omits expires_in
        """
        self.store = store
        self.client = client
        if refresh_threshold_seconds is None:
            refresh_threshold_seconds = settings.token_refresh_threshold_seconds
        if lease_seconds is None:
            lease_seconds = settings.token_refresh_lease_seconds
        if lock_wait_seconds is None:
            lock_wait_seconds = settings.token_lock_wait_seconds
        if min_validity_after_wait_seconds is None:
            min_validity_after_wait_seconds = settings.token_min_validity_after_wait_seconds
        if default_expires_in_seconds is None:
            default_expires_in_seconds = settings.token_default_expires_in_seconds

        self.refresh_threshold = timedelta(seconds=refresh_threshold_seconds)
        self.lease_seconds = lease_seconds
        self.lock_wait_seconds = lock_wait_seconds
        self.min_validity_after_wait = timedelta(seconds=min_validity_after_wait_seconds)
        self.default_expires_in = default_expires_in_seconds
        self.logger = logger.bind(service="token_manager")

    async def get_valid_token_for_user(self, user_id: str) -> str:
        """Load the user's integration and return a valid access token.

        Raises:
            IntegrationNotFoundError: If the user has no Garmin integration
        """
        record = await self.store.get_for_user(user_id)
        if record is None:
            raise IntegrationNotFoundError(user_id)
        return await self.ensure_valid_access_token(record)

    async def ensure_valid_access_token(self, record: IntegrationRecord) -> str:
        """Return an access token valid beyond the refresh threshold.

        Tokens that are fresh enough are returned without touching the store.

        Args:
            record: Integration to get a token for

        Returns:
            A valid access token

        Raises:
            RefreshRejectedError: Refresh token rejected now or earlier; reconnect required
            CredentialsMissingError: Garmin client credentials not configured
            NoRefreshTokenError: Integration has no refresh token
            LockContentionError: Another caller is refreshing; retry later
            TokenRefreshError: Transient refresh failure
            TokenPersistError: Refresh succeeded but the new tokens were not stored
        """
        now = utcnow()
        if record.token_expires_at is not None and record.token_expires_at > (
            now + self.refresh_threshold
        ):
            return record.access_token

        log = self.logger.bind(integration_id=record.id, user_id=record.user_id)

        if record.refresh_token_invalid:
            log.info("Refresh token previously rejected, reconnect required")
            raise RefreshRejectedError(record.id)
        if not self.client.has_credentials:
            raise CredentialsMissingError()
        if not record.refresh_token:
            raise NoRefreshTokenError(record.id)

        acquired = await self.store.try_acquire_refresh_lease(record.id, now, self.lease_seconds)
        if not acquired:
            log.info("Refresh lease held elsewhere, waiting", wait_seconds=self.lock_wait_seconds)
            return await self._wait_for_concurrent_refresh(record)

        # The caller's copy may predate a refresh that finished before we took the lease
        current = await self._reread_under_lease(record)
        if current.token_expires_at is not None and current.token_expires_at > (
            utcnow() + self.refresh_threshold
        ):
            log.info("Token already refreshed by another caller")
            await self._release(record.id)
            return current.access_token

        log.info(
            "Refreshing Garmin access token",
            token_expires_at=current.token_expires_at.isoformat()
            if current.token_expires_at
            else None,
        )
        return await self._refresh(current)

    async def _reread_under_lease(self, record: IntegrationRecord) -> IntegrationRecord:
        """Load the current row while holding the lease, releasing it if unusable."""
        try:
            current = await self.store.get(record.id)
        except SQLAlchemyError as e:
            await self._release(record.id)
            raise TokenRefreshError(f"Failed to re-read integration: {e}") from e

        if current is None:
            raise IntegrationNotFoundError(record.user_id)
        if current.refresh_token_invalid:
            await self._release(record.id)
            raise RefreshRejectedError(record.id)
        if not current.refresh_token:
            await self._release(record.id)
            raise NoRefreshTokenError(record.id)
        return current

    async def _refresh(self, record: IntegrationRecord) -> str:
        """Call the token endpoint while holding the lease."""
        assert record.refresh_token is not None
        log = self.logger.bind(integration_id=record.id, user_id=record.user_id)

        try:
            tokens = await self.client.refresh_access_token(record.refresh_token)
        except GarminAPIError as e:
            if e.status_code in REJECTED_STATUS_CODES:
                log.warning("Refresh token rejected by Garmin", status_code=e.status_code)
                await self._flag_invalid(record.id)
                raise RefreshRejectedError(record.id, e.status_code) from e
            await self._release(record.id)
            raise TokenRefreshError(str(e), status_code=e.status_code) from e
        except httpx.HTTPError as e:
            await self._release(record.id)
            raise TokenRefreshError(f"Token refresh request failed: {e}") from e

        now = utcnow()
        expires_at = now + timedelta(seconds=tokens.expires_in or self.default_expires_in)
        refresh_expires_at = (
            now + timedelta(seconds=tokens.refresh_token_expires_in)
            if tokens.refresh_token_expires_in
            else None
        )

        try:
            await self.store.save_refreshed_tokens(
                record.id,
                access_token=tokens.access_token,
                # Garmin may omit refresh_token; the old one stays valid then
                refresh_token=tokens.refresh_token or record.refresh_token,
                token_expires_at=expires_at,
                refresh_token_expires_at=refresh_expires_at,
            )
        except SQLAlchemyError as e:
            log.error("Failed to persist refreshed tokens", error=str(e))
            raise TokenPersistError(record.id, e) from e

        log.info("Garmin access token refreshed", token_expires_at=expires_at.isoformat())
        return tokens.access_token

    async def _wait_for_concurrent_refresh(self, record: IntegrationRecord) -> str:
        """Wait once for the lease holder, then re-read the record."""
        await asyncio.sleep(self.lock_wait_seconds)

        current = await self.store.get(record.id)
        if current is None:
            raise IntegrationNotFoundError(record.user_id)
        if current.refresh_token_invalid:
            raise RefreshRejectedError(record.id)
        if current.token_expires_at is not None and current.token_expires_at > (
            utcnow() + self.min_validity_after_wait
        ):
            return current.access_token

        self.logger.warning(
            "Token still not refreshed after waiting",
            integration_id=record.id,
            user_id=record.user_id,
        )
        raise LockContentionError(record.id)

    async def _flag_invalid(self, integration_id: str) -> None:
        try:
            await self.store.mark_refresh_token_invalid(integration_id)
        except SQLAlchemyError:
            # Lease still expires on its own; the rejection is raised regardless
            self.logger.exception(
                "Failed to flag refresh token invalid", integration_id=integration_id
            )

    async def _release(self, integration_id: str) -> None:
        try:
            await self.store.release_refresh_lease(integration_id)
        except SQLAlchemyError:
            self.logger.exception("Failed to release refresh lease", integration_id=integration_id)
