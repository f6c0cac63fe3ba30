"""Garmin HTTP client.

Two calls are all this service makes to Garmin:

- OAuth2 token refresh (form-encoded POST to the token endpoint)
- Backfill request (GET on the Wellness API backfill endpoint); Garmin only
  queues the range and pushes the data to our webhook later.

The client does not interpret backfill status codes: 200/202/409/401/403 all
carry meaning for the orchestrator, so it gets the raw status back.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from garmin_sync_server.core.config import settings
from garmin_sync_server.exceptions import CredentialsMissingError, GarminAPIError

logger = structlog.get_logger()


@dataclass
class TokenResponse:
    """Parsed token endpoint response."""

    access_token: str
    refresh_token: str | None
    expires_in: int | None
    refresh_token_expires_in: int | None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> TokenResponse:
        """Build from the token endpoint JSON body.

        Raises:
            GarminAPIError: If the body has no access_token
        """
        access_token = data.get("access_token")
        if not access_token:
            raise GarminAPIError("Token response did not include an access_token")

        def _seconds(key: str) -> int | None:
            value = data.get(key)
            return int(value) if value is not None else None

        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_in=_seconds("expires_in"),
            refresh_token_expires_in=_seconds("refresh_token_expires_in"),
        )


@dataclass
class BackfillResponse:
    """Outcome of one backfill request."""

    status_code: int
    body: str

    @property
    def accepted(self) -> bool:
        return self.status_code in (200, 202)


class GarminClient:
    """Async client for the Garmin token and backfill endpoints.

    Usage:
        async with GarminClient() as client:
            tokens = await client.refresh_access_token(refresh_token)
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        token_url: str | None = None,
        api_base: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client_id = client_id if client_id is not None else settings.garmin_client_id
        self.client_secret = (
            client_secret if client_secret is not None else settings.garmin_client_secret
        )
        self.token_url = token_url or settings.garmin_token_url
        self.api_base = (api_base or settings.garmin_api_base).rstrip("/")
        self._http = httpx.AsyncClient(
            timeout=timeout or settings.garmin_http_timeout_seconds,
            transport=transport,
        )
        self.logger = logger.bind(component="garmin_client")

    async def __aenter__(self) -> GarminClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._http.aclose()

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """Exchange a refresh token for a new access token.

        Args:
            refresh_token: Current refresh token

        Returns:
            Parsed token response

        Raises:
            CredentialsMissingError: If client ID/secret are not configured
            GarminAPIError: On any non-200 response (status_code set)
            httpx.HTTPError: On network failures
        """
        if not self.has_credentials:
            raise CredentialsMissingError()

        response = await self._http.post(
            self.token_url,
            data={
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
            },
            headers={"Accept": "application/json"},
        )

        if response.status_code != 200:
            self.logger.warning(
                "Token refresh rejected",
                status_code=response.status_code,
                response=response.text[:200],
            )
            raise GarminAPIError(
                f"Token refresh failed with HTTP {response.status_code}",
                endpoint=self.token_url,
                status_code=response.status_code,
                response_body=response.text,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise GarminAPIError(
                "Token endpoint returned invalid JSON",
                endpoint=self.token_url,
                status_code=response.status_code,
                response_body=response.text,
            ) from e

        return TokenResponse.from_json(payload)

    async def request_backfill(
        self,
        access_token: str,
        start_timestamp: int,
        end_timestamp: int,
        summary_type: str = "activities",
    ) -> BackfillResponse:
        """Ask Garmin to push historical summaries for a time range.

        Args:
            access_token: Valid user access token
            start_timestamp: Range start (epoch seconds)
            end_timestamp: Range end (epoch seconds)
            summary_type: Wellness API summary type (activities, dailies, ...)

        Returns:
            Status code and body, uninterpreted

        Raises:
            httpx.HTTPError: On network failures
        """
        url = f"{self.api_base}/backfill/{summary_type}"
        response = await self._http.get(
            url,
            params={
                "summaryStartTimeInSeconds": start_timestamp,
                "summaryEndTimeInSeconds": end_timestamp,
            },
            headers={"Authorization": f"Bearer {access_token}"},
        )

        self.logger.debug(
            "Backfill request sent",
            summary_type=summary_type,
            start=start_timestamp,
            end=end_timestamp,
            status_code=response.status_code,
        )
        return BackfillResponse(status_code=response.status_code, body=response.text)
