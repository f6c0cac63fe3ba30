"""Exception hierarchy for Garmin integration failures.

Every error carries ``is_transient`` so callers (HTTP handlers, the backfill
loop, the push processor) can decide between "retry later" and "the user has
to reconnect" without inspecting exception types themselves.
"""


class GarminSyncError(Exception):
    """Base class for all integration errors."""

    is_transient: bool = False


# ---------------------------------------------------------------------------
# Token lifecycle
# ---------------------------------------------------------------------------


class CredentialsMissingError(GarminSyncError):
    """Garmin client ID/secret are not configured."""

    def __init__(self, message: str = "Garmin client credentials are not configured") -> None:
        super().__init__(message)


class NoRefreshTokenError(GarminSyncError):
    """The integration has no refresh token; the user must reconnect."""

    def __init__(self, integration_id: str) -> None:
        self.integration_id = integration_id
        super().__init__(f"No refresh token stored for integration {integration_id}")


class RefreshRejectedError(GarminSyncError):
    """Garmin rejected the refresh token (400/401) or it was rejected before."""

    def __init__(self, integration_id: str, status_code: int | None = None) -> None:
        self.integration_id = integration_id
        self.status_code = status_code
        super().__init__(
            f"Refresh token rejected for integration {integration_id}; reconnect required"
        )


class LockContentionError(GarminSyncError):
    """Another caller holds the refresh lease and no fresh token appeared in time."""

    is_transient = True

    def __init__(self, integration_id: str, retry_after: int = 5) -> None:
        self.integration_id = integration_id
        self.retry_after = retry_after
        super().__init__(f"Token refresh in progress for integration {integration_id}")


class TokenRefreshError(GarminSyncError):
    """Refresh failed for a reason worth retrying (network, 5xx, unexpected status)."""

    is_transient = True

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TokenPersistError(GarminSyncError):
    """Garmin issued new tokens but they could not be stored.

    Fatal for this attempt: the previous refresh token may already be spent.
    """

    def __init__(self, integration_id: str, cause: Exception) -> None:
        self.integration_id = integration_id
        self.cause = cause
        super().__init__(f"Failed to persist refreshed tokens for integration {integration_id}")


class IntegrationNotFoundError(GarminSyncError):
    """No Garmin integration exists for the given user."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"No Garmin integration for user {user_id}")


# ---------------------------------------------------------------------------
# Garmin API
# ---------------------------------------------------------------------------


class GarminAPIError(GarminSyncError):
    """Garmin API returned an error response."""

    is_transient = True

    def __init__(
        self,
        message: str,
        endpoint: str | None = None,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class AuthenticationError(GarminAPIError):
    """Garmin rejected the access token (401)."""

    is_transient = False


class RateLimitError(GarminAPIError):
    """Garmin rate limited the request (429)."""

    def __init__(
        self,
        message: str,
        retry_after: int = 60,
        endpoint: str | None = None,
        status_code: int | None = 429,
        response_body: str | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, endpoint, status_code, response_body)
