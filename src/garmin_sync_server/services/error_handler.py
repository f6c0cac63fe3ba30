"""Error handler for consistent classification of integration failures.

Used wherever a failure has to be recorded instead of raised: a backfill
chunk that could not be requested, a pushed record that could not be
stored. Each exception is classified into an IntegrationErrorType with a
message fit for ``error_message`` columns and a retry hint.

Error Classification:

    TRANSIENT (can retry):
    - LOCK_CONTENTION: Another request is refreshing the token
    - RATE_LIMITED: Garmin rate limit hit, back off
    - API_UNAVAILABLE: Garmin unreachable or 5xx
    - API_TIMEOUT: Request timed out
    - API_ERROR: Garmin returned an unexpected error response
    - TOKEN_REFRESH_FAILED: Refresh failed for a retryable reason
    - DATABASE_ERROR: Write failed, retry after reconnect

    PERMANENT (don't retry automatically):
    - CREDENTIALS_MISSING: Client ID/secret not configured
    - TOKEN_INVALID: Access token rejected, refresh or reconnect needed
    - REFRESH_REJECTED: Refresh token rejected, user must reconnect
    - PERMISSION_DENIED: User did not grant the required permission (403)
    - TOKEN_PERSIST_FAILED: New tokens issued but not stored
    - TRANSFORM_ERROR: Payload could not be mapped
    - INTERNAL_ERROR: Unexpected internal error
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError

from garmin_sync_server.core.config import settings
from garmin_sync_server.exceptions import (
    AuthenticationError,
    CredentialsMissingError,
    GarminAPIError,
    GarminSyncError,
    LockContentionError,
    NoRefreshTokenError,
    RateLimitError,
    RefreshRejectedError,
    TokenPersistError,
    TokenRefreshError,
)

logger = structlog.get_logger()


class IntegrationErrorType(str, Enum):
    """Categorized error types for integration failures."""

    # Configuration and auth
    CREDENTIALS_MISSING = "credentials_missing"
    TOKEN_INVALID = "token_invalid"
    REFRESH_REJECTED = "refresh_rejected"
    TOKEN_REFRESH_FAILED = "token_refresh_failed"
    TOKEN_PERSIST_FAILED = "token_persist_failed"
    LOCK_CONTENTION = "lock_contention"
    PERMISSION_DENIED = "permission_denied"

    # Provider
    RATE_LIMITED = "rate_limited"
    API_UNAVAILABLE = "api_unavailable"
    API_TIMEOUT = "api_timeout"
    API_ERROR = "api_error"

    # Data and internal
    TRANSFORM_ERROR = "transform_error"
    DATABASE_ERROR = "database_error"
    INTERNAL_ERROR = "internal_error"


@dataclass
class IntegrationError:
    """Structured error with classification and retry info.

    Attributes:
        error_type: Categorized error type for consistent handling
        message: Human-readable error message
        details: Additional error context as dict
        retry_after_seconds: Seconds to wait before retry (None if no retry)
        is_transient: Whether error is temporary and can be retried
        original_exception: The original exception that caused this error
    """

    error_type: IntegrationErrorType
    message: str
    details: dict[str, Any]
    retry_after_seconds: int | None
    is_transient: bool
    original_exception: Exception | None = None

    def to_log_dict(self) -> dict[str, Any]:
        """Convert to dict for structured logging."""
        return {
            "error_type": self.error_type.value,
            "message": self.message,
            "is_transient": self.is_transient,
            "retry_after_seconds": self.retry_after_seconds,
            **self.details,
        }


class IntegrationErrorHandler:
    """Classifies exceptions into IntegrationErrorType categories.

    Usage:
        handler = IntegrationErrorHandler()

        try:
            await client.request_activity_backfill(token, start, end)
        except Exception as e:
            error = handler.classify(e, context={"chunk_id": chunk.id})
            await store.mark_failed(chunk.id, error.message)
    """

    def __init__(self) -> None:
        """Initialize error handler."""
        self.logger = logger.bind(component="error_handler")

    def classify(
        self,
        exception: Exception,
        context: dict[str, Any] | None = None,
    ) -> IntegrationError:
        """Classify an exception into an IntegrationError.

        Args:
            exception: The exception to classify
            context: Additional context (user_id, chunk_id, data_type, etc.)

        Returns:
            IntegrationError with classification and retry info
        """
        context = context or {}

        # Token lifecycle
        if isinstance(exception, (RefreshRejectedError, NoRefreshTokenError)):
            return self._simple(
                exception,
                context,
                IntegrationErrorType.REFRESH_REJECTED,
                "Garmin authorization is no longer valid. Reconnect required.",
            )
        if isinstance(exception, CredentialsMissingError):
            return self._simple(
                exception, context, IntegrationErrorType.CREDENTIALS_MISSING, str(exception)
            )
        if isinstance(exception, LockContentionError):
            return self._simple(
                exception,
                context,
                IntegrationErrorType.LOCK_CONTENTION,
                str(exception),
                retry_after=exception.retry_after,
            )
        if isinstance(exception, TokenRefreshError):
            return self._simple(
                exception,
                context,
                IntegrationErrorType.TOKEN_REFRESH_FAILED,
                f"Token refresh failed: {exception}",
                retry_after=300,
            )
        if isinstance(exception, TokenPersistError):
            return self._simple(
                exception, context, IntegrationErrorType.TOKEN_PERSIST_FAILED, str(exception)
            )

        # Garmin API
        if isinstance(exception, RateLimitError):
            return self._handle_rate_limit(exception, context)
        if isinstance(exception, AuthenticationError):
            return self._handle_auth_error(exception, context)
        if isinstance(exception, GarminAPIError):
            return self._handle_api_error(exception, context)
        if isinstance(exception, GarminSyncError):
            return self._handle_unknown_error(exception, context)

        # HTTP client exceptions
        if isinstance(exception, httpx.TimeoutException):
            return self._handle_timeout(exception, context)
        if isinstance(exception, httpx.ConnectError):
            return self._handle_connect_error(exception, context)
        if isinstance(exception, httpx.HTTPError):
            return self._handle_connect_error(exception, context)

        # Database exceptions
        if isinstance(exception, SQLAlchemyError):
            return self._handle_database_error(exception, context)

        # Transformation errors (ValueError, KeyError, TypeError in transforms)
        if isinstance(exception, (ValueError, KeyError, TypeError)):
            return self._handle_transform_error(exception, context)

        return self._handle_unknown_error(exception, context)

    def _simple(
        self,
        exception: GarminSyncError,
        context: dict[str, Any],
        error_type: IntegrationErrorType,
        message: str,
        retry_after: int | None = None,
    ) -> IntegrationError:
        """Token lifecycle errors already know whether they are transient."""
        log = self.logger.warning if exception.is_transient else self.logger.error
        log("Token lifecycle error", error_type=error_type.value, error=str(exception), **context)

        return IntegrationError(
            error_type=error_type,
            message=message,
            details={**context},
            retry_after_seconds=retry_after if exception.is_transient else None,
            is_transient=exception.is_transient,
            original_exception=exception,
        )

    def _handle_rate_limit(
        self,
        exception: RateLimitError,
        context: dict[str, Any],
    ) -> IntegrationError:
        """Handle 429 responses from Garmin."""
        retry_after = exception.retry_after

        self.logger.warning(
            "Rate limit hit",
            retry_after=retry_after,
            endpoint=exception.endpoint,
            **context,
        )

        return IntegrationError(
            error_type=IntegrationErrorType.RATE_LIMITED,
            message=f"Rate limited by Garmin API. Retry after {retry_after}s.",
            details={
                "endpoint": exception.endpoint,
                "retry_after": retry_after,
                **context,
            },
            retry_after_seconds=retry_after,
            is_transient=True,
            original_exception=exception,
        )

    def _handle_auth_error(
        self,
        exception: AuthenticationError,
        context: dict[str, Any],
    ) -> IntegrationError:
        """Handle a 401 on an API call: the access token was not accepted."""
        self.logger.error(
            "Authentication error",
            endpoint=exception.endpoint,
            **context,
        )

        return IntegrationError(
            error_type=IntegrationErrorType.TOKEN_INVALID,
            message="Garmin rejected the access token (401). Token refresh or reconnect required.",
            details={
                "endpoint": exception.endpoint,
                "status_code": exception.status_code,
                **context,
            },
            retry_after_seconds=None,
            is_transient=False,
            original_exception=exception,
        )

    def _handle_api_error(
        self,
        exception: GarminAPIError,
        context: dict[str, Any],
    ) -> IntegrationError:
        """Handle Garmin error responses by status code."""
        status_code = exception.status_code

        if status_code == 403:
            error_type = IntegrationErrorType.PERMISSION_DENIED
            message = "Garmin permission not granted (403). User must enable it in Garmin Connect."
            is_transient = False
        elif status_code is not None and status_code >= 500:
            error_type = IntegrationErrorType.API_UNAVAILABLE
            message = f"Garmin API unavailable (HTTP {status_code})"
            is_transient = True
        else:
            error_type = IntegrationErrorType.API_ERROR
            message = f"Garmin API error (HTTP {status_code}): {exception}"
            is_transient = True

        self.logger.error(
            "Garmin API error",
            endpoint=exception.endpoint,
            status_code=status_code,
            response=exception.response_body[:200] if exception.response_body else None,
            **context,
        )

        return IntegrationError(
            error_type=error_type,
            message=message,
            details={
                "endpoint": exception.endpoint,
                "status_code": status_code,
                "response_body": exception.response_body[:500] if exception.response_body else None,
                **context,
            },
            retry_after_seconds=300 if is_transient else None,
            is_transient=is_transient,
            original_exception=exception,
        )

    def _handle_timeout(
        self,
        exception: httpx.TimeoutException,
        context: dict[str, Any],
    ) -> IntegrationError:
        """Handle HTTP timeout errors."""
        self.logger.warning("API request timeout", error=str(exception), **context)

        return IntegrationError(
            error_type=IntegrationErrorType.API_TIMEOUT,
            message=f"Request timed out: {exception}",
            details={
                "error": str(exception),
                **context,
            },
            retry_after_seconds=60,
            is_transient=True,
            original_exception=exception,
        )

    def _handle_connect_error(
        self,
        exception: httpx.HTTPError,
        context: dict[str, Any],
    ) -> IntegrationError:
        """Handle connection errors (API unreachable)."""
        self.logger.error("API connection failed", error=str(exception), **context)

        return IntegrationError(
            error_type=IntegrationErrorType.API_UNAVAILABLE,
            message=f"Failed to connect to Garmin API: {exception}",
            details={
                "error": str(exception),
                **context,
            },
            retry_after_seconds=300,
            is_transient=True,
            original_exception=exception,
        )

    def _handle_database_error(
        self,
        exception: SQLAlchemyError,
        context: dict[str, Any],
    ) -> IntegrationError:
        """Handle database errors."""
        self.logger.error("Database error", error=str(exception), **context)

        return IntegrationError(
            error_type=IntegrationErrorType.DATABASE_ERROR,
            message=f"Database error: {type(exception).__name__}",
            details={
                "error_type": type(exception).__name__,
                "error": str(exception)[:500],
                **context,
            },
            retry_after_seconds=60,
            is_transient=True,
            original_exception=exception,
        )

    def _handle_transform_error(
        self,
        exception: ValueError | KeyError | TypeError,
        context: dict[str, Any],
    ) -> IntegrationError:
        """Handle payload mapping errors."""
        self.logger.warning(
            "Transform error",
            error_type=type(exception).__name__,
            error=str(exception),
            **context,
        )

        return IntegrationError(
            error_type=IntegrationErrorType.TRANSFORM_ERROR,
            message=f"Malformed record: {exception}",
            details={
                "error_type": type(exception).__name__,
                "error": str(exception),
                **context,
            },
            retry_after_seconds=None,
            is_transient=False,
            original_exception=exception,
        )

    def _handle_unknown_error(
        self,
        exception: Exception,
        context: dict[str, Any],
    ) -> IntegrationError:
        """Handle unknown/unexpected errors."""
        self.logger.exception(
            "Unexpected integration error",
            error_type=type(exception).__name__,
            error=str(exception),
            **context,
        )

        return IntegrationError(
            error_type=IntegrationErrorType.INTERNAL_ERROR,
            message=f"Unexpected error: {type(exception).__name__}: {exception}",
            details={
                "error_type": type(exception).__name__,
                "error": str(exception)[:500],
                **context,
            },
            retry_after_seconds=300,
            is_transient=True,
            original_exception=exception,
        )


def retry_delay_seconds(error: IntegrationError, attempt: int) -> int:
    """Seconds to wait before the next retry of a transiently failed operation.

    Exponential backoff from ``PUSH_RETRY_BASE_DELAY_SECONDS`` (1, 2, 4 ... 32
    minutes by default), but never shorter than the error's own retry hint.

    Args:
        error: Classified failure
        attempt: Retries already made (0 for the first retry)
    """
    backoff = min(
        settings.push_retry_base_delay_seconds * 2**attempt,
        settings.push_retry_max_delay_seconds,
    )
    return max(backoff, error.retry_after_seconds or 0)
