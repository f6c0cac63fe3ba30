"""Tests for integration error classification.

Tests that:
1. Token lifecycle errors keep their own transient/permanent flag
2. Garmin responses are classified by status code
3. Malformed payloads are permanent, network failures are transient
"""

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from garmin_sync_server.exceptions import (
    AuthenticationError,
    CredentialsMissingError,
    GarminAPIError,
    LockContentionError,
    NoRefreshTokenError,
    RateLimitError,
    RefreshRejectedError,
    TokenPersistError,
    TokenRefreshError,
)
from garmin_sync_server.services.error_handler import (
    IntegrationErrorHandler,
    IntegrationErrorType,
    retry_delay_seconds,
)


@pytest.fixture
def handler() -> IntegrationErrorHandler:
    return IntegrationErrorHandler()


def test_refresh_rejected_requires_reconnect(handler):
    """A rejected refresh token is permanent and tells the user to reconnect."""
    error = handler.classify(RefreshRejectedError("int-1", status_code=400))

    assert error.error_type == IntegrationErrorType.REFRESH_REJECTED
    assert not error.is_transient
    assert error.retry_after_seconds is None
    assert "reconnect" in error.message.lower()


def test_missing_refresh_token_is_reconnect(handler):
    error = handler.classify(NoRefreshTokenError("int-1"))

    assert error.error_type == IntegrationErrorType.REFRESH_REJECTED
    assert not error.is_transient


def test_lock_contention_is_transient(handler):
    """Lock contention carries its own retry hint."""
    error = handler.classify(LockContentionError("int-1", retry_after=7))

    assert error.error_type == IntegrationErrorType.LOCK_CONTENTION
    assert error.is_transient
    assert error.retry_after_seconds == 7


def test_refresh_failure_is_transient(handler):
    error = handler.classify(TokenRefreshError("Garmin token endpoint returned 503", 503))

    assert error.error_type == IntegrationErrorType.TOKEN_REFRESH_FAILED
    assert error.is_transient
    assert "503" in error.message


def test_persist_failure_is_permanent(handler):
    error = handler.classify(TokenPersistError("int-1", RuntimeError("disk full")))

    assert error.error_type == IntegrationErrorType.TOKEN_PERSIST_FAILED
    assert not error.is_transient


def test_missing_credentials(handler):
    error = handler.classify(CredentialsMissingError())

    assert error.error_type == IntegrationErrorType.CREDENTIALS_MISSING
    assert not error.is_transient


def test_rate_limit(handler):
    """429 responses are transient with the provider's retry hint."""
    error = handler.classify(
        RateLimitError("slow down", retry_after=120, endpoint="backfill/activities"),
        context={"chunk_id": "chunk-1"},
    )

    assert error.error_type == IntegrationErrorType.RATE_LIMITED
    assert error.is_transient
    assert error.retry_after_seconds == 120
    assert error.details["chunk_id"] == "chunk-1"
    assert error.details["endpoint"] == "backfill/activities"


def test_access_token_rejected(handler):
    error = handler.classify(AuthenticationError("401", status_code=401))

    assert error.error_type == IntegrationErrorType.TOKEN_INVALID
    assert not error.is_transient


def test_permission_denied(handler):
    """A 403 means the user has not granted the permission; not retryable."""
    error = handler.classify(GarminAPIError("Forbidden", status_code=403))

    assert error.error_type == IntegrationErrorType.PERMISSION_DENIED
    assert not error.is_transient
    assert "403" in error.message


@pytest.mark.parametrize("status_code", [500, 502, 503])
def test_server_errors_are_unavailable(handler, status_code):
    error = handler.classify(GarminAPIError("boom", status_code=status_code))

    assert error.error_type == IntegrationErrorType.API_UNAVAILABLE
    assert error.is_transient
    assert str(status_code) in error.message


def test_other_status_is_api_error(handler):
    error = handler.classify(
        GarminAPIError("teapot", status_code=418, response_body="x" * 1000)
    )

    assert error.error_type == IntegrationErrorType.API_ERROR
    assert len(error.details["response_body"]) == 500


def test_timeout(handler):
    error = handler.classify(httpx.ReadTimeout("timed out"))

    assert error.error_type == IntegrationErrorType.API_TIMEOUT
    assert error.retry_after_seconds == 60


def test_connect_error(handler):
    error = handler.classify(httpx.ConnectError("connection refused"))

    assert error.error_type == IntegrationErrorType.API_UNAVAILABLE
    assert error.is_transient


def test_database_error(handler):
    error = handler.classify(OperationalError("INSERT", {}, Exception("database is locked")))

    assert error.error_type == IntegrationErrorType.DATABASE_ERROR
    assert error.is_transient


@pytest.mark.parametrize("exception", [ValueError("bad"), KeyError("userId"), TypeError("no")])
def test_malformed_payload(handler, exception):
    """Transform errors are permanent: retrying the same record cannot help."""
    error = handler.classify(exception, context={"data_type": "dailies"})

    assert error.error_type == IntegrationErrorType.TRANSFORM_ERROR
    assert not error.is_transient
    assert error.message.startswith("Malformed record:")
    assert error.details["data_type"] == "dailies"


def test_unknown_error(handler):
    error = handler.classify(RuntimeError("surprise"))

    assert error.error_type == IntegrationErrorType.INTERNAL_ERROR
    assert "RuntimeError" in error.message


def test_to_log_dict_flattens_context(handler):
    error = handler.classify(ValueError("bad"), context={"garmin_user_id": "g-1"})

    log_dict = error.to_log_dict()

    assert log_dict["error_type"] == "transform_error"
    assert log_dict["garmin_user_id"] == "g-1"
    assert log_dict["is_transient"] is False


def test_retry_delay_backs_off_exponentially(handler):
    """Database errors wait 1, 2, 4 ... minutes, capped at 32."""
    error = handler.classify(OperationalError("INSERT", {}, Exception("database is locked")))

    delays = [retry_delay_seconds(error, attempt) for attempt in range(7)]

    assert delays == [60, 120, 240, 480, 960, 1920, 1920]


def test_retry_delay_respects_error_hint(handler):
    """A longer provider hint wins over the backoff."""
    error = handler.classify(RateLimitError("slow down", retry_after=900))

    assert retry_delay_seconds(error, 0) == 900
    assert retry_delay_seconds(error, 5) == 1920
