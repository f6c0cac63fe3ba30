"""Map integration errors to HTTP responses.

Callers of the token and backfill endpoints only need to know one thing:
retry later, or send the user back through Garmin's OAuth flow. The
``error`` field carries that as a stable code.
"""

import structlog
from litestar import Request, Response
from litestar.status_codes import (
    HTTP_401_UNAUTHORIZED,
    HTTP_404_NOT_FOUND,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_502_BAD_GATEWAY,
    HTTP_503_SERVICE_UNAVAILABLE,
)

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

logger = structlog.get_logger()


def _error_response(
    code: str, exc: Exception, status_code: int, headers: dict[str, str] | None = None
) -> Response[dict[str, str]]:
    return Response(
        content={"error": code, "detail": str(exc)},
        status_code=status_code,
        headers=headers,
    )


def reconnect_required_handler(_: Request, exc: Exception) -> Response[dict[str, str]]:
    logger.warning("Garmin reconnect required", error=str(exc))
    return _error_response("reconnect_required", exc, HTTP_401_UNAUTHORIZED)


def lock_contention_handler(_: Request, exc: LockContentionError) -> Response[dict[str, str]]:
    return _error_response(
        "refresh_in_progress",
        exc,
        HTTP_503_SERVICE_UNAVAILABLE,
        headers={"Retry-After": str(exc.retry_after)},
    )


def upstream_error_handler(_: Request, exc: Exception) -> Response[dict[str, str]]:
    logger.warning("Garmin upstream failure", error=str(exc))
    return _error_response("garmin_unavailable", exc, HTTP_502_BAD_GATEWAY)


def configuration_error_handler(_: Request, exc: Exception) -> Response[dict[str, str]]:
    logger.error("Integration misconfigured", error=str(exc))
    return _error_response("configuration_error", exc, HTTP_500_INTERNAL_SERVER_ERROR)


def not_found_handler(_: Request, exc: IntegrationNotFoundError) -> Response[dict[str, str]]:
    return _error_response("integration_not_found", exc, HTTP_404_NOT_FOUND)


exception_handlers = {
    RefreshRejectedError: reconnect_required_handler,
    NoRefreshTokenError: reconnect_required_handler,
    LockContentionError: lock_contention_handler,
    TokenRefreshError: upstream_error_handler,
    GarminAPIError: upstream_error_handler,
    CredentialsMissingError: configuration_error_handler,
    TokenPersistError: configuration_error_handler,
    IntegrationNotFoundError: not_found_handler,
}
