"""Request guards for service-to-service and Garmin push requests.

Two guards:
1. ``api_key_guard``: single service API key from config (API_KEY env var)
   protecting the /api/v1 routes.
2. ``garmin_push_guard``: optional check of the ``garmin-client-id`` header
   Garmin attaches to every push notification.
"""

import logging
import secrets
from typing import Any

from litestar.connection import ASGIConnection
from litestar.exceptions import NotAuthorizedException
from litestar.handlers import BaseRouteHandler

from garmin_sync_server.core.config import settings

logger = logging.getLogger(__name__)

GARMIN_CLIENT_ID_HEADER = "garmin-client-id"


def validate_simple_api_key(key: str) -> bool:
    """Validate API key against the configured service key.

    Uses constant-time comparison to prevent timing attacks.

    Args:
        key: The API key to validate

    Returns:
        True if valid, False otherwise
    """
    if not settings.api_key:
        return False

    return secrets.compare_digest(key, settings.api_key)


def _extract_api_key(connection: ASGIConnection[Any, Any, Any, Any]) -> str | None:
    """Extract API key from request headers.

    Args:
        connection: The ASGI connection

    Returns:
        The API key string or None if not found
    """
    api_key = connection.headers.get("X-API-Key")

    if not api_key:
        auth_header = connection.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            api_key = auth_header[7:]

    return api_key


async def api_key_guard(
    connection: ASGIConnection[Any, Any, Any, Any], _: BaseRouteHandler
) -> None:
    """Litestar guard that validates the service API key.

    If no API_KEY is configured, authentication is skipped (open access).

    Raises:
        NotAuthorizedException: If API key is required but missing/invalid
    """
    if not settings.api_key:
        logger.debug("No API_KEY configured - authentication disabled")
        return

    api_key = _extract_api_key(connection)

    if not api_key:
        logger.warning("API request without authentication")
        raise NotAuthorizedException("Missing API key. Use X-API-Key header.")

    if not validate_simple_api_key(api_key):
        logger.warning("Invalid API key attempted")
        raise NotAuthorizedException("Invalid API key")


async def garmin_push_guard(
    connection: ASGIConnection[Any, Any, Any, Any], _: BaseRouteHandler
) -> None:
    """Reject pushes that were not addressed to our Garmin client ID.

    Only enforced when GARMIN_VERIFY_PUSH_CLIENT_ID is enabled.

    Raises:
        NotAuthorizedException: If the header is missing or does not match
    """
    if not settings.garmin_verify_push_client_id:
        return

    client_id = connection.headers.get(GARMIN_CLIENT_ID_HEADER)
    if not client_id or not settings.garmin_client_id:
        raise NotAuthorizedException("Missing Garmin client ID")

    if not secrets.compare_digest(client_id, settings.garmin_client_id):
        logger.warning("Push received for unknown Garmin client ID")
        raise NotAuthorizedException("Unknown Garmin client ID")
