"""Health check endpoint."""

from typing import Any

from litestar import Router, get
from litestar.status_codes import HTTP_200_OK

from garmin_sync_server import __version__
from garmin_sync_server.core.config import settings
from garmin_sync_server.services.scheduler import get_scheduler


@get("/health", status_code=HTTP_200_OK, sync_to_thread=False)
def health_check() -> dict[str, Any]:
    """Health check endpoint.

    Returns:
        Status, version and reconcile scheduler state
    """
    scheduler = get_scheduler()
    return {
        "status": "ok",
        "version": __version__,
        "garmin_configured": settings.has_garmin_credentials(),
        "reconcile": scheduler.get_status() if scheduler else None,
    }


health_router = Router(path="/", route_handlers=[health_check])
