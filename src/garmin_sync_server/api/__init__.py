"""API routes."""

from litestar import Router

from garmin_sync_server.api.errors import exception_handlers
from garmin_sync_server.api.health import health_router
from garmin_sync_server.api.integrations import integrations_router
from garmin_sync_server.api.jobs import jobs_router
from garmin_sync_server.api.webhooks import webhooks_router

# Versioned API routers, all behind the service API key
_v1_routers = [
    integrations_router,  # Tokens, backfill, activation
    jobs_router,  # Stale-chunk sweep for cron callers
]

api_v1_router = Router(path="/api/v1", route_handlers=_v1_routers)

# Export: health (root), webhooks (root), v1 (prefixed)
# - health_router: /health - no auth needed, no version prefix
# - webhooks_router: /webhooks/garmin - Garmin push receiver
# - api_v1_router: /api/v1/* - service endpoints
api_routers = [health_router, webhooks_router, api_v1_router]

__all__ = ["api_routers", "exception_handlers"]
