"""Litestar application factory."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from advanced_alchemy.config.asyncio import AsyncSessionConfig
from litestar import Litestar
from litestar.contrib.sqlalchemy.plugins import SQLAlchemyAsyncConfig, SQLAlchemyPlugin
from litestar.openapi import OpenAPIConfig
from sqlalchemy.ext.asyncio import AsyncEngine

from garmin_sync_server import __version__
from garmin_sync_server.api import api_routers, exception_handlers
from garmin_sync_server.core.config import settings
from garmin_sync_server.core.database import (
    async_session_maker,
    close_database,
    engine,
    init_database,
)
from garmin_sync_server.services.scheduler import ReconcileScheduler, set_scheduler

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: Litestar) -> AsyncIterator[None]:
    """Application lifespan manager.

    Handles startup and shutdown tasks:
    - Check migrations on startup
    - Start the reconcile scheduler (when enabled)
    - Stop scheduler and close database connections on shutdown
    """
    logger.info(
        "Starting garmin-sync-server",
        version=__version__,
        garmin_configured=settings.has_garmin_credentials(),
        reconcile_enabled=settings.reconcile_enabled,
    )

    await init_database()

    scheduler = ReconcileScheduler(async_session_maker)
    set_scheduler(scheduler)
    await scheduler.start()

    yield

    await scheduler.stop()
    set_scheduler(None)

    await close_database()
    logger.info("Shutdown complete")


def create_app(db_engine: AsyncEngine | None = None, use_lifespan: bool = True) -> Litestar:
    """Create Litestar application.

    Args:
        db_engine: Engine to bind sessions to (default: the configured one)
        use_lifespan: Run startup/shutdown tasks (tests disable this)

    Returns:
        Configured Litestar app instance
    """
    return Litestar(
        route_handlers=api_routers,
        lifespan=[lifespan] if use_lifespan else [],
        exception_handlers=exception_handlers,
        openapi_config=OpenAPIConfig(
            title="garmin-sync-server API",
            version=__version__,
            description="Garmin Health API integration: tokens, backfill and push ingestion",
        ),
        plugins=[
            SQLAlchemyPlugin(
                config=SQLAlchemyAsyncConfig(
                    engine_instance=db_engine or engine,
                    session_dependency_key="session",
                    session_config=AsyncSessionConfig(expire_on_commit=False),
                ),
            ),
        ],
        debug=settings.log_level == "DEBUG",
    )


# Application instance
app = create_app()
