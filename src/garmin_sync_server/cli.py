"""CLI entry point for garmin-sync-server."""

import asyncio

import typer
import uvicorn

from garmin_sync_server import __version__
from garmin_sync_server.core.config import settings

app = typer.Typer(
    name="garmin-sync-server",
    help="Garmin Health API integration server",
    no_args_is_help=True,
)


@app.command()
def serve(
    host: str = typer.Option(None, help="Host to bind to (overrides config)"),
    port: int = typer.Option(None, help="Port to bind to (overrides config)"),
    reload: bool = typer.Option(False, help="Enable auto-reload for development"),
) -> None:
    """Start the API server.

    Example:
        garmin-sync-server serve
        garmin-sync-server serve --host 0.0.0.0 --port 8080 --reload
    """
    uvicorn.run(
        "garmin_sync_server.app:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@app.command()
def reconcile(
    user_id: str = typer.Option(None, help="Only sweep this user's chunks"),
) -> None:
    """Mark stale backfill chunks as received (for cron).

    Example:
        garmin-sync-server reconcile
    """
    from garmin_sync_server.core.database import async_session_maker, close_database
    from garmin_sync_server.services.backfill import BackfillService

    async def _run() -> int:
        try:
            async with async_session_maker() as session:
                return await BackfillService(session).mark_stale_chunks_received(user_id=user_id)
        finally:
            await close_database()

    marked = asyncio.run(_run())
    typer.echo(f"Marked {marked} chunk(s) received")


@app.command("retry-pushes")
def retry_pushes() -> None:
    """Replay queued push records whose retry time has come (for cron).

    Example:
        garmin-sync-server retry-pushes
    """
    from garmin_sync_server.core.database import async_session_maker, close_database
    from garmin_sync_server.schemas.push_retry import PushRetrySummary
    from garmin_sync_server.services.push_retry import PushRetryService

    async def _run() -> PushRetrySummary:
        try:
            async with async_session_maker() as session:
                return await PushRetryService(session).retry_due()
        finally:
            await close_database()

    summary = asyncio.run(_run())
    typer.echo(
        f"Replayed {summary.processed} of {summary.due} due record(s), "
        f"rescheduled {summary.rescheduled}, abandoned {summary.abandoned + summary.expired}"
    )


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"garmin-sync-server v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
