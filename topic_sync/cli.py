"""
CLI for the topic sync service.
Runs the API server with background refresh, one-shot refreshes and
database maintenance.
"""
import asyncio
import json
import sys
from datetime import timedelta

import click

from topic_sync.config import get_settings
from topic_sync.database import TopicDatabase
from topic_sync.errors import FetchFailure
from topic_sync.utils.logging import setup_logging


# =============================================================================
# CLI GROUP
# =============================================================================

@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, debug: bool):
    """
    Allora Topic Sync CLI.

    Tracks active Allora topics and keeps their latest network inferences,
    merged per worker, in memory and in the database.
    """
    settings = get_settings()
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug

    setup_logging(
        level="DEBUG" if debug else settings.log_level,
        format_type="console" if debug else settings.log_format,
        structured=settings.structured_logging,
    )


# =============================================================================
# SERVER
# =============================================================================

@cli.command()
@click.option("--host", default=None, help="Bind address (default: SERVER_HOST)")
@click.option("--port", type=int, default=None, help="Port (default: SERVER_PORT)")
@click.option(
    "--no-background",
    is_flag=True,
    help="Serve stored and cached data only; do not start the scheduler",
)
def serve(host, port, no_background: bool):
    """Run the HTTP API with the refresh scheduler and competition monitor."""
    import uvicorn

    from topic_sync.api import create_app

    settings = get_settings()
    app = create_app(run_background=not no_background)
    uvicorn.run(
        app,
        host=host or settings.server_host,
        port=port or settings.server_port,
        log_level=settings.log_level.lower(),
    )


# =============================================================================
# REFRESH COMMANDS
# =============================================================================

@cli.command()
@click.argument("topic_ids", nargs=-1, required=True)
def refresh(topic_ids):
    """
    Refresh topics once and store the results.

    Examples:

        topic-sync refresh 13 14
    """
    from topic_sync.service import TopicSyncService

    async def _run():
        service = TopicSyncService()
        await service.open()
        failures = 0
        try:
            for topic_id in topic_ids:
                try:
                    result = await service.force_refresh(topic_id)
                except FetchFailure as e:
                    failures += 1
                    click.echo(click.style(f"✗ topic {topic_id}: {e}", fg="red"))
                    continue

                click.echo(
                    click.style("✓", fg="green")
                    + f" topic {topic_id}: {result.decision.value}"
                    f" height={result.inference_block_height}"
                    f" workers={result.workers}"
                    f" persisted={result.persisted}"
                    f" ({result.duration_seconds:.1f}s)"
                )
        finally:
            await service.close()
        return failures

    if asyncio.run(_run()):
        sys.exit(1)


@cli.command()
@click.option("--save/--no-save", default=True, help="Store the listing in the database")
def competitions(save: bool):
    """Fetch the Forge competition listing and print the active topic ids."""
    from topic_sync.clients import ForgeClient

    async def _run():
        async with ForgeClient() as forge:
            listing = await forge.fetch_competitions()

        if save:
            db = TopicDatabase()
            db.init_schema()
            db.save_competitions(listing)
            db.close()

        click.echo(f"Active and upcoming: {len(listing.active_and_upcoming)}")
        click.echo(f"Past: {len(listing.past)}")
        click.echo(f"Active topics: {', '.join(listing.active_topic_ids()) or '-'}")

    try:
        asyncio.run(_run())
    except FetchFailure as e:
        click.echo(click.style(f"✗ {e}", fg="red"))
        sys.exit(1)


# =============================================================================
# DATABASE COMMANDS
# =============================================================================

@cli.group()
def db():
    """Database management commands."""
    pass


@db.command("init")
def init_db():
    """Create the database schema."""
    database = TopicDatabase()
    database.init_schema()
    database.close()
    click.echo(click.style("✓ Schema ready", fg="green"))


@db.command()
@click.option("--days", type=int, default=None, help="Retention in days (default: DATA_RETENTION_DAYS)")
@click.option("--topic", "topic_id", default=None, help="Only prune this topic")
def prune(days, topic_id):
    """Delete topic history past the retention window."""
    settings = get_settings()
    database = TopicDatabase()
    deleted = database.prune_old_topic_data(
        timedelta(days=days or settings.data_retention_days),
        topic_id=topic_id,
    )
    database.close()
    click.echo(f"Deleted {deleted} rows")


@db.command()
def stats():
    """Show row counts of the database."""
    database = TopicDatabase()
    click.echo(json.dumps(database.get_database_stats(), indent=2))
    database.close()


# =============================================================================
# CONFIG
# =============================================================================

@cli.command()
def config():
    """Show current configuration."""
    settings = get_settings()

    click.echo("ALLORA:")
    click.echo(f"  Chain API: {settings.allora_api_base_url} (emissions {settings.emissions_version})")
    click.echo(f"  Forge: {settings.forge_base_url}")

    click.echo("\nSCHEDULING:")
    click.echo(f"  Topic refresh: every {settings.topic_refresh_interval_seconds}s")
    click.echo(f"  Competition monitor enabled: {settings.competition_monitor_enabled}")
    click.echo(f"  Competition refresh: every {settings.competition_refresh_interval_minutes}m")
    click.echo(f"  Retention: {settings.data_retention_days} days")
    click.echo(f"  Default topics: {', '.join(settings.default_active_topics) or '-'}")

    click.echo("\nDATABASE:")
    db_url = settings.database_url
    if "@" in db_url:
        parts = db_url.split("@")
        prefix = parts[0].rsplit(":", 1)[0]
        click.echo(f"  URL: {prefix}:****@{parts[1]}")
    else:
        click.echo(f"  URL: {db_url}")


# =============================================================================
# ENTRY POINT
# =============================================================================

def main():
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
