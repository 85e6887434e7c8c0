"""Command-line interface with Rich formatting."""

import asyncio
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path

import click
import pytz
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
import structlog

from .config import load_settings, create_example_config
from .database import DatabaseManager
from .errors import SyncError
from .models import SyncPlan, SyncStats
from .orchestrator import SyncOrchestrator

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False) -> None:
    """Set up structured logging."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def _db(ctx) -> DatabaseManager:
    db_manager = DatabaseManager(ctx.obj['settings'])
    db_manager.init_db()
    return db_manager


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """feedsync - ICS calendar feed synchronization.

    Fetches subscribed ICS feeds, matches events against stored ones,
    classifies them into activity categories and keeps removed events
    recoverable through a soft-delete grace period.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings

        setup_logging(settings.log_level, settings.debug)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
@click.pass_context
def serve(ctx, host, port):
    """Run the HTTP sync endpoints."""
    try:
        import uvicorn
        from .server import create_app
        uvicorn.run(create_app(ctx.obj['settings']), host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create database tables."""
    _db(ctx)
    console.print(f"[green]✓ Database ready at {ctx.obj['settings'].database_url}[/green]")


@cli.group()
def calendars():
    """Feed subscription management commands."""
    pass


@calendars.command('add')
@click.option('--user-id', '-u', required=True, help='Owning user id')
@click.option('--name', '-n', required=True, help='Display name')
@click.option('--url', required=True, help='ICS feed URL (http, https or webcal)')
@click.option('--interval', type=int, default=None, help='Auto-sync interval in minutes')
@click.option('--no-auto-sync', is_flag=True, help='Exclude from auto-sync')
@click.pass_context
def add_calendar(ctx, user_id, name, url, interval, no_auto_sync):
    """Subscribe a user to an ICS feed."""
    db_manager = _db(ctx)
    with db_manager.session_scope() as session:
        calendar = db_manager.create_calendar(
            session, user_id, name, url,
            sync_interval_minutes=interval,
            auto_sync_enabled=not no_auto_sync,
        )
        calendar_id = calendar.id
    console.print(f"[green]✓ Added calendar '{name}'[/green] [dim]{calendar_id}[/dim]")


@calendars.command('list')
@click.option('--user-id', '-u', required=True, help='Owning user id')
@click.pass_context
def list_calendars(ctx, user_id):
    """List a user's feed subscriptions."""
    db_manager = _db(ctx)
    with db_manager.session_scope() as session:
        rows = db_manager.list_calendars(session, user_id)

        table = Table(show_header=True, header_style="bold blue", title="Calendars")
        table.add_column("Name", style="cyan")
        table.add_column("ID", style="dim")
        table.add_column("Enabled", justify="center")
        table.add_column("Auto", justify="center")
        table.add_column("Events", justify="right")
        table.add_column("Last fetched", style="dim")

        for cal in rows:
            table.add_row(
                cal.name,
                str(cal.id),
                "✓" if cal.enabled else "",
                "✓" if cal.auto_sync_enabled else "",
                str(cal.event_count or 0),
                cal.last_fetched.isoformat() if cal.last_fetched else "never",
            )
    console.print(table)


@calendars.command('disable')
@click.argument('calendar_id')
@click.option('--user-id', '-u', required=True, help='Owning user id')
@click.pass_context
def disable_calendar(ctx, calendar_id, user_id):
    """Disable a subscription, keeping its history."""
    db_manager = _db(ctx)
    with db_manager.session_scope() as session:
        calendar = db_manager.get_calendar(session, calendar_id, user_id=user_id)
        if calendar is None:
            console.print(f"[red]Calendar {calendar_id} not found[/red]")
            sys.exit(1)
        calendar.enabled = False
    console.print(f"[green]✓ Calendar {calendar_id} disabled[/green]")


@cli.group()
def tokens():
    """Bearer token commands."""
    pass


@tokens.command('create')
@click.option('--user-id', '-u', required=True, help='User the token authenticates as')
@click.pass_context
def create_token(ctx, user_id):
    """Issue a bearer token for the HTTP endpoints."""
    db_manager = _db(ctx)
    with db_manager.session_scope() as session:
        token = db_manager.create_access_token(session, user_id)
    console.print(Panel(
        f"[bold]{token}[/bold]\n\n[dim]Shown once; only its hash is stored.[/dim]",
        title=f"Token for {user_id}",
        border_style="green"
    ))


@cli.command()
@click.option('--user-id', '-u', required=True, help='Owning user id')
@click.option('--calendar-id', '-c', required=True, help='Calendar to sync')
@click.option('--dry-run', '-n', is_flag=True,
              help='Show the planned operations without applying them')
@async_command
async def sync(ctx, user_id, calendar_id, dry_run):
    """Synchronize one calendar feed."""
    settings = ctx.obj['settings']
    orchestrator = SyncOrchestrator(settings, db_manager=_db(ctx))

    if dry_run:
        console.print("[yellow]Running in dry-run mode - no changes will be made[/yellow]")

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True
        ) as progress:
            progress.add_task("Fetching feed...", total=None)
            if dry_run:
                plan = await orchestrator.preview_calendar(user_id, calendar_id)
            else:
                stats = await orchestrator.sync_calendar(user_id, calendar_id)

        if dry_run:
            _display_plan(plan)
            return

        console.print("✅ Sync completed")
        _display_sync_results(stats)

        if stats.failed_events:
            console.print(Panel(
                "\n".join(f"• {failed.title}: {failed.error}" for failed in stats.failed_events),
                title="[red]Errors[/red]",
                border_style="red"
            ))

    except SyncError as e:
        logger.error("sync_failed", calendar_id=calendar_id, error=str(e))
        console.print(f"[red]Sync failed: {e}[/red]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)


@cli.command('auto-sync')
@click.option('--user-id', '-u', required=True, help='Owning user id')
@async_command
async def auto_sync(ctx, user_id):
    """Sync every due auto-sync calendar of a user."""
    orchestrator = SyncOrchestrator(ctx.obj['settings'], db_manager=_db(ctx))
    result = await orchestrator.auto_sync(user_id)

    console.print(result['message'])
    if not result['results']:
        return

    table = Table(show_header=True, header_style="bold magenta", title="Auto-sync")
    table.add_column("Calendar", style="cyan")
    table.add_column("Result", justify="center")
    table.add_column("Events", justify="right")
    table.add_column("Error", style="red")
    for item in result['results']:
        table.add_row(
            item['calendarName'],
            "[green]✓[/green]" if item['success'] else "[red]✗[/red]",
            str(item.get('eventCount', '')),
            item.get('error', ''),
        )
    console.print(table)
    if result['failedCount']:
        sys.exit(1)


@cli.command()
@click.option('--calendar-id', '-c', required=True, help='Calendar whose log to show')
@click.option('--limit', '-l', default=20, type=int, help='Number of entries')
@click.pass_context
def log(ctx, calendar_id, limit):
    """Show recent sync log entries for a calendar."""
    db_manager = _db(ctx)
    with db_manager.session_scope() as session:
        entries = db_manager.get_sync_log(session, calendar_id, limit=limit)

        table = Table(show_header=True, header_style="bold blue", title="Sync log")
        table.add_column("Time", style="dim")
        table.add_column("Action", style="cyan")
        table.add_column("Title")
        table.add_column("Details", style="dim")
        for entry in entries:
            details = dict(entry.details or {})
            title = details.pop('title', '')
            table.add_row(
                entry.timestamp.isoformat(timespec='seconds'),
                entry.action,
                title,
                ", ".join(f"{key}={value}" for key, value in details.items() if value is not None),
            )
    console.print(table)


@cli.command()
@click.option('--calendar-id', '-c', required=True, help='Calendar to purge')
@click.option('--older-than-days', '-d', required=True, type=int,
              help='Remove events soft-deleted more than this many days ago')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def purge(ctx, calendar_id, older_than_days, yes):
    """Permanently remove old soft-deleted events."""
    if not yes and not Confirm.ask(
        f"Permanently delete events soft-deleted more than {older_than_days} days ago?"
    ):
        console.print("[yellow]Purge cancelled[/yellow]")
        return

    cutoff = datetime.now(pytz.UTC) - timedelta(days=older_than_days)
    db_manager = _db(ctx)
    with db_manager.session_scope() as session:
        removed = db_manager.purge_deleted_events(session, calendar_id, cutoff)
    console.print(f"[green]✓ Purged {removed} events[/green]")


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")


def _display_sync_results(stats: SyncStats):
    """Display sync results."""
    table = Table(show_header=True, header_style="bold magenta", title="Sync Results")
    table.add_column("Fetched", justify="center")
    table.add_column("Created", justify="center")
    table.add_column("Updated", justify="center")
    table.add_column("Restored", justify="center")
    table.add_column("Soft-deleted", justify="center")
    table.add_column("Cancelled", justify="center")
    table.add_column("Missed", justify="center", style="dim")
    table.add_column("Failed", justify="center", style="red")

    table.add_row(
        str(stats.event_count),
        str(stats.events_created),
        str(stats.events_updated),
        str(stats.events_restored),
        str(stats.events_soft_deleted),
        str(stats.events_immediately_deleted),
        str(stats.events_missed),
        str(stats.events_failed),
    )
    console.print(table)
    console.print(
        f"[dim]Categories: {stats.metadata_created} new, {stats.metadata_preserved} manual kept, "
        f"{stats.metadata_auto_updated} re-classified, {stats.metadata_backfilled} backfilled[/dim]"
    )


def _display_plan(plan: SyncPlan):
    table = Table(show_header=True, header_style="bold yellow", title="Planned operations")
    table.add_column("Operation", style="cyan")
    table.add_column("Event")
    table.add_column("Reason", style="dim")
    for op in plan.operations():
        table.add_row(op.operation.value, op.display_title, op.reason)
    console.print(table)
    console.print(", ".join(f"{name}: {count}" for name, count in plan.counts().items()))


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
