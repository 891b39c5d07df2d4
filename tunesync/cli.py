"""
Command-line interface for tunesync.

This module implements the CLI using Click, providing the commands to
register remote sources, sync them, and maintain the local library.
rich-click is used for the output colors.

Commands:
    tunesync sync [--source ID ...]         Sync all (or the given) sources
    tunesync sources                        List registered sources
    tunesync add-source HOST PORT           Register a source
    tunesync remove-source ID               Remove a source and its library
    tunesync adjust-counts                  Recompute the denormalized counts
    tunesync purge-tombstones               Forget remote deletions
    tunesync stats                          Show library statistics

Options:
    --config <path>                         Path to config.yaml
    --version                               Show version and exit

Usage:
    # Sync every source listed in config.yaml or added with add-source
    tunesync sync

    # Sync a single source
    tunesync sync --source 2

    # Let tombstones older than 30 days expire
    tunesync purge-tombstones --older-than 30

Configuration:
    The CLI reads config.yaml from the current directory (or --config).
    Every key is optional; see tunesync.core.config for the format.

Exit Codes:
    0    Success
    1    Configuration error, or unexpected error
    2    Database error
    3    Network error (a source could not be reached)
    4    Other tunesync error (a source failed to apply)
    130  Interrupted or canceled
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import rich_click as click

# Configure rich-click for better help formatting
click.rich_click.USE_RICH_MARKUP = True
click.rich_click.SHOW_ARGUMENTS = True
click.rich_click.GROUP_ARGUMENTS_OPTIONS = True
click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
click.rich_click.ERRORS_SUGGESTION = ""
click.rich_click.MAX_WIDTH = 100
click.rich_click.COMMAND_GROUPS = {
    "cli": [
        {
            "name": "Sync",
            "commands": ["sync", "stats"],
        },
        {
            "name": "Sources",
            "commands": ["sources", "add-source", "remove-source"],
        },
        {
            "name": "Maintenance",
            "commands": ["adjust-counts", "purge-tombstones"],
        },
    ],
}

from tunesync import __version__
from tunesync.core import (
    Config,
    ConfigError,
    Database,
    DatabaseError,
    FileManager,
    NetworkError,
    TuneSyncError,
    get_logger,
    load_config,
    setup_logging,
    shutdown_logging,
)
from tunesync.core.progress import SyncProgressBar
from tunesync.remote import HttpRemoteClient
from tunesync.sync import (
    LoggingObserver,
    ObserverGroup,
    SyncContext,
    SyncService,
    SyncState,
    Synchronizer,
    adjust_counts,
)

logger = get_logger(__name__)


# Shared state of one invocation: the loaded config and open stores
class AppState:
    def __init__(self, config: Config, database: Database, file_manager: FileManager) -> None:
        self.config = config
        self.database = database
        self.file_manager = file_manager


@click.group(invoke_without_command=True)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    metavar="<config.yaml>",
    help="Configuration file (default: ./config.yaml)"
)
@click.option(
    "--version",
    is_flag=True,
    help="Show version and exit."
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], version: bool) -> None:
    """
    tunesync: Mirror remote music libraries into a local database.

    Pulls artists, albums, songs and playlists from every registered
    source and makes the local copy match, one source at a time. A source
    is either fully applied or left untouched.

    \b
    BASIC USAGE:
        tunesync add-source 192.168.1.20 5545 --name "Living room"
        tunesync sync
        tunesync stats
    """
    if version:
        click.echo(f"tunesync {__version__}")
        ctx.exit(0)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit(0)

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# =============================================================================
# Commands
# =============================================================================

@cli.command()
@click.option(
    "--source",
    "-s",
    "source_ids",
    type=int,
    multiple=True,
    metavar="<id>",
    help="Only sync this source (repeatable)"
)
@click.option(
    "--no-progress",
    is_flag=True,
    help="Log progress instead of drawing progress bars"
)
@click.pass_context
def sync(ctx: click.Context, source_ids: tuple[int, ...], no_progress: bool) -> None:
    """Sync all sources, or the ones given with --source."""
    _run_command(ctx, lambda app: _run_sync(app, list(source_ids) or None, not no_progress))


@cli.command()
@click.pass_context
def sources(ctx: click.Context) -> None:
    """List registered sources."""
    _run_command(ctx, _list_sources)


@cli.command("add-source")
@click.argument("host")
@click.argument("port", type=click.IntRange(1, 65535))
@click.option("--name", default=None, help="Display name for the source")
@click.pass_context
def add_source(ctx: click.Context, host: str, port: int, name: Optional[str]) -> None:
    """Register a remote source at HOST:PORT."""
    def action(app: AppState) -> None:
        source = app.database.add_source(host, port, name)
        logger.info(f"Added source {source.id}: {source.label}")

    _run_command(ctx, action)


@cli.command("remove-source")
@click.argument("source_id", type=int)
@click.pass_context
def remove_source(ctx: click.Context, source_id: int) -> None:
    """Remove a source together with everything synced from it."""
    def action(app: AppState) -> None:
        if not app.database.remove_source(source_id):
            raise click.UsageError(f"No source with id {source_id}")
        logger.info(f"Removed source {source_id}")

    _run_command(ctx, action)


@cli.command("adjust-counts")
@click.pass_context
def adjust_counts_command(ctx: click.Context) -> None:
    """Recompute song and album counts from the library rows."""
    def action(app: AppState) -> None:
        adjustment = adjust_counts(app.database)
        for column, changed in adjustment.changed.items():
            logger.info(f"{column:<22} {changed} row(s) adjusted")

    _run_command(ctx, action)


@cli.command("purge-tombstones")
@click.option("--source", "source_id", type=int, default=None, help="Only this source")
@click.option(
    "--older-than",
    type=click.IntRange(min=0),
    default=None,
    metavar="<days>",
    help="Only tombstones older than this many days"
)
@click.pass_context
def purge_tombstones(ctx: click.Context, source_id: Optional[int], older_than: Optional[int]) -> None:
    """
    Forget remote deletions.

    Purged sync-ids are inserted again if a remote still serves them.
    """
    def action(app: AppState) -> None:
        cutoff = None
        if older_than is not None:
            cutoff = datetime.now(timezone.utc) - timedelta(days=older_than)
        app.database.purge_tombstones(source_id=source_id, older_than=cutoff)

    _run_command(ctx, action)


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show library statistics."""
    _run_command(ctx, lambda app: _print_stats(app.database))


# =============================================================================
# Runner
# =============================================================================

def _run_command(ctx: click.Context, action: Callable[[AppState], None]) -> None:
    """
    Set up config, logging and storage, run one command, map errors to exit codes.

    Args:
        ctx: Click context carrying the --config path.
        action: The command body.

    Raises:
        SystemExit: On fatal errors (with appropriate exit code).
    """
    database: Database | None = None

    try:
        config = load_config(ctx.obj.get("config_path"))

        setup_logging(config.storage.directory)
        logger.debug(f"tunesync {__version__} starting")

        file_manager = FileManager(config.storage.cache_directory)
        database = Database(config.storage.database_path, file_manager)
        _register_configured_sources(config, database)

        action(AppState(config, database, file_manager))

    except click.ClickException:
        raise

    except ConfigError as e:
        click.echo(f"Configuration error: {e.message}", err=True)
        sys.exit(1)

    except DatabaseError as e:
        click.echo(f"Database error: {e.message}", err=True)
        logger.error(f"Database error: {e.message}", exc_info=True)
        sys.exit(2)

    except NetworkError as e:
        click.echo(f"Network error: {e.message}", err=True)
        logger.error(f"Network error: {e.message}", exc_info=True)
        sys.exit(3)

    except TuneSyncError as e:
        click.echo(f"Error: {e.message}", err=True)
        logger.error(f"Error: {e.message}", exc_info=True)
        sys.exit(4)

    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        logger.info("Interrupted by user")
        sys.exit(130)

    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        logger.exception("Unexpected error")
        sys.exit(1)

    finally:
        if database is not None:
            database.close()
        shutdown_logging()


def _register_configured_sources(config: Config, database: Database) -> None:
    """Add the sources listed in config.yaml that the database doesn't know yet."""
    for source_config in config.sources:
        database.ensure_source(source_config.host, source_config.port, source_config.name)


def _run_sync(app: AppState, source_ids: list[int] | None, show_progress: bool) -> None:
    """
    Run a sync in the background and wait for it.

    Ctrl-C requests cancellation and waits for the in-flight source to
    roll back before exiting.
    """
    client = HttpRemoteClient(timeout=app.config.sync.timeout, page_size=app.config.sync.page_size)
    synchronizer = Synchronizer(app.database, client, app.file_manager, app.config.sync)

    # Fail on unknown ids before spawning the worker
    selected = synchronizer.select_sources(source_ids)
    if not selected:
        logger.warning("No sources registered. Add one with 'tunesync add-source HOST PORT'.")
        return

    observer = ObserverGroup([LoggingObserver()])
    if show_progress:
        observer.add(SyncProgressBar({source.id: source.label for source in selected}))

    service = SyncService(synchronizer, observer)
    service.start_sync([source.id for source in selected])

    try:
        while service.is_syncing():
            service.wait(0.5)
    except KeyboardInterrupt:
        click.echo("\nStopping sync, rolling back the current source...", err=True)
        service.stop_sync()
        service.wait()
        raise
    finally:
        client.close()

    context = service.last_context
    _print_sync_stats(app.database, context)

    if context.state is SyncState.CANCELED:
        sys.exit(130)
    if context.state is SyncState.FAILED:
        sys.exit(3 if context.network_error else 4)


def _list_sources(app: AppState) -> None:
    registered = app.database.get_sources()
    if not registered:
        logger.info("No sources registered")
        return

    for source in registered:
        if source.last_sync_time:
            synced = datetime.fromtimestamp(source.last_sync_time / 1000).strftime("%Y-%m-%d %H:%M")
        else:
            synced = "never"
        line = f"[{source.id}] {source.label}  revision {source.revision}, last sync {synced}"
        if source.last_error:
            line += f"  (last error: {source.last_error})"
        logger.info(line)


def _print_sync_stats(database: Database, context: SyncContext) -> None:
    """
    Print the outcome of a sync.

    Args:
        database: Database instance, for per-source labels.
        context: Context of the finished run.
    """
    logger.info("=" * 60)
    logger.info(f"SYNC {context.state.value.upper()}")
    logger.info("=" * 60)
    for source_id, progress in context.sources.items():
        source = database.get_source(source_id)
        label = source.label if source is not None else f"Source {source_id}"
        outcome = progress.outcome.value if progress.outcome is not None else "unfinished"
        logger.info(
            f"{label}: {outcome}  "
            f"+{progress.inserts} ~{progress.updates} -{progress.deletes}"
        )
    logger.info(f"Attempts:          {context.number_of_tries}")
    logger.info(f"Inserted:          {context.number_of_inserts}")
    logger.info(f"Updated:           {context.number_of_updates}")
    logger.info(f"Deleted:           {context.number_of_deletes}")
    logger.info("=" * 60)


def _print_stats(database: Database) -> None:
    """Print row counts across all sources."""
    counts = database.get_stats()

    logger.info("=" * 60)
    logger.info("LIBRARY STATISTICS")
    logger.info("=" * 60)
    logger.info(f"Sources:           {counts['sources']}")
    logger.info(f"Artists:           {counts['artists']}")
    logger.info(f"Albums:            {counts['albums']}")
    logger.info(f"Songs:             {counts['songs']}")
    logger.info(f"Playlists:         {counts['playlists']}")
    logger.info(f"Playlist entries:  {counts['playlist_songs']}")
    logger.info(f"Tombstones:        {counts['tombstones']}")
    logger.info("=" * 60)


def main() -> None:
    """
    Entry point for the CLI.

    This function is called when running `tunesync` from the command line.
    It invokes the Click CLI group.
    """
    cli()


if __name__ == "__main__":
    main()
