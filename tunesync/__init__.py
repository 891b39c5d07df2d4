"""
tunesync: Mirror remote music libraries into a local SQLite database.

This package keeps a local replica of the artists, albums, songs and
playlists served by one or more remote sources. The remote is the source
of truth: every sync makes the local rows match it, one source at a time,
each source inside a single transaction.

Architecture:
    A sync walks the registered sources in order. For each source:

    MERGE (sync/merger.py): Reconcile each table with the remote
        - Page through the remote enumeration in key order
        - Insert new sync-ids, update rows the remote changed
        - Delete rows the remote no longer has, leaving a tombstone
        - Never re-insert a tombstoned sync-id

    COMMIT (sync/orchestrator.py): Apply the source atomically
        - Any failure rolls the whole source back
        - Transient network failures are retried with backoff
        - Files owned by deleted rows are removed after commit

    COUNTS (sync/counts.py): Recompute the denormalized counts
        - Songs and albums per artist, songs per album and playlist

Modules:
    core/       - Configuration, database, logging, exceptions, files, progress
    remote/     - Remote records and the HTTP client
    sync/       - Merging, orchestration, cancellation, control
    cli.py      - Command-line interface

Usage:
    Command Line:
        tunesync add-source 192.168.1.20 5545 --name "Living room"
        tunesync sync
        tunesync stats

    Python API:
        from tunesync.core import load_config, Database, FileManager, setup_logging
        from tunesync.remote import HttpRemoteClient
        from tunesync.sync import Synchronizer, SyncService

        config = load_config()
        setup_logging(config.storage.directory)
        file_manager = FileManager(config.storage.cache_directory)
        database = Database(config.storage.database_path, file_manager)

        client = HttpRemoteClient(config.sync.timeout, config.sync.page_size)
        service = SyncService(Synchronizer(database, client, file_manager, config.sync))
        context = service.run_sync()

Dependencies:
    - requests: HTTP client for the remote sources
    - click: CLI framework
    - rich-click: CLI colors
    - rich: Progress bars
    - tqdm: Log output that plays well with progress bars
    - pyyaml: Configuration file parsing
"""

__version__ = "0.3.0"
__author__ = "tunesync"
__license__ = "MIT"

# Convenience imports for common usage
from tunesync.core import (
    Config,
    ConfigError,
    ConstraintViolation,
    Database,
    DatabaseError,
    FileManager,
    NetworkError,
    RemoteDataError,
    Source,
    SyncCanceled,
    SyncError,
    TransientNetworkError,
    TuneSyncError,
    get_logger,
    load_config,
    setup_logging,
)

__all__ = [
    # Version
    "__version__",
    # Core
    "Config",
    "load_config",
    "Database",
    "FileManager",
    "Source",
    "setup_logging",
    "get_logger",
    # Exceptions
    "TuneSyncError",
    "ConfigError",
    "DatabaseError",
    "ConstraintViolation",
    "NetworkError",
    "TransientNetworkError",
    "RemoteDataError",
    "SyncError",
    "SyncCanceled",
]
