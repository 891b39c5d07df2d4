"""
Core module for tunesync.

This module provides the foundational components used throughout the application:
    - exceptions: Custom exception classes for error handling
    - config: Configuration loading and validation
    - database: SQLite store for the library replica
    - file_manager: Files owned by library rows and their cleanup
    - logger: Logging system with multiple outputs
    - models: The Source record

Usage:
    from tunesync.core import (
        Config, load_config,
        Database, FileManager,
        setup_logging, get_logger,
        TuneSyncError, ConfigError, DatabaseError
    )
"""

from tunesync.core.config import (
    Config,
    SourceConfig,
    StorageConfig,
    SyncConfig,
    load_config,
)
from tunesync.core.database import Database
from tunesync.core.exceptions import (
    ConfigError,
    ConstraintViolation,
    DatabaseError,
    NetworkError,
    RemoteDataError,
    SyncCanceled,
    SyncError,
    TransientNetworkError,
    TuneSyncError,
)
from tunesync.core.file_manager import FileManager
from tunesync.core.logger import (
    get_logger,
    log_file_cleanup_failure,
    log_sync_failure,
    setup_logging,
    shutdown_logging,
)
from tunesync.core.models import Source

__all__ = [
    # Config
    "Config",
    "StorageConfig",
    "SyncConfig",
    "SourceConfig",
    "load_config",
    # Storage
    "Database",
    "FileManager",
    "Source",
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
    # Logger
    "setup_logging",
    "get_logger",
    "log_sync_failure",
    "log_file_cleanup_failure",
    "shutdown_logging",
]
