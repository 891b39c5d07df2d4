"""
Logging configuration for tunesync.

This module sets up the logging system with multiple outputs:
    - Console: Real-time messages with tqdm-compatible formatting
    - log_full.log: Complete log of all events (DEBUG and above)
    - log_errors.log: Only ERROR and CRITICAL level messages
    - sync_failures.log: Sources whose sync was abandoned, with the reason
    - file_cleanup_failures.log: Cached files that could not be removed

The logging system follows the principle: everything to screen is also saved
to file, then filtered into specialized files.

Log File Locations:
    All log files are created in {storage.directory}/logs with a timestamp
    in their name, so every run gets its own set.

Usage:
    from tunesync.core.logger import setup_logging, get_logger

    setup_logging(storage_dir)  # Call once at startup
    logger = get_logger(__name__)  # Get logger for each module

    logger.info("Starting sync")
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import TextIO

from tqdm import tqdm


# Log format for file output (detailed with timestamp)
FILE_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class Colors:
    """ANSI color codes for terminal output."""
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"
    BOLD = "\033[1m"


class ColoredConsoleFormatter(logging.Formatter):
    """
    Formatter that colors the level name of console output.

    Colors:
        - DEBUG: Blue
        - INFO: Green
        - WARNING: Yellow
        - ERROR: Red
        - CRITICAL: Bold Red
    """

    LEVEL_COLORS = {
        logging.DEBUG: Colors.BLUE,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, Colors.WHITE)
        return f"{color}{record.levelname}{Colors.RESET}: {record.getMessage()}"


class TqdmLoggingHandler(logging.Handler):
    """
    Logging handler that writes to console without breaking progress bars.

    Uses tqdm.write(), which prints above any active bar instead of
    tearing through it.

    Attributes:
        stream: The output stream (defaults to sys.stderr).
    """

    def __init__(self, stream: TextIO = sys.stderr) -> None:
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            tqdm.write(msg, file=self.stream)
        except Exception:
            self.handleError(record)


class ReportHandler(logging.Handler):
    """
    Base handler for the plain-text report files.

    A report handler only reacts to records carrying its marker attribute
    (passed through logging's `extra`), and writes them in a format meant
    to be read by a person, not parsed.

    Subclasses set MARKER and implement _format_entry().

    Attributes:
        report_path: Path to the report file.
        report_file: Open file handle, set by open().
    """

    MARKER = ""

    def __init__(self, report_path: Path) -> None:
        super().__init__()
        self.report_path = report_path
        self.report_file: TextIO | None = None

    def open(self) -> None:
        """
        Open the report file for writing.

        Called by setup_logging() after handler is created.
        File is opened in write mode (overwrites existing content).
        """
        self.report_file = open(self.report_path, "w", encoding="utf-8")

    def emit(self, record: logging.LogRecord) -> None:
        if not hasattr(record, self.MARKER):
            return

        if self.report_file is None:
            return

        try:
            self.acquire()
            try:
                self.report_file.write(self._format_entry(record))
                self.report_file.flush()
            finally:
                self.release()
        except Exception:
            self.handleError(record)

    def _format_entry(self, record: logging.LogRecord) -> str:
        raise NotImplementedError

    def close(self) -> None:
        """
        Close the report file handle.

        Safe to call multiple times.
        """
        if self.report_file is not None:
            try:
                self.report_file.close()
            except OSError:
                pass
            self.report_file = None
        super().close()


class SyncFailureHandler(ReportHandler):
    """
    Captures abandoned sources for sync_failures.log.

    Output format:

        [2024-05-01 10:12:03] Living room (192.168.1.20:5545)
        network: connection refused after 3 tries

    Records must carry 'sync_failed_source' (and optionally
    'sync_failed_reason' and 'sync_failed_kind'); see log_sync_failure().
    """

    MARKER = "sync_failed_source"

    def _format_entry(self, record: logging.LogRecord) -> str:
        source = getattr(record, "sync_failed_source", "Unknown")
        kind = getattr(record, "sync_failed_kind", "error")
        reason = getattr(record, "sync_failed_reason", "")
        timestamp = datetime.fromtimestamp(record.created).strftime(FILE_DATE_FORMAT)
        return f"[{timestamp}] {source}\n{kind}: {reason}\n\n"


class FileCleanupFailureHandler(ReportHandler):
    """
    Captures files that could not be removed for file_cleanup_failures.log.

    One path per entry, followed by the OS error, so the leftovers can be
    removed by hand:

        /home/me/.tunesync/cache/album_artwork/12-big
        [Errno 13] Permission denied

    Records must carry 'cleanup_failed_path'; see log_file_cleanup_failure().
    """

    MARKER = "cleanup_failed_path"

    def _format_entry(self, record: logging.LogRecord) -> str:
        path = getattr(record, "cleanup_failed_path", "")
        error = getattr(record, "cleanup_failed_error", "")
        return f"{path}\n{error}\n\n"


class ErrorOnlyFilter(logging.Filter):
    """
    Filter that only allows ERROR and CRITICAL level records.

    Used by the error log file handler to exclude DEBUG, INFO, and WARNING.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.ERROR


def setup_logging(storage_dir: Path, console_level: int = logging.INFO) -> Path:
    """
    Configure the logging system for the application.

    This function should be called ONCE at application startup, after
    the configuration is loaded but before any other operations.

    Args:
        storage_dir: Directory where the logs/ subdirectory is created.
        console_level: Minimum level printed to the console.

    Returns:
        Path to the logs directory.

    Behavior:
        1. Create storage_dir/logs if it doesn't exist
        2. Generate timestamp for this run's log files
        3. Configure root logger level to DEBUG
        4. Console handler (TqdmLoggingHandler) at console_level
        5. log_full_{timestamp}.log at DEBUG
        6. log_errors_{timestamp}.log filtered to ERROR+ by ErrorOnlyFilter
        7. sync_failures_{timestamp}.log (SyncFailureHandler)
        8. file_cleanup_failures_{timestamp}.log (FileCleanupFailureHandler)

    Thread Safety:
        This function is NOT thread-safe. Call it once from the main
        thread before starting the sync worker.
    """
    logs_dir = storage_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Remove any existing handlers
    root_logger.handlers.clear()

    console_handler = TqdmLoggingHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(ColoredConsoleFormatter())
    root_logger.addHandler(console_handler)

    full_handler = logging.FileHandler(
        logs_dir / f"log_full_{timestamp}.log", mode="w", encoding="utf-8"
    )
    full_handler.setLevel(logging.DEBUG)
    full_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, FILE_DATE_FORMAT))
    root_logger.addHandler(full_handler)

    error_handler = logging.FileHandler(
        logs_dir / f"log_errors_{timestamp}.log", mode="w", encoding="utf-8"
    )
    error_handler.setLevel(logging.DEBUG)  # Filter handles the level restriction
    error_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, FILE_DATE_FORMAT))
    error_handler.addFilter(ErrorOnlyFilter())
    root_logger.addHandler(error_handler)

    sync_handler = SyncFailureHandler(logs_dir / f"sync_failures_{timestamp}.log")
    sync_handler.open()
    root_logger.addHandler(sync_handler)

    cleanup_handler = FileCleanupFailureHandler(
        logs_dir / f"file_cleanup_failures_{timestamp}.log"
    )
    cleanup_handler.open()
    root_logger.addHandler(cleanup_handler)

    return logs_dir


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: The logger name, typically __name__ of the calling module.
              This creates a hierarchy like 'tunesync.sync.merger'.

    Note:
        Loggers obtained before setup_logging() is called will have no
        handlers and will not produce output.
    """
    return logging.getLogger(name)


def log_sync_failure(
    logger: logging.Logger,
    source_label: str,
    kind: str,
    reason: str
) -> None:
    """
    Log a source whose sync was abandoned.

    Logs at ERROR level and attaches the extra fields that
    SyncFailureHandler writes to sync_failures.log.

    Args:
        logger: The logger to use for the message.
        source_label: Display label of the source ("name (host:port)").
        kind: Failure category: "network", "constraint" or "remote-data".
        reason: Description of why the sync was abandoned.

    Example:
        log_sync_failure(
            logger,
            source_label="Living room (192.168.1.20:5545)",
            kind="network",
            reason="connection refused after 3 tries"
        )
    """
    logger.error(
        f"Sync of {source_label} abandoned ({kind}): {reason}",
        extra={
            "sync_failed_source": source_label,
            "sync_failed_kind": kind,
            "sync_failed_reason": reason,
        }
    )


def log_file_cleanup_failure(
    logger: logging.Logger,
    path: Path,
    error_message: str
) -> None:
    """
    Log a cached file that could not be removed after its row was deleted.

    Logs at WARNING level: the row deletion already committed, so the
    leftover file is a nuisance, not a failure.
    """
    logger.warning(
        f"Could not remove {path}: {error_message}",
        extra={
            "cleanup_failed_path": str(path),
            "cleanup_failed_error": error_message,
        }
    )


def shutdown_logging() -> None:
    """
    Flush, close and detach all root logger handlers.

    Typically called in a finally block at application exit.
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        try:
            handler.flush()
            handler.close()
        except (OSError, ValueError):
            pass
        root_logger.removeHandler(handler)
