"""
Exception classes for tunesync.

This module defines all custom exceptions used throughout the application.
Each exception carries a human-readable message plus a details dictionary,
and the hierarchy mirrors the failure scopes of a sync run: configuration
problems stop the program, storage and remote-data problems abort one
source's transaction, transient network problems are retried.

Exception Hierarchy:
    TuneSyncError (base)
        ConfigError - Configuration file issues
        DatabaseError - SQLite store issues
            ConstraintViolation - Integrity failure inside a sync transaction
        NetworkError - Remote source unreachable or refusing requests
            TransientNetworkError - Failure that may succeed on retry
        RemoteDataError - Remote source sent malformed or misordered data
        SyncError - Illegal sync state transitions
            SyncCanceled - Cooperative cancellation was requested
"""


class TuneSyncError(Exception):
    """
    Base exception for all tunesync errors.

    All custom exceptions in this project inherit from this class,
    allowing callers to catch every tunesync error with a single
    except clause if desired.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context (source id, table, sync-id).

    Example:
        try:
            synchronizer.run(context)
        except TuneSyncError as e:
            logger.error(f"Sync failed: {e.message}")
            if e.details:
                logger.debug(f"Details: {e.details}")
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        """
        Initialize the base exception.

        Args:
            message: Human-readable error description that will be shown to the user.
            details: Optional dictionary containing additional context about the error.
                     Common keys include:
                     - 'source_id': Local id of the source being synced
                     - 'table': Table the failing statement touched
                     - 'sync_id': Remote sync-id of the offending record
                     - 'original_error': The underlying exception if wrapping another error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return the error message for display."""
        return self.message


class ConfigError(TuneSyncError):
    """
    Raised when there's an issue with the configuration file.

    This is a CRITICAL error that should stop program execution.

    Common causes:
        - config.yaml not found
        - config.yaml has invalid YAML syntax
        - A source entry without host or port
        - Invalid field values (e.g., max_tries < 1)

    Example:
        raise ConfigError(
            "'sync.max_tries' must be a positive integer",
            details={'field': 'sync.max_tries', 'value': 0}
        )
    """
    pass


class DatabaseError(TuneSyncError):
    """
    Raised when there's an issue with the SQLite store.

    Outside a sync this is CRITICAL. Inside a sync it only aborts the
    transaction of the source being synced.

    Common causes:
        - Database file cannot be opened or created
        - Schema version mismatch
        - Database locked for longer than the busy timeout

    Example:
        raise DatabaseError(
            "Database version mismatch: expected 1, got 3",
            details={'expected': 1, 'actual': 3}
        )
    """
    pass


class ConstraintViolation(DatabaseError):
    """
    Raised when a write inside a sync transaction breaks an integrity rule.

    The orchestrator rolls back the whole source when it sees this error;
    sources committed earlier in the same run are unaffected.

    Common causes:
        - A song or album references an artist sync-id the source never sent
        - Deferred foreign keys failing at commit (parent deleted, child kept)
        - Duplicate (source_id, sync_id) pairs

    Example:
        raise ConstraintViolation(
            "songs.artist_id references unknown artist sync-id 42",
            details={'table': 'songs', 'sync_id': 7, 'reference': 42}
        )
    """
    pass


class NetworkError(TuneSyncError):
    """
    Raised when the remote source cannot serve a request.

    Non-transient network errors (HTTP 4xx other than 429) are not retried:
    the source is abandoned and the sync context is flagged.

    Attributes:
        status_code: HTTP status code when the server answered, else None.

    Example:
        raise NetworkError(
            "Remote rejected request: HTTP 404",
            details={'url': url},
            status_code=404
        )
    """

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        status_code: int | None = None
    ) -> None:
        """
        Initialize network error with the HTTP status.

        Args:
            message: Human-readable error description.
            details: Optional dictionary with additional context.
            status_code: HTTP status code of the failed response, if any.
        """
        super().__init__(message, details)
        self.status_code = status_code


class TransientNetworkError(NetworkError):
    """
    Raised for network failures that may succeed when retried.

    Common causes:
        - Connection refused or reset
        - Read or connect timeout
        - HTTP 5xx or 429 responses

    The orchestrator retries the current source up to sync.max_tries
    times with exponential backoff before giving up on it.
    """
    pass


class RemoteDataError(TuneSyncError):
    """
    Raised when the remote source returns data the engine cannot use.

    Treated like a constraint violation: the source's transaction is
    rolled back and the source is recorded as failed.

    Common causes:
        - Response body is not valid JSON
        - A page is not in strictly ascending key order
        - A record lacks required fields

    Example:
        raise RemoteDataError(
            "Remote page for 'songs' is not in ascending order",
            details={'kind': 'songs', 'previous': 12, 'current': 9}
        )
    """
    pass


class SyncError(TuneSyncError):
    """Raised on an illegal sync state transition."""
    pass


class SyncCanceled(SyncError):
    """
    Raised inside the sync worker when cancellation has been requested.

    Not an error from the user's point of view: the in-progress
    transaction is rolled back and the run is reported as canceled.
    """
    pass
