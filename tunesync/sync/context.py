"""
Shared sync state: progress counters, cancellation and outcome flags.

One SyncContext lives for one sync run. The worker thread writes the
counters; any thread may read them or call cancel().

Cancellation is cooperative. cancel() sets a flag that the worker polls
between merger stages and between pages, and fires the triggers that
blocking calls registered, so an in-flight network read is interrupted
right away instead of at the next poll point.

State machine:
    IDLE -> RUNNING -> COMPLETED | CANCELED | FAILED

Usage:
    context = SyncContext()
    context.begin()

    with context.token.register(response.close):
        body = response.raw.read()       # unblocked by context.cancel()

    context.token.raise_if_canceled()    # poll point
    context.finish()
    if context.has_success():
        ...
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from tunesync.core.exceptions import SyncCanceled, SyncError
from tunesync.core.logger import get_logger

logger = get_logger(__name__)


class SyncState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"


class SourceOutcome(Enum):
    """How one source's sync ended."""
    COMMITTED = "committed"
    CANCELED = "canceled"
    NETWORK_ERROR = "network-error"
    FAILED = "failed"


class TriggerRegistration:
    """
    Handle for a registered cancel trigger.

    Used as a context manager: the trigger is unregistered on exit,
    whether or not it fired.
    """

    def __init__(self, token: "CancellationToken", trigger: Callable[[], None]) -> None:
        self._token = token
        self._trigger = trigger

    def unregister(self) -> None:
        self._token._unregister(self._trigger)

    def __enter__(self) -> "TriggerRegistration":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.unregister()


class CancellationToken:
    """
    Thread-safe, one-shot cancellation signal.

    Attributes:
        is_canceled: True once cancel() has been called. Never resets.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._triggers: list[Callable[[], None]] = []

    @property
    def is_canceled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """
        Request cancellation. Callable from any thread, idempotent.

        Every registered trigger runs once, on the calling thread.
        A trigger that raises is logged and the remaining ones still run.
        """
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            triggers = list(self._triggers)
            self._triggers.clear()

        for trigger in triggers:
            try:
                trigger()
            except Exception:
                logger.warning("Cancel trigger raised", exc_info=True)

    def register(self, trigger: Callable[[], None]) -> TriggerRegistration:
        """
        Register a callback that unblocks a pending operation on cancel.

        If cancellation was already requested, the trigger runs immediately.
        """
        with self._lock:
            if not self._event.is_set():
                self._triggers.append(trigger)
                return TriggerRegistration(self, trigger)

        trigger()
        return TriggerRegistration(self, trigger)

    def _unregister(self, trigger: Callable[[], None]) -> None:
        with self._lock:
            if trigger in self._triggers:
                self._triggers.remove(trigger)

    def wait(self, timeout: float | None = None) -> bool:
        """
        Sleep up to timeout seconds, waking early on cancellation.

        Returns:
            True if cancellation was requested.
        """
        return self._event.wait(timeout)

    def raise_if_canceled(self) -> None:
        """
        Poll point.

        Raises:
            SyncCanceled: If cancellation was requested.
        """
        if self._event.is_set():
            raise SyncCanceled("Sync canceled")


@dataclass
class SourceProgress:
    """
    Begin/end record of one source within a run.

    Counts are only filled in when the source commits.
    """
    source_id: int
    finished: bool = False
    outcome: SourceOutcome | None = None
    inserts: int = 0
    updates: int = 0
    deletes: int = 0


class SyncContext:
    """
    Progress, cancellation and outcome of one sync run.

    Attributes:
        token: Cancellation token shared with the worker and the network client.
        number_of_tries: Source sync attempts made, retries included.
        number_of_inserts: Rows inserted by committed sources.
        number_of_updates: Rows updated by committed sources.
        number_of_deletes: Rows deleted by committed sources.
        newest_sync_time: Watermark: newest remote sync-time committed.
        network_error: A source was abandoned on a network failure.
        failed_sources: Sources abandoned on constraint or remote-data failures.
        completed_sources: Sources that committed.
        sources: Per-source begin/end records, in the order sources began.
    """

    def __init__(self, token: CancellationToken | None = None) -> None:
        self.token = token or CancellationToken()
        self._lock = threading.Lock()
        self.state = SyncState.IDLE

        self.number_of_tries = 0
        self.number_of_inserts = 0
        self.number_of_updates = 0
        self.number_of_deletes = 0
        self.newest_sync_time = 0

        self.network_error = False
        self.unexpected_error = False
        self.failed_sources: list[int] = []
        self.completed_sources: list[int] = []
        self.sources: dict[int, SourceProgress] = {}

    # =========================================================================
    # State Machine
    # =========================================================================

    def begin(self) -> None:
        with self._lock:
            if self.state is not SyncState.IDLE:
                raise SyncError(
                    f"Cannot start a sync from state {self.state.value}",
                    details={"state": self.state.value}
                )
            self.state = SyncState.RUNNING

    def finish(self) -> SyncState:
        """
        Resolve the terminal state from the flags.

        Canceled wins over failed: a user who asked to stop is told the
        run was canceled even if a source had failed before that.
        """
        with self._lock:
            if self.state is not SyncState.RUNNING:
                raise SyncError(
                    f"Cannot finish a sync from state {self.state.value}",
                    details={"state": self.state.value}
                )
            if self.token.is_canceled:
                self.state = SyncState.CANCELED
            elif self._has_error():
                self.state = SyncState.FAILED
            else:
                self.state = SyncState.COMPLETED
            return self.state

    def mark_unexpected_error(self) -> None:
        with self._lock:
            self.unexpected_error = True

    # =========================================================================
    # Per-source Events
    # =========================================================================

    def source_started(self, source_id: int) -> None:
        with self._lock:
            self.sources[source_id] = SourceProgress(source_id=source_id)

    def source_finished(self, source_id: int, outcome: SourceOutcome) -> None:
        with self._lock:
            progress = self.sources.setdefault(source_id, SourceProgress(source_id=source_id))
            progress.finished = True
            progress.outcome = outcome
            if outcome is SourceOutcome.NETWORK_ERROR:
                self.network_error = True
            elif outcome is SourceOutcome.FAILED:
                self.failed_sources.append(source_id)

    def record_commit(
        self,
        source_id: int,
        inserts: int,
        updates: int,
        deletes: int,
        newest_sync_time: int
    ) -> None:
        """Fold a committed source's counts into the run totals."""
        with self._lock:
            self.number_of_inserts += inserts
            self.number_of_updates += updates
            self.number_of_deletes += deletes
            self.newest_sync_time = max(self.newest_sync_time, newest_sync_time)
            self.completed_sources.append(source_id)

            progress = self.sources.setdefault(source_id, SourceProgress(source_id=source_id))
            progress.inserts = inserts
            progress.updates = updates
            progress.deletes = deletes

    def add_try(self) -> int:
        with self._lock:
            self.number_of_tries += 1
            return self.number_of_tries

    # =========================================================================
    # Flags
    # =========================================================================

    def cancel(self) -> None:
        """Request cooperative cancellation. Callable from any thread."""
        self.token.cancel()

    def has_canceled(self) -> bool:
        return self.token.is_canceled

    def _has_error(self) -> bool:
        return self.network_error or bool(self.failed_sources) or self.unexpected_error

    def has_error(self) -> bool:
        with self._lock:
            return self._has_error()

    def has_success(self) -> bool:
        return not self.has_canceled() and not self.has_error()

    @property
    def total_records_processed(self) -> int:
        return self.number_of_inserts + self.number_of_updates + self.number_of_deletes

    @property
    def is_running(self) -> bool:
        return self.state is SyncState.RUNNING
