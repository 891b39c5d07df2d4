"""
Control boundary: start, stop and watch syncs from the outside.

SyncService runs Synchronizer.run() on a background worker thread so the
caller (CLI, UI) stays responsive. At most one sync runs at a time;
starting while one is running is a no-op.

Usage:
    service = SyncService(synchronizer, observer=SyncProgressBar())
    service.start_sync()
    ...
    service.stop_sync()          # from any thread, returns immediately
    context = service.wait()     # join the worker
"""

import threading
from typing import Iterable

from tunesync.core.exceptions import SyncError
from tunesync.core.logger import get_logger
from tunesync.sync.context import SyncContext
from tunesync.sync.observer import SyncObserver
from tunesync.sync.orchestrator import Synchronizer

logger = get_logger(__name__)


class SyncService:
    """
    Owns the sync worker thread.

    Attributes:
        synchronizer: Runs the actual sync.
        observer: Receives sync events on the worker thread.
        last_context: Context of the most recent run, None before the first.
    """

    def __init__(self, synchronizer: Synchronizer, observer: SyncObserver | None = None) -> None:
        self.synchronizer = synchronizer
        self.observer = observer
        self.last_context: SyncContext | None = None
        self._lock = threading.Lock()
        self._worker: threading.Thread | None = None
        self._inline_context: SyncContext | None = None

    def start_sync(self, source_ids: Iterable[int] | None = None) -> bool:
        """
        Start a sync in the background.

        Args:
            source_ids: Sources to sync, all of them if None.

        Returns:
            True if a sync was started, False if one was already running.
        """
        with self._lock:
            if self._is_busy():
                logger.info("Sync already running, start request ignored")
                return False

            context = SyncContext()
            ids = list(source_ids) if source_ids is not None else None
            self.last_context = context
            self._worker = threading.Thread(
                target=self._run,
                args=(context, ids),
                name="tunesync-worker",
                daemon=True,
            )
            self._worker.start()
            return True

    def stop_sync(self) -> None:
        """Request cancellation of the running sync, if any. Does not block."""
        with self._lock:
            context = self.last_context
            running = self._is_busy()

        if running and context is not None:
            logger.info("Stopping sync")
            context.cancel()

    def is_syncing(self) -> bool:
        with self._lock:
            return self._is_busy()

    def wait(self, timeout: float | None = None) -> SyncContext | None:
        """
        Block until the running sync ends or timeout expires.

        Returns:
            The context of the most recent run.
        """
        with self._lock:
            worker = self._worker
        if worker is not None:
            worker.join(timeout)
        return self.last_context

    def run_sync(self, source_ids: Iterable[int] | None = None) -> SyncContext:
        """
        Run a sync on the calling thread and return its context.

        Unlike start_sync(), errors the synchronizer raises propagate.
        The service counts as syncing until it returns.

        Raises:
            SyncError: If a sync is already running.
        """
        with self._lock:
            if self._is_busy():
                raise SyncError("A sync is already running")
            context = SyncContext()
            self.last_context = context
            self._inline_context = context

        try:
            self.synchronizer.run(context, self.observer, source_ids)
        finally:
            with self._lock:
                self._inline_context = None
        return context

    def _is_busy(self) -> bool:
        """Caller holds _lock."""
        if self._inline_context is not None:
            return True
        return self._worker is not None and self._worker.is_alive()

    def _run(self, context: SyncContext, source_ids: list[int] | None) -> None:
        try:
            self.synchronizer.run(context, self.observer, source_ids)
        except Exception:
            # Worker thread: nobody above us to propagate to
            logger.exception("Sync worker crashed")
