"""
Sync orchestrator: drives sources through the mergers.

One source is synced in one transaction. The mergers run in a fixed order
(artists, albums, songs, playlists, playlist_songs) because each table
only references tables merged before it. When the transaction commits,
the files of deleted rows are removed, the count maintainer runs, and the
source's counts are folded into the SyncContext.

Failure policy, per source:
    - TransientNetworkError: retry the whole source with exponential
      backoff, up to sync.max_tries attempts; then flag a network error
      and move on to the next source
    - NetworkError: flag a network error and move on
    - ConstraintViolation, DatabaseError, RemoteDataError: record the
      source as failed and move on
    - SyncCanceled: roll back and stop

Every failure rolls the source's transaction back, so a source is always
either fully applied or untouched. Sources committed earlier in the run
stay committed.

Usage:
    synchronizer = Synchronizer(database, HttpRemoteClient(), file_manager, config.sync)
    context = SyncContext()
    state = synchronizer.run(context, observer=LoggingObserver())
"""

import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from tunesync.core.config import SyncConfig
from tunesync.core.database import Database
from tunesync.core.exceptions import (
    ConstraintViolation,
    DatabaseError,
    NetworkError,
    RemoteDataError,
    SyncCanceled,
    SyncError,
    TransientNetworkError,
)
from tunesync.core.file_manager import FileManager
from tunesync.core.logger import get_logger, log_sync_failure
from tunesync.core.models import Source
from tunesync.remote.client import RemoteClient
from tunesync.sync.context import CancellationToken, SourceOutcome, SyncContext, SyncState
from tunesync.sync.counts import adjust_counts
from tunesync.sync.entities import MERGE_ORDER, EntityDescriptor
from tunesync.sync.merger import MergeStats, TableMerger
from tunesync.sync.observer import SyncObserver

logger = get_logger(__name__)


# =============================================================================
# Retry Configuration
# =============================================================================

MAX_DELAY = 15.0  # seconds
JITTER_FACTOR = 0.3  # randomness factor for backoff


def calculate_backoff(attempt: int, base_delay: float) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        attempt: Number of failed attempts so far, minus one (0-indexed).
        base_delay: Base delay in seconds.

    Returns:
        Delay in seconds with jitter applied.
    """
    delay = min(base_delay * (2 ** attempt), MAX_DELAY)

    # Add jitter: +/- JITTER_FACTOR of the delay
    jitter = delay * JITTER_FACTOR * (2 * random.random() - 1)

    return max(0.5, delay + jitter)


# =============================================================================
# Progress
# =============================================================================

class ProgressReporter:
    """
    Turns page-by-page progress into monotonic update_progress events.

    item_index counts records processed by the current attempt; item_count
    adds what the current entity's total says is still to come. Both are
    high-water marks, so a retry that starts over never reports less than
    was already shown.
    """

    def __init__(self, source_id: int, observer: SyncObserver) -> None:
        self.source_id = source_id
        self.observer = observer
        self.item_index = 0
        self.item_count = 0
        self._attempt_done = 0
        self._stage_done = 0
        self._stage_total: int | None = None

    def start_attempt(self) -> None:
        self._attempt_done = 0

    def start_stage(self) -> None:
        self._stage_done = 0
        self._stage_total = None

    def advance(self, processed: int, stage_total: int | None) -> None:
        self._attempt_done += processed
        self._stage_done += processed
        if stage_total is not None:
            self._stage_total = stage_total

        remaining = max(0, (self._stage_total or 0) - self._stage_done)
        self.item_index = max(self.item_index, self._attempt_done)
        self.item_count = max(self.item_count, self._attempt_done + remaining, self.item_index)
        self.observer.update_progress(self.source_id, self.item_index, self.item_count)


# =============================================================================
# One Source
# =============================================================================

@dataclass
class AttemptResult:
    """What one committed attempt changed."""
    stats: MergeStats = field(default_factory=MergeStats)
    newest_sync_time: int = 0
    pending_files: list[Path] = field(default_factory=list)


class SourceSynchronizer:
    """
    Syncs one source at a time, with retry and cancellation.

    Attributes:
        database: Local store.
        client: Remote client to page through.
        file_manager: Removes files of deleted rows. Optional.
        config: Retry bound, backoff base and name prefixes.
    """

    def __init__(
        self,
        database: Database,
        client: RemoteClient,
        file_manager: FileManager | None = None,
        config: SyncConfig | None = None
    ) -> None:
        self.database = database
        self.client = client
        self.file_manager = file_manager
        self.config = config or SyncConfig()

    def sync_source(
        self,
        source: Source,
        context: SyncContext,
        observer: SyncObserver
    ) -> SourceOutcome:
        """
        Sync one source to completion, retrying transient failures.

        Never raises for the failures listed in the module docstring;
        they are turned into the returned outcome.
        """
        progress = ProgressReporter(source.id, observer)
        attempt = 0

        while True:
            attempt += 1
            context.add_try()
            progress.start_attempt()

            try:
                result = self._attempt(source, context.token, progress)

            except SyncCanceled:
                logger.info(f"Sync of {source.label} canceled, changes rolled back")
                return SourceOutcome.CANCELED

            except TransientNetworkError as e:
                if attempt >= self.config.max_tries:
                    self._abandon(source, "network", f"{e.message} (after {attempt} tries)")
                    return SourceOutcome.NETWORK_ERROR

                delay = calculate_backoff(attempt - 1, self.config.retry_delay)
                logger.warning(
                    f"{source.label}: {e.message}; "
                    f"retry {attempt}/{self.config.max_tries - 1} in {delay:.1f}s"
                )
                if context.token.wait(delay):
                    logger.info(f"Sync of {source.label} canceled while waiting to retry")
                    return SourceOutcome.CANCELED
                continue

            except NetworkError as e:
                self._abandon(source, "network", e.message)
                return SourceOutcome.NETWORK_ERROR

            except ConstraintViolation as e:
                self._abandon(source, "constraint", e.message)
                return SourceOutcome.FAILED

            except RemoteDataError as e:
                self._abandon(source, "remote-data", e.message)
                return SourceOutcome.FAILED

            except DatabaseError as e:
                self._abandon(source, "database", e.message)
                return SourceOutcome.FAILED

            self._after_commit(source, context, result)
            return SourceOutcome.COMMITTED

    def _attempt(
        self,
        source: Source,
        token: CancellationToken,
        progress: ProgressReporter
    ) -> AttemptResult:
        """Run every merger for the source inside one transaction."""
        result = AttemptResult()

        with self.database.transaction() as conn:
            for descriptor in MERGE_ORDER:
                token.raise_if_canceled()
                progress.start_stage()

                merger = TableMerger(descriptor, conn, self.file_manager, self.config.name_prefixes)
                self._merge_entity(merger, source, descriptor, token, progress, result)

            token.raise_if_canceled()
            self.database.record_sync(conn, source.id, result.newest_sync_time)

        return result

    def _merge_entity(
        self,
        merger: TableMerger,
        source: Source,
        descriptor: EntityDescriptor,
        token: CancellationToken,
        progress: ProgressReporter,
        result: AttemptResult
    ) -> None:
        local_rows = merger.load_local_rows(source.id)
        after = None

        while True:
            page = self.client.fetch_page(source, descriptor.kind, after, token)
            merged = merger.merge(source.id, local_rows, page.records, page.more_remaining)

            local_rows = merged.remaining_local
            result.stats.add(merged.stats)
            result.pending_files.extend(merged.pending_files)
            result.newest_sync_time = max(result.newest_sync_time, merged.newest_sync_time)
            progress.advance(len(page.records), page.total)

            if not page.more_remaining:
                return

            if not page.records:
                raise RemoteDataError(
                    f"Remote sent an empty '{descriptor.kind}' page with more remaining",
                    details={"kind": descriptor.kind, "after": after}
                )
            after = descriptor.remote_key(page.records[-1])
            token.raise_if_canceled()

    def _after_commit(self, source: Source, context: SyncContext, result: AttemptResult) -> None:
        stats = result.stats

        if self.file_manager is not None and result.pending_files:
            self.file_manager.remove_files(result.pending_files)

        try:
            adjust_counts(self.database)
        except DatabaseError as e:
            # The source is committed; the next pass fixes the counts
            logger.error(f"Count maintenance after {source.label} failed: {e.message}")

        context.record_commit(
            source.id,
            inserts=stats.inserted,
            updates=stats.updated,
            deletes=stats.deleted,
            newest_sync_time=result.newest_sync_time,
        )
        logger.info(
            f"{source.label}: {stats.inserted} inserted, {stats.updated} updated, "
            f"{stats.deleted} deleted"
            + (f", {stats.suppressed} suppressed by tombstones" if stats.suppressed else "")
        )

    def _abandon(self, source: Source, kind: str, reason: str) -> None:
        log_sync_failure(logger, source.label, kind, reason)
        self.database.set_source_error(source.id, f"{kind}: {reason}")


# =============================================================================
# All Sources
# =============================================================================

class Synchronizer:
    """
    Runs a sync over several sources for one SyncContext.

    Observers get begin_sync first and end_sync last, and a matched
    begin_source/end_source pair for every source that was started,
    whatever its outcome.
    """

    def __init__(
        self,
        database: Database,
        client: RemoteClient,
        file_manager: FileManager | None = None,
        config: SyncConfig | None = None
    ) -> None:
        self.database = database
        self.client = client
        self.source_synchronizer = SourceSynchronizer(database, client, file_manager, config)

    def select_sources(self, source_ids: Iterable[int] | None = None) -> list[Source]:
        """
        Resolve the sources to sync, all of them by default.

        Raises:
            SyncError: If a requested id is not a registered source.
        """
        if source_ids is None:
            return self.database.get_sources()

        sources = []
        for source_id in source_ids:
            source = self.database.get_source(source_id)
            if source is None:
                raise SyncError(
                    f"Unknown source id: {source_id}",
                    details={"source_id": source_id}
                )
            sources.append(source)
        return sources

    def run(
        self,
        context: SyncContext,
        observer: SyncObserver | None = None,
        source_ids: Iterable[int] | None = None
    ) -> SyncState:
        """
        Sync the selected sources in order.

        Stops before the next source once cancellation is requested.

        Returns:
            The terminal state of the context.
        """
        observer = observer or SyncObserver()
        sources = self.select_sources(source_ids)

        context.begin()
        observer.begin_sync()
        try:
            for source in sources:
                if context.has_canceled():
                    logger.info("Sync canceled, remaining sources skipped")
                    break

                context.source_started(source.id)
                observer.begin_source(source.id)
                outcome = SourceOutcome.FAILED
                try:
                    outcome = self.source_synchronizer.sync_source(source, context, observer)
                finally:
                    context.source_finished(source.id, outcome)
                    observer.end_source(source.id)
        except Exception:
            context.mark_unexpected_error()
            raise
        finally:
            state = context.finish()
            observer.end_sync()

        return state
