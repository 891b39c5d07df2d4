"""
Sync module for tunesync.

This module reconciles the local library with the remote sources:
    - context: SyncContext, cancellation token and state machine
    - entities: Per-entity descriptors and name prefix handling
    - merger: Sorted merge-join of local rows against remote pages
    - counts: Count maintainer for the denormalized count columns
    - observer: Event boundary toward the presentation layer
    - orchestrator: Per-source transactions, retry and failure policy
    - service: Background worker with start/stop control

Usage:
    from tunesync.sync import Synchronizer, SyncService

    service = SyncService(Synchronizer(database, client, file_manager, config.sync))
    service.start_sync()
"""

from tunesync.sync.context import (
    CancellationToken,
    SourceOutcome,
    SyncContext,
    SyncState,
)
from tunesync.sync.counts import adjust_counts, recompute_counts
from tunesync.sync.entities import (
    DESCRIPTORS,
    MERGE_ORDER,
    EntityDescriptor,
    full_name,
    split_name_prefix,
)
from tunesync.sync.merger import MergeAction, MergeStats, TableMerger, diff_rows
from tunesync.sync.observer import LoggingObserver, ObserverGroup, SyncObserver
from tunesync.sync.orchestrator import SourceSynchronizer, Synchronizer, calculate_backoff
from tunesync.sync.service import SyncService

__all__ = [
    # Context
    "CancellationToken",
    "SyncContext",
    "SyncState",
    "SourceOutcome",
    # Merging
    "EntityDescriptor",
    "DESCRIPTORS",
    "MERGE_ORDER",
    "split_name_prefix",
    "full_name",
    "diff_rows",
    "MergeAction",
    "MergeStats",
    "TableMerger",
    "adjust_counts",
    "recompute_counts",
    # Observers
    "SyncObserver",
    "ObserverGroup",
    "LoggingObserver",
    # Orchestration
    "Synchronizer",
    "SourceSynchronizer",
    "SyncService",
    "calculate_backoff",
]
