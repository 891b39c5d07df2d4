"""
Generic table merger: reconciles one source's local rows with remote pages.

The merge is a sorted merge-join. Local rows are read in key order, remote
records arrive in ascending key order, and walking both once gives every
decision:

    remote key, no local row            -> insert
    matched, remote is newer            -> update (sync_time advances)
    matched, remote is not newer        -> unchanged
    local key absent from enumeration   -> delete + tombstone

Deletions are only inferred from a complete enumeration. While more pages
remain, unmatched local rows are carried forward in
MergeResult.remaining_local and passed back in with the next page.

A remote sync-id that has a tombstone is never inserted again; the
record is counted as suppressed instead.

All writes go to the connection of the caller's transaction. Files owned
by deleted rows are not touched here: they are returned in
MergeResult.pending_files for removal once the transaction commits.

Usage:
    merger = TableMerger(SONGS, conn, file_manager)
    local_rows = merger.load_local_rows(source.id)
    while True:
        page = client.fetch_page(source, "songs", after, token)
        result = merger.merge(source.id, local_rows, page.records, page.more_remaining)
        local_rows = result.remaining_local
        if not page.more_remaining:
            break
"""

import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Hashable, Mapping, Sequence

from tunesync.core.config import DEFAULT_NAME_PREFIXES
from tunesync.core.database import now_iso
from tunesync.core.exceptions import ConstraintViolation, RemoteDataError
from tunesync.core.file_manager import FileManager
from tunesync.core.logger import get_logger
from tunesync.remote.models import RemoteRecord
from tunesync.sync.entities import EntityDescriptor, Reference, split_name_prefix

logger = get_logger(__name__)


class MergeAction(Enum):
    INSERT = "insert"
    UPDATE = "update"
    UNCHANGED = "unchanged"
    DELETE = "delete"


@dataclass(frozen=True)
class MergeDecision:
    """
    What to do with one key.

    record is set for INSERT, UPDATE and UNCHANGED; row is set for
    UPDATE, UNCHANGED and DELETE.
    """
    action: MergeAction
    record: RemoteRecord | None = None
    row: Mapping[str, Any] | None = None


@dataclass
class MergeStats:
    """Row counts of one or more merges."""
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    suppressed: int = 0

    @property
    def changed(self) -> int:
        return self.inserted + self.updated + self.deleted

    def add(self, other: "MergeStats") -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.deleted += other.deleted
        self.unchanged += other.unchanged
        self.suppressed += other.suppressed


@dataclass
class MergeResult:
    """
    Outcome of merging one remote page.

    Attributes:
        stats: Row counts for this page.
        remaining_local: Local rows not matched yet, in key order. Pass them
                         to the next merge() call. Empty after the last page.
        pending_files: Files owned by deleted rows, to remove after commit.
        newest_sync_time: Newest remote sync-time seen on this page.
    """
    stats: MergeStats = field(default_factory=MergeStats)
    remaining_local: list = field(default_factory=list)
    pending_files: list[Path] = field(default_factory=list)
    newest_sync_time: int = 0


def diff_rows(
    descriptor: EntityDescriptor,
    local_rows: Sequence[Mapping[str, Any]],
    remote_batch: Sequence[RemoteRecord],
    more_remaining: bool,
    after: Hashable | None = None
) -> tuple[list[MergeDecision], list[Mapping[str, Any]]]:
    """
    Merge-join local rows against one remote page, without writing anything.

    Args:
        descriptor: Entity being merged.
        local_rows: Local rows not matched by earlier pages, in key order.
        remote_batch: Remote page, in strictly ascending key order.
        more_remaining: More pages follow this one.
        after: Last key of the previous page; this page must start above it.

    Returns:
        (decisions, remaining_local). remaining_local is empty when
        more_remaining is False, its rows having become DELETE decisions.

    Raises:
        RemoteDataError: If the page is not strictly ascending, or a record
                         of a synced entity lacks its sync_id or sync_time.
    """
    previous = after
    for record in remote_batch:
        if descriptor.synced and (record.sync_id is None or record.sync_time is None):
            raise RemoteDataError(
                f"Remote '{descriptor.kind}' record lacks sync_id or sync_time",
                details={"kind": descriptor.kind, "sync_id": record.sync_id}
            )
        key = descriptor.remote_key(record)
        if previous is not None and key <= previous:
            raise RemoteDataError(
                f"Remote page for '{descriptor.kind}' is not in ascending order",
                details={"kind": descriptor.kind, "previous": previous, "current": key}
            )
        previous = key

    decisions: list[MergeDecision] = []
    remaining: list[Mapping[str, Any]] = []
    index = 0

    for record in remote_batch:
        key = descriptor.remote_key(record)

        # Local rows below this key were skipped by the remote
        while index < len(local_rows) and descriptor.local_key(local_rows[index]) < key:
            remaining.append(local_rows[index])
            index += 1

        if index < len(local_rows) and descriptor.local_key(local_rows[index]) == key:
            row = local_rows[index]
            index += 1
            if descriptor.needs_update(row, record):
                decisions.append(MergeDecision(MergeAction.UPDATE, record, row))
            else:
                decisions.append(MergeDecision(MergeAction.UNCHANGED, record, row))
        else:
            decisions.append(MergeDecision(MergeAction.INSERT, record))

    remaining.extend(local_rows[index:])

    if not more_remaining:
        decisions.extend(MergeDecision(MergeAction.DELETE, row=row) for row in remaining)
        remaining = []

    return decisions, remaining


class TableMerger:
    """
    Applies merge decisions for one entity of one source.

    One instance covers all pages of one entity within one transaction:
    it remembers the last remote key to check ordering across pages.

    Attributes:
        descriptor: Entity being merged.
        conn: Connection of the enclosing transaction.
        file_manager: Resolves the files owned by deleted rows. Optional.
        name_prefixes: Prefixes split off display names.
    """

    def __init__(
        self,
        descriptor: EntityDescriptor,
        conn: sqlite3.Connection,
        file_manager: FileManager | None = None,
        name_prefixes: Sequence[str] = DEFAULT_NAME_PREFIXES
    ) -> None:
        self.descriptor = descriptor
        self.conn = conn
        self.file_manager = file_manager
        self.name_prefixes = tuple(name_prefixes)
        self._last_key: Hashable | None = None
        self._tombstoned: set[int] | None = None
        self._references: dict[tuple[str, int], int] = {}

    def load_local_rows(self, source_id: int) -> list[sqlite3.Row]:
        """The source's current rows for this entity, in key order."""
        return self.conn.execute(self.descriptor.rows_sql(), (source_id,)).fetchall()

    def merge(
        self,
        source_id: int,
        local_rows: Sequence[Mapping[str, Any]],
        remote_batch: Sequence[RemoteRecord],
        more_remaining: bool
    ) -> MergeResult:
        """
        Merge one remote page into the local table.

        Args:
            source_id: Source being synced.
            local_rows: Rows from load_local_rows(), or remaining_local of
                        the previous call.
            remote_batch: Remote page in ascending key order.
            more_remaining: More pages follow. When False, unmatched local
                            rows are deleted and tombstoned.

        Raises:
            ConstraintViolation: A reference cannot be resolved or a write
                                 breaks a constraint. The caller must roll back.
            RemoteDataError: The page is out of order or lacks fields.
        """
        decisions, remaining = diff_rows(
            self.descriptor, local_rows, remote_batch, more_remaining, after=self._last_key
        )
        if remote_batch:
            self._last_key = self.descriptor.remote_key(remote_batch[-1])

        result = MergeResult(remaining_local=remaining)
        stats = result.stats

        for decision in decisions:
            record = decision.record
            if record is not None and self.descriptor.synced:
                result.newest_sync_time = max(result.newest_sync_time, record.sync_time)

            if decision.action is MergeAction.INSERT:
                if self._is_tombstoned(source_id, record):
                    stats.suppressed += 1
                    logger.debug(
                        f"{self.descriptor.kind}: sync-id {record.sync_id} is tombstoned, not inserting"
                    )
                    continue
                self._insert(source_id, record)
                stats.inserted += 1
            elif decision.action is MergeAction.UPDATE:
                self._update(source_id, decision.row, record)
                stats.updated += 1
            elif decision.action is MergeAction.UNCHANGED:
                stats.unchanged += 1
            else:
                result.pending_files.extend(self._delete(source_id, decision.row))
                stats.deleted += 1

        logger.debug(
            f"{self.descriptor.kind}: +{stats.inserted} ~{stats.updated} "
            f"-{stats.deleted} ={stats.unchanged} (suppressed {stats.suppressed})"
        )
        return result

    # =========================================================================
    # Writes
    # =========================================================================

    def _values(self, source_id: int, record: RemoteRecord) -> dict[str, Any]:
        descriptor = self.descriptor
        values = {column: record.get(name) for column, name in descriptor.columns.items()}

        if descriptor.name_column is not None:
            raw_name = record.require(descriptor.columns[descriptor.name_column])
            values[descriptor.name_column], values["name_prefix"] = split_name_prefix(
                str(raw_name), self.name_prefixes
            )

        for reference in descriptor.references:
            values[reference.column] = self._resolve(source_id, reference, record)

        if descriptor.synced:
            values["sync_id"] = record.sync_id
            values["sync_time"] = record.sync_time

        return values

    def _insert(self, source_id: int, record: RemoteRecord) -> None:
        values = self._values(source_id, record)
        values["source_id"] = source_id
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        self._execute(
            f"INSERT INTO {self.descriptor.table} ({columns}) VALUES ({placeholders})",
            tuple(values.values()),
            record
        )

    def _update(self, source_id: int, row: Mapping[str, Any], record: RemoteRecord) -> None:
        values = self._values(source_id, record)
        assignments = ", ".join(f"{column} = ?" for column in values)
        self._execute(
            f"UPDATE {self.descriptor.table} SET {assignments} WHERE id = ?",
            (*values.values(), row["id"]),
            record
        )

    def _delete(self, source_id: int, row: Mapping[str, Any]) -> list[Path]:
        descriptor = self.descriptor
        paths = []
        if self.file_manager is not None:
            paths = self.file_manager.files_for_row(descriptor.table, row)

        self.conn.execute(f"DELETE FROM {descriptor.table} WHERE id = ?", (row["id"],))

        if descriptor.tombstone_table is not None:
            self.conn.execute(
                f"INSERT OR REPLACE INTO {descriptor.tombstone_table} "
                "(source_id, sync_id, sync_time, deleted_at) VALUES (?, ?, ?, ?)",
                (source_id, row["sync_id"], row["sync_time"], now_iso())
            )
            if self._tombstoned is not None:
                self._tombstoned.add(row["sync_id"])

        return paths

    def _execute(self, sql: str, params: tuple, record: RemoteRecord) -> None:
        try:
            self.conn.execute(sql, params)
        except sqlite3.IntegrityError as e:
            raise ConstraintViolation(
                f"{self.descriptor.table}: write for sync-id {record.sync_id} failed: {e}",
                details={
                    "table": self.descriptor.table,
                    "sync_id": record.sync_id,
                    "original_error": str(e),
                }
            ) from e

    # =========================================================================
    # Lookups
    # =========================================================================

    def _is_tombstoned(self, source_id: int, record: RemoteRecord) -> bool:
        tombstone_table = self.descriptor.tombstone_table
        if tombstone_table is None:
            return False
        if self._tombstoned is None:
            cursor = self.conn.execute(
                f"SELECT sync_id FROM {tombstone_table} WHERE source_id = ?", (source_id,)
            )
            self._tombstoned = {row[0] for row in cursor.fetchall()}
        return record.sync_id in self._tombstoned

    def _resolve(self, source_id: int, reference: Reference, record: RemoteRecord) -> int | None:
        """Map a parent sync-id carried by the record to the parent's local id."""
        parent_sync_id = record.get(reference.remote_field)
        if parent_sync_id is None:
            if reference.required:
                raise ConstraintViolation(
                    f"{self.descriptor.table}: sync-id {record.sync_id} has no "
                    f"'{reference.remote_field}' reference",
                    details={"table": self.descriptor.table, "sync_id": record.sync_id}
                )
            return None

        cache_key = (reference.table, parent_sync_id)
        if cache_key not in self._references:
            row = self.conn.execute(
                f"SELECT id FROM {reference.table} WHERE source_id = ? AND sync_id = ?",
                (source_id, parent_sync_id)
            ).fetchone()
            if row is None:
                raise ConstraintViolation(
                    f"{self.descriptor.table}: sync-id {record.sync_id} references unknown "
                    f"{reference.table} sync-id {parent_sync_id}",
                    details={
                        "table": self.descriptor.table,
                        "sync_id": record.sync_id,
                        "reference": parent_sync_id,
                    }
                )
            self._references[cache_key] = row[0]
        return self._references[cache_key]
