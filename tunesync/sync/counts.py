"""
Count maintainer: recomputes the denormalized count columns.

    artists.num_songs    songs per artist
    artists.num_albums   distinct albums among the artist's songs
    albums.num_songs     songs per album
    playlists.num_songs  entries per playlist

Counts are always recomputed from the child rows with grouped aggregates,
never adjusted incrementally, so a pass converges to the truth no matter
how the columns drifted. Parents without children get 0. Only rows whose
value actually changes are written, all in one transaction.

Runs after every committed source, and standalone via
`tunesync adjust-counts`.
"""

import sqlite3
from dataclasses import dataclass, field

from tunesync.core.database import Database
from tunesync.core.logger import get_logger

logger = get_logger(__name__)


# (table, column, grouped aggregate returning (parent_id, count))
COUNT_QUERIES: tuple[tuple[str, str, str], ...] = (
    (
        "artists", "num_songs",
        "SELECT artist_id, COUNT(*) FROM songs GROUP BY artist_id",
    ),
    (
        "artists", "num_albums",
        "SELECT artist_id, COUNT(DISTINCT album_id) FROM songs GROUP BY artist_id",
    ),
    (
        "albums", "num_songs",
        "SELECT album_id, COUNT(*) FROM songs WHERE album_id IS NOT NULL GROUP BY album_id",
    ),
    (
        "playlists", "num_songs",
        "SELECT playlist_id, COUNT(*) FROM playlist_songs GROUP BY playlist_id",
    ),
)


@dataclass
class CountAdjustment:
    """Rows whose count changed, keyed by 'table.column'."""
    changed: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.changed.values())


def recompute_counts(conn: sqlite3.Connection) -> CountAdjustment:
    """
    Bring every count column in line with its child rows.

    Runs on the caller's connection, inside the caller's transaction.
    """
    adjustment = CountAdjustment()

    for table, column, aggregate in COUNT_QUERIES:
        truth = {parent_id: count for parent_id, count in conn.execute(aggregate).fetchall()}
        updates = [
            (truth.get(row_id, 0), row_id)
            for row_id, current in conn.execute(f"SELECT id, {column} FROM {table}").fetchall()
            if current != truth.get(row_id, 0)
        ]
        if updates:
            conn.executemany(f"UPDATE {table} SET {column} = ? WHERE id = ?", updates)
        adjustment.changed[f"{table}.{column}"] = len(updates)

    return adjustment


def adjust_counts(database: Database) -> CountAdjustment:
    """
    Run a count maintenance pass in its own transaction.

    Idempotent: a second pass right after the first changes nothing.
    """
    with database.transaction() as conn:
        adjustment = recompute_counts(conn)

    if adjustment.total:
        logger.debug(f"Adjusted {adjustment.total} count(s): {adjustment.changed}")
    return adjustment
