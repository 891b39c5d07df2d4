"""
SQLite store for the tunesync library replica.

Every library table carries the id of the source it was synced from and
the remote (sync_id, sync_time) pair; sync_id is unique per source.
Deletions observed on the remote are recorded in tombstone tables so the
same sync-id is never brought back by a later sync.

Schema:
    sources:            Remote origins (host, port, last_sync_time, revision)
    artists:            name + name_prefix, photo, num_albums, num_songs
    albums:             artist_id, name + name_prefix, artwork, release_date, num_songs
    songs:              artist_id, album_id, title, track, length, cache_path
    playlists:          name, num_songs
    playlist_songs:     playlist_id, song_id, position
    deleted_*:          Tombstones (source_id, sync_id, sync_time) for artists,
                        albums, songs and playlists

Foreign keys between library tables are DEFERRABLE INITIALLY DEFERRED: a
sync may delete a parent before its children within one transaction, and
integrity is checked when that transaction commits.

Connections:
    Reads and small local edits go through one persistent connection
    guarded by a lock. Sync writes use transaction(), which opens a
    dedicated connection with BEGIN IMMEDIATE so readers keep seeing the
    last committed state (WAL mode) until the whole source commits.

Usage:
    db = Database(storage_dir / "tunesync.db", file_manager)

    source = db.ensure_source("192.168.1.20", 5545, name="Living room")

    with db.transaction() as conn:
        conn.execute("INSERT INTO artists ...")

    for artist in db.get_artists():
        print(artist["full_name"], artist["num_songs"])
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Iterable

from tunesync.core.exceptions import ConstraintViolation, DatabaseError
from tunesync.core.file_manager import FileManager
from tunesync.core.logger import get_logger
from tunesync.core.models import Source

logger = get_logger(__name__)


DATABASE_VERSION = 1

# Tables with a tombstone table, in merge order
TOMBSTONE_TABLES = {
    "artists": "deleted_artists",
    "albums": "deleted_albums",
    "songs": "deleted_songs",
    "playlists": "deleted_playlists",
}

# Display name with its sort prefix put back in front
FULL_NAME_SQL = "IFNULL({alias}name_prefix, '') || {alias}name"


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS sources (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT,
    host TEXT NOT NULL,
    port INTEGER NOT NULL,
    last_sync_time INTEGER NOT NULL DEFAULT 0,
    revision INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    UNIQUE(host, port)
);

CREATE TABLE IF NOT EXISTS artists (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL
        REFERENCES sources(id) ON DELETE CASCADE DEFERRABLE INITIALLY DEFERRED,
    sync_id INTEGER NOT NULL,
    sync_time INTEGER NOT NULL,
    name TEXT NOT NULL,
    name_prefix TEXT,
    photo TEXT,
    num_albums INTEGER NOT NULL DEFAULT 0,
    num_songs INTEGER NOT NULL DEFAULT 0,
    UNIQUE(source_id, sync_id)
);

CREATE TABLE IF NOT EXISTS albums (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL
        REFERENCES sources(id) ON DELETE CASCADE DEFERRABLE INITIALLY DEFERRED,
    sync_id INTEGER NOT NULL,
    sync_time INTEGER NOT NULL,
    artist_id INTEGER NOT NULL
        REFERENCES artists(id) DEFERRABLE INITIALLY DEFERRED,
    name TEXT NOT NULL,
    name_prefix TEXT,
    artwork TEXT,
    artwork_big TEXT,
    release_date TEXT,
    num_songs INTEGER NOT NULL DEFAULT 0,
    UNIQUE(source_id, sync_id)
);

CREATE TABLE IF NOT EXISTS songs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL
        REFERENCES sources(id) ON DELETE CASCADE DEFERRABLE INITIALLY DEFERRED,
    sync_id INTEGER NOT NULL,
    sync_time INTEGER NOT NULL,
    artist_id INTEGER NOT NULL
        REFERENCES artists(id) DEFERRABLE INITIALLY DEFERRED,
    album_id INTEGER
        REFERENCES albums(id) DEFERRABLE INITIALLY DEFERRED,
    title TEXT NOT NULL,
    track INTEGER,
    length INTEGER,
    cache_path TEXT,
    UNIQUE(source_id, sync_id)
);

CREATE TABLE IF NOT EXISTS playlists (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL
        REFERENCES sources(id) ON DELETE CASCADE DEFERRABLE INITIALLY DEFERRED,
    sync_id INTEGER NOT NULL,
    sync_time INTEGER NOT NULL,
    name TEXT NOT NULL,
    num_songs INTEGER NOT NULL DEFAULT 0,
    UNIQUE(source_id, sync_id)
);

CREATE TABLE IF NOT EXISTS playlist_songs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL
        REFERENCES sources(id) ON DELETE CASCADE DEFERRABLE INITIALLY DEFERRED,
    playlist_id INTEGER NOT NULL
        REFERENCES playlists(id) ON DELETE CASCADE DEFERRABLE INITIALLY DEFERRED,
    song_id INTEGER NOT NULL
        REFERENCES songs(id) ON DELETE CASCADE DEFERRABLE INITIALLY DEFERRED,
    position INTEGER NOT NULL,
    UNIQUE(playlist_id, position)
);

CREATE TABLE IF NOT EXISTS deleted_artists (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL REFERENCES sources(id) ON DELETE CASCADE,
    sync_id INTEGER NOT NULL,
    sync_time INTEGER NOT NULL,
    deleted_at TEXT NOT NULL,
    UNIQUE(source_id, sync_id)
);

CREATE TABLE IF NOT EXISTS deleted_albums (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL REFERENCES sources(id) ON DELETE CASCADE,
    sync_id INTEGER NOT NULL,
    sync_time INTEGER NOT NULL,
    deleted_at TEXT NOT NULL,
    UNIQUE(source_id, sync_id)
);

CREATE TABLE IF NOT EXISTS deleted_songs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL REFERENCES sources(id) ON DELETE CASCADE,
    sync_id INTEGER NOT NULL,
    sync_time INTEGER NOT NULL,
    deleted_at TEXT NOT NULL,
    UNIQUE(source_id, sync_id)
);

CREATE TABLE IF NOT EXISTS deleted_playlists (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL REFERENCES sources(id) ON DELETE CASCADE,
    sync_id INTEGER NOT NULL,
    sync_time INTEGER NOT NULL,
    deleted_at TEXT NOT NULL,
    UNIQUE(source_id, sync_id)
);

CREATE INDEX IF NOT EXISTS idx_albums_artist ON albums(artist_id);
CREATE INDEX IF NOT EXISTS idx_songs_artist ON songs(artist_id);
CREATE INDEX IF NOT EXISTS idx_songs_album ON songs(album_id);
CREATE INDEX IF NOT EXISTS idx_playlist_songs_song ON playlist_songs(song_id);
"""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """
    Thread-safe SQLite store for the library replica.

    Uses a single persistent connection with thread locking for reads and
    local edits. All public methods using it acquire self._lock first.
    Sync writes go through transaction() instead.
    """

    def __init__(self, db_path: Path, file_manager: FileManager | None = None) -> None:
        self.db_path = db_path
        self.file_manager = file_manager
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

        if not db_path.parent.exists():
            raise DatabaseError(
                f"Parent directory does not exist: {db_path.parent}",
                details={"path": str(db_path.parent)}
            )

        try:
            self._init_database()
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to initialize database: {e}",
                details={"path": str(db_path)}
            ) from e

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get the persistent database connection as a context manager.

        The connection is created once and reused; exiting the context
        does not close it.
        """
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=30.0,
                check_same_thread=False  # We handle thread safety with _lock
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        yield self._conn

    def close(self) -> None:
        """Close the persistent connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _init_database(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(_SCHEMA_SQL)

            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()

            if row is None:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (DATABASE_VERSION,))
            elif row[0] != DATABASE_VERSION:
                raise DatabaseError(
                    f"Database version mismatch: expected {DATABASE_VERSION}, got {row[0]}",
                    details={"expected": DATABASE_VERSION, "actual": row[0]}
                )
            conn.commit()

    # =========================================================================
    # Transactions
    # =========================================================================

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Run a block of writes atomically on a dedicated connection.

        The transaction starts with BEGIN IMMEDIATE so the write lock is
        taken up front. Leaving the block normally commits; any exception
        rolls back and propagates.

        Raises:
            ConstraintViolation: A statement or the deferred foreign-key
                                 check at commit broke an integrity rule.
            DatabaseError: Any other SQLite failure.
        """
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=30.0,
                isolation_level=None,
                check_same_thread=False
            )
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to open transaction connection: {e}",
                details={"path": str(self.db_path)}
            ) from e

        conn.row_factory = sqlite3.Row
        try:
            try:
                conn.execute("PRAGMA foreign_keys = ON")
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise DatabaseError(
                    f"Failed to begin transaction: {e}",
                    details={"path": str(self.db_path)}
                ) from e

            try:
                yield conn
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                _rollback(conn)
                raise ConstraintViolation(
                    f"Integrity check failed: {e}",
                    details={"original_error": str(e)}
                ) from e
            except sqlite3.Error as e:
                _rollback(conn)
                raise DatabaseError(
                    f"Transaction failed: {e}",
                    details={"original_error": str(e)}
                ) from e
            except BaseException:
                _rollback(conn)
                raise
        finally:
            conn.close()

    # =========================================================================
    # Sources
    # =========================================================================

    def add_source(self, host: str, port: int, name: str | None = None) -> Source:
        """
        Register a new remote source.

        Raises:
            DatabaseError: If a source with the same host and port exists.
        """
        with self._lock:
            with self._get_connection() as conn:
                try:
                    cursor = conn.execute(
                        "INSERT INTO sources (name, host, port) VALUES (?, ?, ?)",
                        (name, host, port)
                    )
                    conn.commit()
                except sqlite3.IntegrityError as e:
                    conn.rollback()
                    raise DatabaseError(
                        f"Source already registered: {host}:{port}",
                        details={"host": host, "port": port}
                    ) from e
                return self._get_source(conn, cursor.lastrowid)

    def ensure_source(self, host: str, port: int, name: str | None = None) -> Source:
        """Return the source at host:port, registering it first if needed."""
        with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    "INSERT OR IGNORE INTO sources (name, host, port) VALUES (?, ?, ?)",
                    (name, host, port)
                )
                if name is not None:
                    conn.execute(
                        "UPDATE sources SET name = ? WHERE host = ? AND port = ?",
                        (name, host, port)
                    )
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM sources WHERE host = ? AND port = ?", (host, port)
                ).fetchone()
                return Source.from_database_dict(row)

    def _get_source(self, conn: sqlite3.Connection, source_id: int) -> Source | None:
        row = conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
        return Source.from_database_dict(row) if row else None

    def get_source(self, source_id: int) -> Source | None:
        with self._lock:
            with self._get_connection() as conn:
                return self._get_source(conn, source_id)

    def get_sources(self) -> list[Source]:
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("SELECT * FROM sources ORDER BY id")
                return [Source.from_database_dict(row) for row in cursor.fetchall()]

    def remove_source(self, source_id: int) -> bool:
        """
        Delete a source together with everything synced from it.

        Rows and tombstones go through ON DELETE CASCADE; owned files are
        removed once the deletion commits.

        Returns:
            True if the source existed.
        """
        with self.transaction() as conn:
            if conn.execute("SELECT 1 FROM sources WHERE id = ?", (source_id,)).fetchone() is None:
                return False
            paths = []
            for table in ("artists", "albums", "songs"):
                rows = conn.execute(
                    f"SELECT * FROM {table} WHERE source_id = ?", (source_id,)
                ).fetchall()
                paths.extend(self._files_for(table, rows))
            conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))

        self._remove_files(paths)
        logger.info(f"Removed source {source_id}")
        return True

    def record_sync(self, conn: sqlite3.Connection, source_id: int, newest_sync_time: int) -> None:
        """
        Stamp a source as successfully synced, inside the sync transaction.

        last_sync_time only moves forward; revision counts successful syncs.
        """
        conn.execute("""
            UPDATE sources SET
                last_sync_time = MAX(last_sync_time, ?),
                revision = revision + 1,
                last_error = NULL
            WHERE id = ?
        """, (newest_sync_time, source_id))

    def set_source_error(self, source_id: int, message: str | None) -> None:
        with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    "UPDATE sources SET last_error = ? WHERE id = ?", (message, source_id)
                )
                conn.commit()

    # =========================================================================
    # Library Queries
    # =========================================================================

    def get_artists(self, source_id: int | None = None) -> list[dict[str, Any]]:
        """Artists sorted by name, ignoring the name prefix."""
        sql = f"SELECT *, {FULL_NAME_SQL.format(alias='')} AS full_name FROM artists"
        params: tuple = ()
        if source_id is not None:
            sql += " WHERE source_id = ?"
            params = (source_id,)
        sql += " ORDER BY name COLLATE NOCASE, id"
        return self._fetch_all(sql, params)

    def get_albums(
        self,
        artist_id: int | None = None,
        complete_only: bool = False
    ) -> list[dict[str, Any]]:
        """
        Albums sorted by name, with the artist's full name joined in.

        Args:
            artist_id: Only albums of this artist.
            complete_only: Only albums with more than three songs, which
                           filters out singles and stray tracks.
        """
        sql = f"""
            SELECT a.*,
                   {FULL_NAME_SQL.format(alias='a.')} AS full_name,
                   {FULL_NAME_SQL.format(alias='ar.')} AS artist_name
            FROM albums a
            JOIN artists ar ON ar.id = a.artist_id
        """
        conditions = []
        params: list[Any] = []
        if artist_id is not None:
            conditions.append("a.artist_id = ?")
            params.append(artist_id)
        if complete_only:
            conditions.append("a.num_songs > 3")
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY a.name COLLATE NOCASE, a.id"
        return self._fetch_all(sql, tuple(params))

    def get_songs(
        self,
        album_id: int | None = None,
        artist_id: int | None = None
    ) -> list[dict[str, Any]]:
        """Songs ordered by track number, then title."""
        sql = "SELECT * FROM songs"
        conditions = []
        params: list[Any] = []
        if album_id is not None:
            conditions.append("album_id = ?")
            params.append(album_id)
        if artist_id is not None:
            conditions.append("artist_id = ?")
            params.append(artist_id)
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY track, title COLLATE NOCASE, id"
        return self._fetch_all(sql, tuple(params))

    def get_playlists(self) -> list[dict[str, Any]]:
        return self._fetch_all("SELECT * FROM playlists ORDER BY name COLLATE NOCASE, id")

    def get_playlist_songs(self, playlist_id: int) -> list[dict[str, Any]]:
        """Songs of a playlist in playlist order, with their position."""
        return self._fetch_all("""
            SELECT s.*, ps.position AS position
            FROM playlist_songs ps
            JOIN songs s ON s.id = ps.song_id
            WHERE ps.playlist_id = ?
            ORDER BY ps.position
        """, (playlist_id,))

    def get_tombstones(self, table: str, source_id: int | None = None) -> list[dict[str, Any]]:
        """
        Tombstones recorded for one library table.

        Args:
            table: 'artists', 'albums', 'songs' or 'playlists'.
        """
        tombstone_table = _tombstone_table(table)
        sql = f"SELECT * FROM {tombstone_table}"
        params: tuple = ()
        if source_id is not None:
            sql += " WHERE source_id = ?"
            params = (source_id,)
        sql += " ORDER BY source_id, sync_id"
        return self._fetch_all(sql, params)

    def _fetch_all(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        with self._lock:
            with self._get_connection() as conn:
                return [dict(row) for row in conn.execute(sql, params).fetchall()]

    def get_stats(self) -> dict[str, int]:
        """Row counts for every table, tombstones summed under 'tombstones'."""
        with self._lock:
            with self._get_connection() as conn:
                stats = {}
                for table in ("sources", "artists", "albums", "songs", "playlists", "playlist_songs"):
                    stats[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                stats["tombstones"] = sum(
                    conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0]
                    for t in TOMBSTONE_TABLES.values()
                )
                return stats

    # =========================================================================
    # Local Edits
    # =========================================================================
    #
    # These never write tombstones: only a deletion observed on the remote
    # does. Denormalized counts are left to the next adjust_counts() pass.

    def delete_song(self, song_id: int) -> bool:
        """Delete a song and its cached media file."""
        with self.transaction() as conn:
            rows = conn.execute("SELECT * FROM songs WHERE id = ?", (song_id,)).fetchall()
            if not rows:
                return False
            paths = self._files_for("songs", rows)
            conn.execute("DELETE FROM songs WHERE id = ?", (song_id,))

        self._remove_files(paths)
        return True

    def delete_album(self, album_id: int) -> bool:
        """Delete an album, its songs, and their artwork and media files."""
        with self.transaction() as conn:
            albums = conn.execute("SELECT * FROM albums WHERE id = ?", (album_id,)).fetchall()
            if not albums:
                return False
            songs = conn.execute("SELECT * FROM songs WHERE album_id = ?", (album_id,)).fetchall()
            paths = self._files_for("songs", songs) + self._files_for("albums", albums)
            conn.execute("DELETE FROM songs WHERE album_id = ?", (album_id,))
            conn.execute("DELETE FROM albums WHERE id = ?", (album_id,))

        self._remove_files(paths)
        return True

    def delete_artist(self, artist_id: int) -> bool:
        """Delete an artist with its albums and songs, and every file they own."""
        with self.transaction() as conn:
            artists = conn.execute("SELECT * FROM artists WHERE id = ?", (artist_id,)).fetchall()
            if not artists:
                return False
            # Songs of other artists may sit on this artist's albums
            song_filter = """
                WHERE artist_id = ?
                   OR album_id IN (SELECT id FROM albums WHERE artist_id = ?)
            """
            songs = conn.execute(
                f"SELECT * FROM songs {song_filter}", (artist_id, artist_id)
            ).fetchall()
            albums = conn.execute("SELECT * FROM albums WHERE artist_id = ?", (artist_id,)).fetchall()
            paths = (
                self._files_for("songs", songs)
                + self._files_for("albums", albums)
                + self._files_for("artists", artists)
            )
            conn.execute(f"DELETE FROM songs {song_filter}", (artist_id, artist_id))
            conn.execute("DELETE FROM albums WHERE artist_id = ?", (artist_id,))
            conn.execute("DELETE FROM artists WHERE id = ?", (artist_id,))

        self._remove_files(paths)
        return True

    def delete_playlist(self, playlist_id: int) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM playlists WHERE id = ?", (playlist_id,))
            return cursor.rowcount > 0

    def set_song_cache_path(self, song_id: int, cache_path: Path | None) -> None:
        """Record (or clear) where a song's audio is cached locally."""
        with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    "UPDATE songs SET cache_path = ? WHERE id = ?",
                    (str(cache_path) if cache_path is not None else None, song_id)
                )
                conn.commit()

    def _files_for(self, table: str, rows: Iterable[sqlite3.Row]) -> list[Path]:
        if self.file_manager is None:
            return []
        paths = []
        for row in rows:
            paths.extend(self.file_manager.files_for_row(table, row))
        return paths

    def _remove_files(self, paths: list[Path]) -> None:
        if self.file_manager is not None and paths:
            self.file_manager.remove_files(paths)

    # =========================================================================
    # Tombstone Maintenance
    # =========================================================================

    def purge_tombstones(
        self,
        source_id: int | None = None,
        older_than: datetime | None = None
    ) -> int:
        """
        Delete tombstones, allowing their sync-ids to be synced again.

        Args:
            source_id: Only purge this source's tombstones.
            older_than: Only purge tombstones written before this moment.

        Returns:
            Number of tombstones removed.
        """
        conditions = []
        params: list[Any] = []
        if source_id is not None:
            conditions.append("source_id = ?")
            params.append(source_id)
        if older_than is not None:
            if older_than.tzinfo is None:
                older_than = older_than.replace(tzinfo=timezone.utc)
            conditions.append("deleted_at < ?")
            params.append(older_than.astimezone(timezone.utc).isoformat())
        where = " WHERE " + " AND ".join(conditions) if conditions else ""

        removed = 0
        with self.transaction() as conn:
            for tombstone_table in TOMBSTONE_TABLES.values():
                cursor = conn.execute(f"DELETE FROM {tombstone_table}{where}", tuple(params))
                removed += cursor.rowcount

        logger.info(f"Purged {removed} tombstone(s)")
        return removed


def _tombstone_table(table: str) -> str:
    try:
        return TOMBSTONE_TABLES[table]
    except KeyError:
        raise DatabaseError(
            f"Table '{table}' has no tombstones",
            details={"table": table}
        ) from None


def _rollback(conn: sqlite3.Connection) -> None:
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error as e:
        # SQLite may already have rolled back on its own
        logger.debug(f"Rollback skipped: {e}")
