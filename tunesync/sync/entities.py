"""
Entity descriptors: what the generic table merger needs to know per table.

Each syncable table is described once here, and TableMerger does the rest.
A descriptor says how to key local rows and remote records, which remote
fields map to which columns, which columns are foreign keys resolved from
remote sync-ids, and whether the display name is split on a prefix.

Remote record fields per kind:
    artists:         sync_id, sync_time, name, photo
    albums:          sync_id, sync_time, artist, name, artwork, artwork_big, release_date
    songs:           sync_id, sync_time, artist, album, title, track, length
    playlists:       sync_id, sync_time, name
    playlist_songs:  playlist, position, song

    artist / album / playlist / song fields hold the referenced record's
    sync-id within the same source.

Merge order is fixed: a table only references tables merged before it.
"""

from dataclasses import dataclass
from typing import Any, Callable, Hashable, Mapping, Sequence

from tunesync.remote.models import RemoteRecord


@dataclass(frozen=True)
class Reference:
    """
    A foreign-key column filled from a remote sync-id.

    Attributes:
        column: Local FK column (e.g. 'artist_id').
        remote_field: Record field carrying the parent's sync-id.
        table: Parent table, looked up by (source_id, sync_id).
        required: A missing or unknown parent is a constraint violation.
                  Optional references become NULL when the field is absent.
    """
    column: str
    remote_field: str
    table: str
    required: bool = True


def _sync_id_key(row: Mapping[str, Any]) -> int:
    return row["sync_id"]


def _record_sync_id(record: RemoteRecord) -> int:
    return record.sync_id


def _newer_sync_time(row: Mapping[str, Any], record: RemoteRecord) -> bool:
    return record.sync_time > row["sync_time"]


@dataclass(frozen=True)
class EntityDescriptor:
    """
    Describes one syncable table to the generic merger.

    Attributes:
        kind: Entity name used by the remote ('artists', 'songs', ...).
        table: Local table.
        tombstone_table: Table recording remote deletions, or None when
                         the entity keeps no tombstones.
        columns: Local column -> remote record field, for plain data columns.
        references: FK columns resolved from remote sync-ids.
        name_column: Column whose value is split into name + name_prefix.
        synced: The table stores sync_id and sync_time.
        local_rows_sql: SELECT of one source's rows, ordered by the merge key.
                        Takes the source id as its only parameter.
        local_key: Merge key of a local row.
        remote_key: Merge key of a remote record.
        needs_update: Whether a matched local row is stale.
    """
    kind: str
    table: str
    tombstone_table: str | None
    columns: Mapping[str, str]
    references: Sequence[Reference] = ()
    name_column: str | None = None
    synced: bool = True
    local_rows_sql: str = ""
    local_key: Callable[[Mapping[str, Any]], Hashable] = _sync_id_key
    remote_key: Callable[[RemoteRecord], Hashable] = _record_sync_id
    needs_update: Callable[[Mapping[str, Any], RemoteRecord], bool] = _newer_sync_time

    def rows_sql(self) -> str:
        if self.local_rows_sql:
            return self.local_rows_sql
        return f"SELECT * FROM {self.table} WHERE source_id = ? ORDER BY sync_id"


ARTISTS = EntityDescriptor(
    kind="artists",
    table="artists",
    tombstone_table="deleted_artists",
    columns={"name": "name", "photo": "photo"},
    name_column="name",
)

ALBUMS = EntityDescriptor(
    kind="albums",
    table="albums",
    tombstone_table="deleted_albums",
    columns={
        "name": "name",
        "artwork": "artwork",
        "artwork_big": "artwork_big",
        "release_date": "release_date",
    },
    references=(Reference("artist_id", "artist", "artists"),),
    name_column="name",
)

SONGS = EntityDescriptor(
    kind="songs",
    table="songs",
    tombstone_table="deleted_songs",
    columns={"title": "title", "track": "track", "length": "length"},
    references=(
        Reference("artist_id", "artist", "artists"),
        Reference("album_id", "album", "albums", required=False),
    ),
)

PLAYLISTS = EntityDescriptor(
    kind="playlists",
    table="playlists",
    tombstone_table="deleted_playlists",
    columns={"name": "name"},
)


def _playlist_song_key(row: Mapping[str, Any]) -> tuple[int, int]:
    return (row["playlist_sync_id"], row["position"])


def _record_playlist_song_key(record: RemoteRecord) -> tuple[int, int]:
    return (record.require("playlist"), record.require("position"))


def _song_changed(row: Mapping[str, Any], record: RemoteRecord) -> bool:
    return row["song_sync_id"] != record.require("song")


# Playlist entries have no identity of their own on the remote: an entry
# is the song at a position of a playlist.
PLAYLIST_SONGS = EntityDescriptor(
    kind="playlist_songs",
    table="playlist_songs",
    tombstone_table=None,
    columns={"position": "position"},
    references=(
        Reference("playlist_id", "playlist", "playlists"),
        Reference("song_id", "song", "songs"),
    ),
    synced=False,
    local_rows_sql="""
        SELECT ps.*, p.sync_id AS playlist_sync_id, s.sync_id AS song_sync_id
        FROM playlist_songs ps
        JOIN playlists p ON p.id = ps.playlist_id
        JOIN songs s ON s.id = ps.song_id
        WHERE ps.source_id = ?
        ORDER BY p.sync_id, ps.position
    """,
    local_key=_playlist_song_key,
    remote_key=_record_playlist_song_key,
    needs_update=_song_changed,
)


MERGE_ORDER: tuple[EntityDescriptor, ...] = (ARTISTS, ALBUMS, SONGS, PLAYLISTS, PLAYLIST_SONGS)

DESCRIPTORS: dict[str, EntityDescriptor] = {d.kind: d for d in MERGE_ORDER}


# =============================================================================
# Name Prefixes
# =============================================================================

def split_name_prefix(
    name: str,
    prefixes: Sequence[str] = ("The ",)
) -> tuple[str, str | None]:
    """
    Split a leading sort prefix off a display name.

    Matching is case-sensitive, and a name that is nothing but the prefix
    is left whole.

    Examples:
        split_name_prefix("The Beatles")  -> ("Beatles", "The ")
        split_name_prefix("Theory")       -> ("Theory", None)
    """
    for prefix in prefixes:
        if name.startswith(prefix) and len(name) > len(prefix):
            return name[len(prefix):], prefix
    return name, None


def full_name(name: str, name_prefix: str | None) -> str:
    """Recombine a split display name. Mirrors FULL_NAME_SQL in the database."""
    return (name_prefix or "") + name
