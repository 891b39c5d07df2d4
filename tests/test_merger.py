"""Test the generic table merger"""

import pytest

from conftest import album, artist, entry, playlist, song
from tunesync.core.exceptions import ConstraintViolation, RemoteDataError
from tunesync.sync.entities import ALBUMS, ARTISTS, PLAYLIST_SONGS, PLAYLISTS, SONGS
from tunesync.remote.models import RemotePage
from tunesync.sync.merger import MergeAction, MergeStats, TableMerger, diff_rows


def merge_pages(database, source, descriptor, pages, file_manager=None):
    """Merge a complete enumeration, split into pages, in one transaction"""
    stats = MergeStats()
    pending = []
    with database.transaction() as conn:
        merger = TableMerger(descriptor, conn, file_manager)
        rows = merger.load_local_rows(source.id)
        for index, page in enumerate(pages):
            result = merger.merge(source.id, rows, page, more_remaining=index < len(pages) - 1)
            rows = result.remaining_local
            stats.add(result.stats)
            pending.extend(result.pending_files)
    return stats, pending


def local_row(sync_id, sync_time=1):
    return {"id": sync_id * 10, "sync_id": sync_id, "sync_time": sync_time}


class TestDiffRows:
    """Test the pure merge-join"""

    def test_new_remote_key_is_insert(self):
        """Test a remote key without a local row becomes an insert"""
        decisions, remaining = diff_rows(ARTISTS, [], [artist(1, "A")], more_remaining=False)

        assert [d.action for d in decisions] == [MergeAction.INSERT]
        assert remaining == []

    def test_newer_remote_is_update(self):
        """Test a matched row is updated only when the remote is newer"""
        local = [local_row(1, sync_time=5), local_row(2, sync_time=5), local_row(3, sync_time=5)]
        remote = [artist(1, "A", sync_time=6), artist(2, "B", sync_time=5), artist(3, "C", sync_time=4)]

        decisions, _ = diff_rows(ARTISTS, local, remote, more_remaining=False)

        assert [d.action for d in decisions] == [
            MergeAction.UPDATE,
            MergeAction.UNCHANGED,
            MergeAction.UNCHANGED,
        ]

    def test_missing_key_deleted_on_last_page(self):
        """Test a local key absent from a complete enumeration is deleted"""
        local = [local_row(1), local_row(2), local_row(3)]

        decisions, remaining = diff_rows(ARTISTS, local, [artist(1, "A"), artist(3, "C")], False)

        deletes = [d for d in decisions if d.action is MergeAction.DELETE]
        assert [d.row["sync_id"] for d in deletes] == [2]
        assert remaining == []

    def test_missing_key_carried_while_more_remaining(self):
        """Test unmatched rows are carried forward, not deleted, mid-enumeration"""
        local = [local_row(1), local_row(2), local_row(5)]

        decisions, remaining = diff_rows(ARTISTS, local, [artist(1, "A"), artist(3, "C")], True)

        assert all(d.action is not MergeAction.DELETE for d in decisions)
        assert [row["sync_id"] for row in remaining] == [2, 5]

    def test_unordered_page_rejected(self):
        """Test a page out of ascending order raises RemoteDataError"""
        with pytest.raises(RemoteDataError):
            diff_rows(ARTISTS, [], [artist(2, "B"), artist(1, "A")], False)

    def test_record_without_sync_id_rejected(self):
        """Test a synced entity record missing its sync fields is bad remote data"""
        page = RemotePage.from_api({"records": [{"name": "Abba"}], "more": False})

        with pytest.raises(RemoteDataError):
            diff_rows(ARTISTS, [], page.records, False)

    def test_page_must_continue_after_previous(self):
        """Test a page starting at or below the previous page's last key is rejected"""
        with pytest.raises(RemoteDataError):
            diff_rows(ARTISTS, [], [artist(3, "C")], False, after=3)


class TestTableMerger:
    """Test merges written to the database"""

    def test_insert_then_idempotent(self, database, source):
        """Test a second merge of the same enumeration changes nothing"""
        records = [artist(1, "Abba"), artist(2, "Beck")]

        first, _ = merge_pages(database, source, ARTISTS, [records])
        second, _ = merge_pages(database, source, ARTISTS, [records])

        assert first.inserted == 2
        assert second.changed == 0
        assert second.unchanged == 2
        assert len(database.get_artists()) == 2

    def test_record_without_sync_id_writes_nothing(self, database, source):
        """Test an artist sent without a sync_id is rejected, not stored under 0"""
        page = RemotePage.from_api(
            {"records": [{"name": "Abba"}, {"name": "Beck"}], "more": False}
        )

        with pytest.raises(RemoteDataError):
            merge_pages(database, source, ARTISTS, [list(page.records)])

        assert database.get_artists() == []

    def test_update_advances_sync_time(self, database, source):
        """Test an update rewrites the row and its sync_time"""
        merge_pages(database, source, ARTISTS, [[artist(1, "Abba", sync_time=10)]])

        stats, _ = merge_pages(database, source, ARTISTS, [[artist(1, "ABBA", sync_time=20)]])

        row = database.get_artists()[0]
        assert stats.updated == 1
        assert row["name"] == "ABBA"
        assert row["sync_time"] == 20

    def test_older_remote_leaves_row_alone(self, database, source):
        """Test a remote record with an older sync_time is not applied"""
        merge_pages(database, source, ARTISTS, [[artist(1, "Abba", sync_time=20)]])

        stats, _ = merge_pages(database, source, ARTISTS, [[artist(1, "Old", sync_time=10)]])

        assert stats.changed == 0
        assert database.get_artists()[0]["name"] == "Abba"

    def test_delete_writes_tombstone(self, database, source):
        """Test a deletion leaves a tombstone with the row's sync-id and sync-time"""
        merge_pages(database, source, ARTISTS, [[artist(1, "Abba"), artist(2, "Beck", sync_time=7)]])

        stats, _ = merge_pages(database, source, ARTISTS, [[artist(1, "Abba")]])

        tombstones = database.get_tombstones("artists", source.id)
        assert stats.deleted == 1
        assert [(t["sync_id"], t["sync_time"]) for t in tombstones] == [(2, 7)]
        assert [a["sync_id"] for a in database.get_artists()] == [1]

    def test_tombstone_suppresses_insert(self, database, source):
        """Test a tombstoned sync-id is not inserted again"""
        merge_pages(database, source, ARTISTS, [[artist(1, "Abba")]])
        merge_pages(database, source, ARTISTS, [[]])

        stats, _ = merge_pages(database, source, ARTISTS, [[artist(1, "Abba")]])

        assert stats.inserted == 0
        assert stats.suppressed == 1
        assert database.get_artists() == []

    def test_purged_tombstone_allows_insert(self, database, source):
        """Test purging a tombstone lets the sync-id come back"""
        merge_pages(database, source, ARTISTS, [[artist(1, "Abba")]])
        merge_pages(database, source, ARTISTS, [[]])
        assert database.purge_tombstones(source_id=source.id) == 1

        stats, _ = merge_pages(database, source, ARTISTS, [[artist(1, "Abba")]])

        assert stats.inserted == 1

    def test_deletion_deferred_across_pages(self, database, source):
        """Test rows are only deleted once the last page has been merged"""
        merge_pages(database, source, ARTISTS, [[artist(i, f"A{i}") for i in range(1, 5)]])

        with database.transaction() as conn:
            merger = TableMerger(ARTISTS, conn)
            rows = merger.load_local_rows(source.id)

            first = merger.merge(source.id, rows, [artist(1, "A1"), artist(2, "A2")], True)
            count = conn.execute("SELECT COUNT(*) FROM artists").fetchone()[0]
            assert first.stats.deleted == 0
            assert count == 4
            assert [row["sync_id"] for row in first.remaining_local] == [3, 4]

            last = merger.merge(source.id, first.remaining_local, [artist(3, "A3")], False)
            assert last.stats.deleted == 1

        assert [a["sync_id"] for a in database.get_artists()] == [1, 2, 3]

    def test_name_prefix_split(self, database, source):
        """Test 'The ' is split off the name and restored in full_name"""
        merge_pages(database, source, ARTISTS, [[artist(1, "The Beatles"), artist(2, "Theory")]])

        artists = {a["sync_id"]: a for a in database.get_artists()}
        assert artists[1]["name"] == "Beatles"
        assert artists[1]["name_prefix"] == "The "
        assert artists[1]["full_name"] == "The Beatles"
        assert artists[2]["name"] == "Theory"
        assert artists[2]["name_prefix"] is None

    def test_references_resolved_to_local_ids(self, database, source):
        """Test remote parent sync-ids become local foreign keys"""
        merge_pages(database, source, ARTISTS, [[artist(7, "Abba")]])
        merge_pages(database, source, ALBUMS, [[album(3, 7, "Arrival")]])
        merge_pages(database, source, SONGS, [[song(1, 7, "Dancing Queen", 3), song(2, 7, "Single")]])

        artist_id = database.get_artists()[0]["id"]
        album_row = database.get_albums()[0]
        songs = {s["sync_id"]: s for s in database.get_songs()}
        assert album_row["artist_id"] == artist_id
        assert album_row["artist_name"] == "Abba"
        assert songs[1]["album_id"] == album_row["id"]
        assert songs[2]["album_id"] is None

    def test_unknown_reference_rolls_back(self, database, source):
        """Test an album pointing at a missing artist raises and writes nothing"""
        merge_pages(database, source, ARTISTS, [[artist(1, "Abba")]])

        with pytest.raises(ConstraintViolation):
            merge_pages(database, source, ALBUMS, [[album(1, 1, "Arrival"), album(2, 99, "Ghost")]])

        assert database.get_albums() == []

    def test_missing_required_reference(self, database, source):
        """Test a song without an artist field is a constraint violation"""
        bad = song(1, None, "Nobody")

        with pytest.raises(ConstraintViolation):
            merge_pages(database, source, SONGS, [[bad]])

    def test_deleted_parent_with_children_fails_at_commit(self, database, source):
        """Test deleting an artist that albums still reference fails the transaction"""
        merge_pages(database, source, ARTISTS, [[artist(1, "Abba")]])
        merge_pages(database, source, ALBUMS, [[album(1, 1, "Arrival")]])

        with pytest.raises(ConstraintViolation):
            merge_pages(database, source, ARTISTS, [[]])

        assert len(database.get_artists()) == 1
        assert database.get_tombstones("artists") == []

    def test_delete_collects_owned_files(self, database, source, file_manager):
        """Test files of deleted rows are returned, not removed"""
        merge_pages(database, source, ARTISTS, [[artist(1, "Abba")]])
        merge_pages(database, source, ALBUMS, [[album(1, 1, "Arrival")]])
        album_id = database.get_albums()[0]["id"]
        artwork = file_manager.get_album_artwork_path(album_id)
        artwork.write_bytes(b"jpeg")

        _, pending = merge_pages(database, source, ALBUMS, [[]], file_manager)

        assert artwork in pending
        assert file_manager.get_album_artwork_path(album_id, big=True) in pending
        assert artwork.exists()


class TestPlaylistSongs:
    """Test playlist entries keyed by (playlist, position)"""

    def _seed(self, database, source):
        merge_pages(database, source, ARTISTS, [[artist(1, "Abba")]])
        merge_pages(database, source, SONGS, [[song(1, 1, "One"), song(2, 1, "Two")]])
        merge_pages(database, source, PLAYLISTS, [[playlist(1, "Mix")]])
        return database.get_playlists()[0]["id"]

    def test_entries_in_position_order(self, database, source):
        """Test entries are stored at their positions"""
        playlist_id = self._seed(database, source)

        stats, _ = merge_pages(database, source, PLAYLIST_SONGS, [[entry(1, 0, 2), entry(1, 1, 1)]])

        assert stats.inserted == 2
        assert [s["title"] for s in database.get_playlist_songs(playlist_id)] == ["Two", "One"]

    def test_entry_updates_when_song_changes(self, database, source):
        """Test a position pointing at another song is updated in place"""
        playlist_id = self._seed(database, source)
        merge_pages(database, source, PLAYLIST_SONGS, [[entry(1, 0, 1)]])

        stats, _ = merge_pages(database, source, PLAYLIST_SONGS, [[entry(1, 0, 2)]])

        assert stats.updated == 1
        assert [s["title"] for s in database.get_playlist_songs(playlist_id)] == ["Two"]

    def test_removed_entry_leaves_no_tombstone(self, database, source):
        """Test entries are deleted without tombstones"""
        playlist_id = self._seed(database, source)
        merge_pages(database, source, PLAYLIST_SONGS, [[entry(1, 0, 1), entry(1, 1, 2)]])

        stats, _ = merge_pages(database, source, PLAYLIST_SONGS, [[entry(1, 0, 1)]])

        assert stats.deleted == 1
        assert len(database.get_playlist_songs(playlist_id)) == 1
        assert database.get_stats()["tombstones"] == 0

    def test_entries_need_no_sync_fields(self, database, source):
        """Test playlist entries from the wire merge without sync_id or sync_time"""
        playlist_id = self._seed(database, source)
        page = RemotePage.from_api(
            {"records": [{"playlist": 1, "position": 0, "song": 1}], "more": False}
        )

        stats, _ = merge_pages(database, source, PLAYLIST_SONGS, [list(page.records)])

        assert stats.inserted == 1
        assert [s["title"] for s in database.get_playlist_songs(playlist_id)] == ["One"]
