"""Test the count maintainer"""

from conftest import album, artist, entry, playlist, song
from tunesync.sync.counts import adjust_counts
from tunesync.sync.entities import ALBUMS, ARTISTS, PLAYLIST_SONGS, PLAYLISTS, SONGS
from tunesync.sync.merger import TableMerger


def seed(database, source):
    """Two artists, one album with three songs, a loose song, a playlist"""
    library = [
        (ARTISTS, [artist(1, "Abba"), artist(2, "Beck")]),
        (ALBUMS, [album(1, 1, "Arrival")]),
        (SONGS, [
            song(1, 1, "One", 1),
            song(2, 1, "Two", 1),
            song(3, 1, "Three", 1),
            song(4, 1, "Loose"),
        ]),
        (PLAYLISTS, [playlist(1, "Mix"), playlist(2, "Empty")]),
        (PLAYLIST_SONGS, [entry(1, 0, 1), entry(1, 1, 4)]),
    ]
    with database.transaction() as conn:
        for descriptor, records in library:
            merger = TableMerger(descriptor, conn)
            merger.merge(source.id, merger.load_local_rows(source.id), records, False)


def counts(database):
    artists = {a["name"]: (a["num_songs"], a["num_albums"]) for a in database.get_artists()}
    albums = {a["name"]: a["num_songs"] for a in database.get_albums()}
    playlists = {p["name"]: p["num_songs"] for p in database.get_playlists()}
    return artists, albums, playlists


class TestAdjustCounts:
    """Test counts converge to the child rows"""

    def test_counts_match_children(self, database, source):
        """Test a pass sets every count from the live rows"""
        seed(database, source)

        adjust_counts(database)

        artists, albums, playlists = counts(database)
        assert artists == {"Abba": (4, 1), "Beck": (0, 0)}
        assert albums == {"Arrival": 3}
        assert playlists == {"Mix": 2, "Empty": 0}

    def test_second_pass_changes_nothing(self, database, source):
        """Test the pass is idempotent"""
        seed(database, source)
        adjust_counts(database)

        adjustment = adjust_counts(database)

        assert adjustment.total == 0

    def test_converges_from_drift(self, database, source):
        """Test arbitrary wrong counts are corrected and only those rows written"""
        seed(database, source)
        adjust_counts(database)
        with database.transaction() as conn:
            conn.execute("UPDATE artists SET num_songs = 99 WHERE name = 'Beck'")
            conn.execute("UPDATE albums SET num_songs = 0")

        adjustment = adjust_counts(database)

        assert adjustment.changed["artists.num_songs"] == 1
        assert adjustment.changed["albums.num_songs"] == 1
        assert adjustment.changed["artists.num_albums"] == 0
        assert counts(database)[0]["Beck"] == (0, 0)
        assert counts(database)[1] == {"Arrival": 3}

    def test_local_delete_then_adjust(self, database, source):
        """Test counts follow an explicit local deletion after a pass"""
        seed(database, source)
        adjust_counts(database)
        song_id = next(s["id"] for s in database.get_songs() if s["title"] == "One")

        database.delete_song(song_id)
        adjust_counts(database)

        artists, albums, playlists = counts(database)
        assert artists["Abba"] == (3, 1)
        assert albums["Arrival"] == 2
        assert playlists["Mix"] == 1
