"""Test per-source sync orchestration"""

from unittest.mock import patch

import pytest

from conftest import RecordingObserver, album, artist, entry, playlist, song
from tunesync.core.exceptions import NetworkError, SyncError, TransientNetworkError
from tunesync.sync.context import SourceOutcome, SyncContext, SyncState
from tunesync.sync.orchestrator import MAX_DELAY, Synchronizer, calculate_backoff


def serve_small_library(remote, source):
    remote.serve_library(
        source,
        artists=[artist(1, "The Beatles", sync_time=100), artist(2, "Beck", sync_time=120)],
        albums=[album(1, 1, "Abbey Road", sync_time=110)],
        songs=[
            song(1, 1, "Come Together", 1, sync_time=130),
            song(2, 1, "Something", 1, sync_time=140),
            song(3, 2, "Loser", sync_time=150),
        ],
        playlists=[playlist(1, "Mix", sync_time=160)],
        entries=[entry(1, 0, 3), entry(1, 1, 1)],
    )


@pytest.fixture
def synchronizer(database, remote, file_manager, sync_config):
    return Synchronizer(database, remote, file_manager, sync_config)


@pytest.fixture(autouse=True)
def no_backoff():
    """Retries happen immediately in tests"""
    with patch("tunesync.sync.orchestrator.calculate_backoff", return_value=0) as mocked:
        yield mocked


class TestCalculateBackoff:
    """Test exponential backoff with jitter"""

    def test_grows_exponentially(self):
        """Test delays double per attempt when jitter is zero"""
        with patch("tunesync.sync.orchestrator.random.random", return_value=0.5):
            assert [calculate_backoff(n, 1.0) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        """Test the delay never exceeds MAX_DELAY plus jitter"""
        with patch("tunesync.sync.orchestrator.random.random", return_value=1.0):
            assert calculate_backoff(10, 1.0) == pytest.approx(MAX_DELAY * 1.3)

    def test_floor(self):
        """Test the delay never drops below half a second"""
        with patch("tunesync.sync.orchestrator.random.random", return_value=0.0):
            assert calculate_backoff(0, 0.01) == 0.5


class TestSynchronizer:
    """Test a full run over one or more sources"""

    def test_initial_sync(self, database, source, remote, synchronizer):
        """Test every table is filled and the source stamped"""
        serve_small_library(remote, source)
        context = SyncContext()

        state = synchronizer.run(context)

        assert state is SyncState.COMPLETED
        stats = database.get_stats()
        assert (stats["artists"], stats["albums"], stats["songs"]) == (2, 1, 3)
        assert (stats["playlists"], stats["playlist_songs"]) == (1, 2)
        assert context.number_of_inserts == 9
        assert context.number_of_tries == 1
        assert context.newest_sync_time == 160

        synced = database.get_source(source.id)
        assert synced.revision == 1
        assert synced.last_sync_time == 160
        assert synced.last_error is None

    def test_counts_adjusted_after_commit(self, database, source, remote, synchronizer):
        """Test denormalized counts are correct right after a sync"""
        serve_small_library(remote, source)

        synchronizer.run(SyncContext())

        artists = {a["full_name"]: a for a in database.get_artists()}
        assert artists["The Beatles"]["num_songs"] == 2
        assert artists["The Beatles"]["num_albums"] == 1
        assert database.get_albums()[0]["num_songs"] == 2
        assert database.get_playlists()[0]["num_songs"] == 2

    def test_resync_without_changes(self, database, source, remote, synchronizer):
        """Test syncing an unchanged remote again writes nothing"""
        serve_small_library(remote, source)
        synchronizer.run(SyncContext())

        context = SyncContext()
        synchronizer.run(context)

        assert context.total_records_processed == 0
        assert database.get_source(source.id).revision == 2

    def test_remote_deletion_removes_row_and_file(
        self, database, source, remote, synchronizer, file_manager
    ):
        """Test a song gone from the remote is deleted, tombstoned, and its file removed"""
        serve_small_library(remote, source)
        synchronizer.run(SyncContext())
        loser = next(s for s in database.get_songs() if s["title"] == "Loser")
        media = file_manager.get_media_path(source.id, loser["id"])
        media.parent.mkdir(parents=True, exist_ok=True)
        media.write_bytes(b"audio")
        database.set_song_cache_path(loser["id"], media)

        remote.serve(source, "songs", [song(1, 1, "Come Together", 1), song(2, 1, "Something", 1)])
        remote.serve(source, "playlist_songs", [entry(1, 1, 1)])
        context = SyncContext()
        synchronizer.run(context)

        assert context.number_of_deletes == 1
        assert [t["sync_id"] for t in database.get_tombstones("songs")] == [3]
        assert not media.exists()
        assert database.get_playlists()[0]["num_songs"] == 1

    def test_file_cleanup_failure_is_logged(
        self, database, source, remote, synchronizer, temp_dir
    ):
        """Test a file that cannot be removed does not fail the sync"""
        serve_small_library(remote, source)
        synchronizer.run(SyncContext())
        loser = next(s for s in database.get_songs() if s["title"] == "Loser")
        stubborn = temp_dir / "not-a-file"
        stubborn.mkdir()
        database.set_song_cache_path(loser["id"], stubborn)

        remote.serve(source, "songs", [song(1, 1, "Come Together", 1), song(2, 1, "Something", 1)])
        remote.serve(source, "playlist_songs", [entry(1, 1, 1)])
        context = SyncContext()
        with patch("tunesync.core.file_manager.log_file_cleanup_failure") as log_failure:
            state = synchronizer.run(context)

        assert state is SyncState.COMPLETED
        log_failure.assert_called_once()
        assert log_failure.call_args.args[1] == stubborn

    def test_constraint_violation_rolls_back_source(self, database, source, remote, synchronizer):
        """Test the 2nd of 3 songs failing leaves nothing of the source behind"""
        other = database.add_source("10.0.0.6", 8080)
        remote.serve_library(
            source,
            artists=[artist(1, "Abba")],
            songs=[song(1, 1, "One"), song(2, 99, "Orphan"), song(3, 1, "Three")],
        )
        serve_small_library(remote, other)
        context = SyncContext()

        state = synchronizer.run(context)

        assert state is SyncState.FAILED
        assert context.failed_sources == [source.id]
        assert context.completed_sources == [other.id]
        assert database.get_artists(source_id=source.id) == []
        assert len(database.get_artists(source_id=other.id)) == 2

        failed = database.get_source(source.id)
        assert failed.revision == 0
        assert failed.last_error.startswith("constraint")

    def test_unordered_remote_fails_source(self, database, source, remote, synchronizer):
        """Test a remote page out of order fails the source as bad remote data"""
        remote.records[(source.id, "artists")] = [artist(2, "Beck"), artist(1, "Abba")]
        context = SyncContext()

        synchronizer.run(context)

        assert context.sources[source.id].outcome is SourceOutcome.FAILED
        assert database.get_source(source.id).last_error.startswith("remote-data")

    def test_transient_error_retried(self, database, source, remote, synchronizer, no_backoff):
        """Test transient failures are retried until the source commits"""
        serve_small_library(remote, source)
        remote.fail_next(TransientNetworkError("connection reset"), times=2)
        context = SyncContext()

        state = synchronizer.run(context)

        assert state is SyncState.COMPLETED
        assert context.number_of_tries == 3
        assert no_backoff.call_count == 2
        assert database.get_stats()["songs"] == 3

    def test_retries_exhausted(self, database, source, remote, synchronizer):
        """Test a source is abandoned with a network error after max_tries"""
        serve_small_library(remote, source)
        remote.fail_next(TransientNetworkError("connection refused"), times=3)
        context = SyncContext()

        state = synchronizer.run(context)

        assert state is SyncState.FAILED
        assert context.network_error
        assert context.number_of_tries == 3
        assert context.sources[source.id].outcome is SourceOutcome.NETWORK_ERROR
        assert database.get_stats()["artists"] == 0
        assert database.get_source(source.id).last_error.startswith("network")

    def test_permanent_network_error_not_retried(self, source, remote, synchronizer):
        """Test a non-transient network error abandons the source at once"""
        serve_small_library(remote, source)
        remote.fail_next(NetworkError("HTTP 404", status_code=404))
        context = SyncContext()

        synchronizer.run(context)

        assert context.number_of_tries == 1
        assert context.network_error

    def test_cancel_between_sources(self, database, source, remote, synchronizer):
        """Test cancellation after one source commits skips the rest"""
        other = database.add_source("10.0.0.6", 8080)
        serve_small_library(remote, source)
        serve_small_library(remote, other)
        context = SyncContext()

        class CancelAfterFirst(RecordingObserver):
            def end_source(self, source_id):
                super().end_source(source_id)
                context.cancel()

        observer = CancelAfterFirst()
        state = synchronizer.run(context, observer)

        assert state is SyncState.CANCELED
        assert context.completed_sources == [source.id]
        assert other.id not in context.sources
        assert database.get_artists(source_id=other.id) == []
        assert observer.events[0] == ("begin_sync",)
        assert observer.events[-2:] == [("end_source", source.id), ("end_sync",)]

    def test_cancel_mid_source_rolls_back(self, database, source, remote, synchronizer):
        """Test cancellation during a source discards its partial writes"""
        serve_small_library(remote, source)
        context = SyncContext()

        def cancel_on_songs(src, kind, after):
            if kind == "songs":
                context.cancel()

        remote.on_fetch = cancel_on_songs
        state = synchronizer.run(context)

        assert state is SyncState.CANCELED
        assert context.sources[source.id].outcome is SourceOutcome.CANCELED
        assert database.get_stats()["artists"] == 0
        assert database.get_source(source.id).revision == 0

    def test_observer_pairs_matched(self, database, source, remote, synchronizer, observer):
        """Test every begun source gets its end event, failures included"""
        failing = database.add_source("10.0.0.6", 8080)
        last = database.add_source("10.0.0.7", 8080)
        serve_small_library(remote, source)
        remote.serve_library(failing, albums=[album(1, 42, "No artist")])
        serve_small_library(remote, last)

        synchronizer.run(SyncContext(), observer)

        structural = [e for e in observer.events if e[0] != "progress"]
        assert structural == [
            ("begin_sync",),
            ("begin_source", source.id), ("end_source", source.id),
            ("begin_source", failing.id), ("end_source", failing.id),
            ("begin_source", last.id), ("end_source", last.id),
            ("end_sync",),
        ]

    def test_progress_monotonic_across_retry(self, source, remote, synchronizer, observer):
        """Test progress never goes backwards, even when an attempt starts over"""
        serve_small_library(remote, source)
        failed = []

        def flaky(src, kind, after):
            if kind == "songs" and after is not None and not failed:
                failed.append(kind)
                raise TransientNetworkError("connection reset")

        remote.on_fetch = flaky
        context = SyncContext()
        synchronizer.run(context, observer)

        progress = observer.progress_for(source.id)
        assert context.number_of_tries == 2
        assert progress
        for (index, count), (next_index, next_count) in zip(progress, progress[1:]):
            assert next_index >= index
            assert next_count >= count
        assert all(index <= count for index, count in progress)
        assert progress[-1][0] == 9

    def test_unknown_source_rejected(self, synchronizer):
        """Test asking for a source that doesn't exist raises before starting"""
        context = SyncContext()

        with pytest.raises(SyncError):
            synchronizer.run(context, source_ids=[404])

        assert context.state is SyncState.IDLE

    def test_selected_sources_only(self, database, source, remote, synchronizer):
        """Test source_ids limits the run"""
        other = database.add_source("10.0.0.6", 8080)
        serve_small_library(remote, source)
        serve_small_library(remote, other)
        context = SyncContext()

        synchronizer.run(context, source_ids=[other.id])

        assert context.completed_sources == [other.id]
        assert database.get_artists(source_id=source.id) == []
