"""Test configuration and fixtures"""

import tempfile
from pathlib import Path

import pytest

from tunesync.core.config import SyncConfig
from tunesync.core.database import Database
from tunesync.core.file_manager import FileManager
from tunesync.remote.client import RemoteClient
from tunesync.remote.models import RemotePage, RemoteRecord
from tunesync.sync.entities import DESCRIPTORS
from tunesync.sync.observer import SyncObserver


# =============================================================================
# Remote record builders
# =============================================================================

def artist(sync_id, name, sync_time=1, **extra):
    return RemoteRecord(sync_id, sync_time, {"name": name, **extra})


def album(sync_id, artist_sync_id, name, sync_time=1, **extra):
    return RemoteRecord(sync_id, sync_time, {"artist": artist_sync_id, "name": name, **extra})


def song(sync_id, artist_sync_id, title, album_sync_id=None, sync_time=1, **extra):
    data = {"artist": artist_sync_id, "title": title, **extra}
    if album_sync_id is not None:
        data["album"] = album_sync_id
    return RemoteRecord(sync_id, sync_time, data)


def playlist(sync_id, name, sync_time=1):
    return RemoteRecord(sync_id, sync_time, {"name": name})


def entry(playlist_sync_id, position, song_sync_id):
    return RemoteRecord(0, 0, {"playlist": playlist_sync_id, "position": position, "song": song_sync_id})


# =============================================================================
# Fakes
# =============================================================================

class FakeRemoteClient(RemoteClient):
    """
    In-memory remote serving pages of page_size records.

    Failures queued with fail_next() are raised by the next fetch_page
    calls, one per call, before any page is served.
    """

    def __init__(self, page_size=2):
        self.page_size = page_size
        self.records = {}
        self.calls = []
        self.failures = []
        self.on_fetch = None

    def serve(self, source, kind, records):
        key = DESCRIPTORS[kind].remote_key
        self.records[(source.id, kind)] = sorted(records, key=key)

    def serve_library(self, source, artists=(), albums=(), songs=(), playlists=(), entries=()):
        self.serve(source, "artists", artists)
        self.serve(source, "albums", albums)
        self.serve(source, "songs", songs)
        self.serve(source, "playlists", playlists)
        self.serve(source, "playlist_songs", entries)

    def fail_next(self, error, times=1):
        self.failures.extend([error] * times)

    def fetch_page(self, source, kind, after, token):
        token.raise_if_canceled()
        self.calls.append((source.id, kind, after))
        if self.on_fetch is not None:
            self.on_fetch(source, kind, after)
        if self.failures:
            raise self.failures.pop(0)

        key = DESCRIPTORS[kind].remote_key
        everything = self.records.get((source.id, kind), [])
        remaining = [r for r in everything if after is None or key(r) > after]
        page = remaining[:self.page_size]
        return RemotePage(
            records=tuple(page),
            more_remaining=len(remaining) > self.page_size,
            total=len(everything),
        )


class RecordingObserver(SyncObserver):
    """Keeps every event as a tuple, in order."""

    def __init__(self):
        self.events = []

    def begin_sync(self):
        self.events.append(("begin_sync",))

    def end_sync(self):
        self.events.append(("end_sync",))

    def begin_source(self, source_id):
        self.events.append(("begin_source", source_id))

    def end_source(self, source_id):
        self.events.append(("end_source", source_id))

    def update_progress(self, source_id, item_index, item_count):
        self.events.append(("progress", source_id, item_index, item_count))

    def progress_for(self, source_id):
        return [(e[2], e[3]) for e in self.events if e[0] == "progress" and e[1] == source_id]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def file_manager(temp_dir):
    return FileManager(temp_dir / "cache")


@pytest.fixture
def database(temp_dir, file_manager):
    db = Database(temp_dir / "tunesync.db", file_manager)
    yield db
    db.close()


@pytest.fixture
def source(database):
    return database.add_source("10.0.0.5", 8080, name="Living room")


@pytest.fixture
def remote():
    return FakeRemoteClient(page_size=2)


@pytest.fixture
def sync_config():
    """Fast retries, three tries per source"""
    return SyncConfig(max_tries=3, page_size=2, retry_delay=0.01)


@pytest.fixture
def observer():
    return RecordingObserver()
