"""
File management for tunesync.

This module owns the on-disk files that belong to library rows, and the
best-effort garbage collection that runs once those rows are gone.

Architecture:
    storage_directory/
    ├── tunesync.db
    ├── logs/
    └── cache/
        ├── artist_photos/
        │   └── 12                  # photo of artist id 12
        ├── album_artwork/
        │   ├── 40                  # artwork of album id 40
        │   └── 40-big              # full-size artwork of album id 40
        └── media/                  # cached audio, path stored in songs.cache_path

Ownership:
    - Deleting an artist removes its photo
    - Deleting an album removes both artwork files
    - Deleting a song removes the file named by its cache_path

Removal happens only after the deleting transaction has committed, and
never raises: a file that cannot be removed is logged to
file_cleanup_failures.log and left behind.

Usage:
    from tunesync.core.file_manager import FileManager

    fm = FileManager(cache_dir)
    paths = fm.files_for_row("albums", album_row)
    # ... delete the row and commit ...
    fm.remove_files(paths)
"""

from pathlib import Path
from typing import Any, Iterable, Mapping

from tunesync.core.logger import get_logger, log_file_cleanup_failure

logger = get_logger(__name__)


class FileManager:
    """
    Resolves and removes the cached files owned by library rows.

    Attributes:
        cache_dir: Root of the cache.
        photos_dir: Artist photos.
        artwork_dir: Album artwork, normal and big.
        media_dir: Cached audio files.
    """

    def __init__(self, cache_dir: Path) -> None:
        """
        Initialize FileManager.

        Creates the cache subdirectories if they don't exist.
        """
        self.cache_dir = cache_dir
        self.photos_dir = cache_dir / "artist_photos"
        self.artwork_dir = cache_dir / "album_artwork"
        self.media_dir = cache_dir / "media"
        for directory in (self.photos_dir, self.artwork_dir, self.media_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def get_artist_photo_path(self, artist_id: int) -> Path:
        return self.photos_dir / str(artist_id)

    def get_album_artwork_path(self, album_id: int, big: bool = False) -> Path:
        name = f"{album_id}-big" if big else str(album_id)
        return self.artwork_dir / name

    def get_media_path(self, source_id: int, song_id: int) -> Path:
        """Where the cached audio of a song goes. Store it with set_song_cache_path()."""
        return self.media_dir / str(source_id) / str(song_id)

    def files_for_row(self, table: str, row: Mapping[str, Any]) -> list[Path]:
        """
        List the files owned by a row about to be deleted.

        Args:
            table: Table the row belongs to.
            row: The row, with at least its id (and cache_path for songs).

        Returns:
            Paths to remove once the deletion commits. Empty for tables
            that own no files.
        """
        if table == "artists":
            return [self.get_artist_photo_path(row["id"])]

        if table == "albums":
            return [
                self.get_album_artwork_path(row["id"]),
                self.get_album_artwork_path(row["id"], big=True),
            ]

        if table == "songs":
            cache_path = row["cache_path"]
            if cache_path:
                return [Path(cache_path)]

        return []

    def remove_files(self, paths: Iterable[Path]) -> int:
        """
        Remove files, best effort.

        A file that is already gone is not a failure. Any other OSError is
        logged through log_file_cleanup_failure() and otherwise ignored.

        Returns:
            Number of files actually removed.
        """
        removed = 0
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                log_file_cleanup_failure(logger, path, str(e))
                continue
            removed += 1
            logger.debug(f"Removed {path}")
        return removed
