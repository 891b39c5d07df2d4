"""
Data models for local tunesync records.

Only the Source model lives here: it is the one record the engine passes
around between layers. Library entities (artists, albums, songs,
playlists) are described by the entity descriptors in tunesync.sync.entities
and handled as sqlite3.Row / dict values.
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Source:
    """
    A remote origin the local replica is synced from.

    Attributes:
        id: Local database id. Stable for the lifetime of the source.
        host: Hostname or IP address of the remote server.
        port: TCP port of the remote server.
        name: Optional display name. Falls back to host:port.
        last_sync_time: Newest remote sync-time committed by a sync
                        (epoch milliseconds). 0 means never synced.
        revision: Number of successful syncs of this source.
        last_error: Message of the last abandoned sync, or None when the
                    last sync succeeded.
    """
    id: int
    host: str
    port: int
    name: str | None = None
    last_sync_time: int = 0
    revision: int = 0
    last_error: str | None = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def label(self) -> str:
        """Display label used in logs and progress output."""
        if self.name:
            return f"{self.name} ({self.address})"
        return self.address

    @classmethod
    def from_database_dict(cls, data: dict[str, Any]) -> "Source":
        """
        Create a Source from a sources table row.

        Args:
            data: Row as dict (or sqlite3.Row) with the sources columns.
        """
        return cls(
            id=data["id"],
            host=data["host"],
            port=data["port"],
            name=data["name"],
            last_sync_time=data["last_sync_time"] or 0,
            revision=data["revision"] or 0,
            last_error=data["last_error"],
        )
