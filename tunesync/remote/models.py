"""
Data models for records served by a remote source.

A remote serves each entity kind as a sequence of pages. Records within
and across pages come in ascending key order, and the last page has
more_remaining set to False. Only a complete enumeration lets the merger
infer deletions.

Wire format of one page (JSON):
    {
        "records": [
            {"sync_id": 12, "sync_time": 1700000000000, "name": "The Beatles"},
            ...
        ],
        "more": true,
        "total": 1840
    }
"""

from dataclasses import dataclass, field
from typing import Any

from tunesync.core.exceptions import RemoteDataError


@dataclass(frozen=True)
class RemoteRecord:
    """
    One record as sent by the remote.

    Attributes:
        sync_id: Stable remote identifier, unique per source and kind.
                 None when the remote sent none, which only kinds without an
                 identity of their own (playlist entries) may do.
        sync_time: Remote last-modified time, epoch milliseconds. None when absent.
        data: Every other field of the record.
    """
    sync_id: int | None
    sync_time: int | None
    data: dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.data.get(name, default)

    def require(self, name: str) -> Any:
        """
        Field value that must be present.

        Raises:
            RemoteDataError: If the field is missing or null.
        """
        value = self.data.get(name)
        if value is None:
            raise RemoteDataError(
                f"Remote record {self.sync_id} lacks required field '{name}'",
                details={"sync_id": self.sync_id, "field": name}
            )
        return value

    @classmethod
    def from_api(cls, payload: Any) -> "RemoteRecord":
        """
        Build a record from its decoded JSON object.

        Raises:
            RemoteDataError: If payload is not an object or a sync field
                             that is present is not an integer. Absent sync
                             fields are left as None for the merger to judge.
        """
        if not isinstance(payload, dict):
            raise RemoteDataError(
                "Remote record is not a JSON object",
                details={"payload": repr(payload)[:200]}
            )
        data = dict(payload)
        try:
            sync_id = _optional_int(data.pop("sync_id", None))
            sync_time = _optional_int(data.pop("sync_time", None))
        except (TypeError, ValueError) as e:
            raise RemoteDataError(
                f"Remote record has a malformed sync_id or sync_time: {e}",
                details={"payload": repr(payload)[:200]}
            ) from e
        return cls(sync_id=sync_id, sync_time=sync_time, data=data)


@dataclass(frozen=True)
class RemotePage:
    """
    One page of an entity enumeration.

    Attributes:
        records: Records in ascending key order.
        more_remaining: More pages follow. False on the last page.
        total: Record count of the whole enumeration, when the remote knows it.
    """
    records: tuple[RemoteRecord, ...]
    more_remaining: bool = False
    total: int | None = None

    @classmethod
    def from_api(cls, payload: Any) -> "RemotePage":
        if not isinstance(payload, dict) or not isinstance(payload.get("records"), list):
            raise RemoteDataError(
                "Remote page must be an object with a 'records' list",
                details={"payload": repr(payload)[:200]}
            )
        more = payload.get("more", False)
        if not isinstance(more, bool):
            raise RemoteDataError(
                f"Remote page field 'more' must be a boolean, got {more!r}",
                details={"more": repr(more)[:50]}
            )

        total = payload.get("total")
        return cls(
            records=tuple(RemoteRecord.from_api(r) for r in payload["records"]),
            more_remaining=more,
            total=total if isinstance(total, int) else None,
        )


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)
