"""
Remote module for tunesync.

This module talks to the remote sources:
    - models: RemoteRecord and RemotePage, the wire records
    - client: RemoteClient interface and its HTTP implementation

Usage:
    from tunesync.remote import HttpRemoteClient

    client = HttpRemoteClient(timeout=config.sync.timeout, page_size=config.sync.page_size)
"""

from tunesync.remote.client import (
    HttpRemoteClient,
    RemoteClient,
    format_cursor,
)
from tunesync.remote.models import RemotePage, RemoteRecord

__all__ = [
    "RemoteClient",
    "HttpRemoteClient",
    "format_cursor",
    "RemotePage",
    "RemoteRecord",
]
