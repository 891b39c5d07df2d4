"""
Network client for remote sources.

RemoteClient is the interface the sync engine pages through. Any transport
can implement it; HttpRemoteClient is the one that ships.

HTTP protocol:
    GET http://{host}:{port}/sync/{kind}?limit={page_size}[&after={cursor}]

    kind is one of artists, albums, songs, playlists, playlist_songs.
    cursor is the key of the last record of the previous page: a sync-id,
    or "playlist,position" for playlist_songs. The response body is one
    page as described in tunesync.remote.models.

Error classification:
    - Connection errors, timeouts, 5xx, 408, 429    -> TransientNetworkError
    - Other HTTP errors                              -> NetworkError
    - Undecodable or malformed body                  -> RemoteDataError
    - Canceled while waiting                         -> SyncCanceled

Cancellation:
    Each request runs on a short-lived daemon thread while the caller waits
    on it. Cancelling wakes the caller at once, whether the request is
    connecting, waiting for headers or streaming the body, and closes the
    response if there is one. The abandoned thread ends by itself when its
    socket fails or times out.
"""

import json
import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, Hashable

import requests

from tunesync.core.exceptions import NetworkError, RemoteDataError, TransientNetworkError
from tunesync.core.logger import get_logger
from tunesync.core.models import Source
from tunesync.remote.models import RemotePage

if TYPE_CHECKING:
    from tunesync.sync.context import CancellationToken

logger = get_logger(__name__)


DEFAULT_TIMEOUT = 30.0
DEFAULT_PAGE_SIZE = 500
CHUNK_SIZE = 64 * 1024

# Statuses worth retrying besides 5xx
_RETRYABLE_STATUSES = {408, 429}


class RemoteClient(ABC):
    """Pages through the records a source serves for one entity kind."""

    @abstractmethod
    def fetch_page(
        self,
        source: Source,
        kind: str,
        after: Hashable | None,
        token: "CancellationToken"
    ) -> RemotePage:
        """
        Fetch the page following the record keyed `after`.

        Args:
            source: Source to query.
            kind: Entity kind ('artists', ..., 'playlist_songs').
            after: Key of the last record already received, None for the first page.
            token: Cancellation token; a blocking read must be interruptible by it.

        Raises:
            TransientNetworkError: The request may succeed if retried.
            NetworkError: The request will not succeed if retried.
            RemoteDataError: The response could not be understood.
            SyncCanceled: Cancellation was requested.
        """

    def close(self) -> None:
        """Release transport resources."""


def format_cursor(after: Hashable) -> str:
    if isinstance(after, tuple):
        return ",".join(str(part) for part in after)
    return str(after)


class HttpRemoteClient(RemoteClient):
    """
    RemoteClient over HTTP using a shared requests.Session.

    Attributes:
        timeout: Connect and read timeout per request, in seconds.
        page_size: Records requested per page.
        session: The requests session (reused across pages for keep-alive).
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        session: requests.Session | None = None
    ) -> None:
        self.timeout = timeout
        self.page_size = page_size
        self.session = session or requests.Session()
        self.session.headers.setdefault("Accept", "application/json")

    def url_for(self, source: Source, kind: str) -> str:
        return f"http://{source.host}:{source.port}/sync/{kind}"

    def fetch_page(
        self,
        source: Source,
        kind: str,
        after: Hashable | None,
        token: "CancellationToken"
    ) -> RemotePage:
        token.raise_if_canceled()

        url = self.url_for(source, kind)
        params = {"limit": self.page_size}
        if after is not None:
            params["after"] = format_cursor(after)

        exchange = _Exchange()
        worker = threading.Thread(
            target=exchange.run,
            args=(self._exchange, source, url, params, token, exchange),
            name="tunesync-http",
            daemon=True,
        )

        # A cancel wakes this wait wherever the request thread is blocked
        with token.register(exchange.abandon):
            if not token.is_canceled:
                worker.start()
                exchange.done.wait()

        token.raise_if_canceled()
        if exchange.error is not None:
            raise exchange.error
        body = exchange.body

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise RemoteDataError(
                f"Response from {url} is not valid JSON: {e}",
                details={"url": url}
            ) from e

        page = RemotePage.from_api(payload)
        logger.debug(
            f"{source.address} {kind}: {len(page.records)} record(s) after {after}, "
            f"more={page.more_remaining}"
        )
        return page

    def _exchange(
        self,
        source: Source,
        url: str,
        params: dict[str, Any],
        token: "CancellationToken",
        exchange: "_Exchange"
    ) -> bytes:
        """Send the request and read the whole body. Runs on the request thread."""
        try:
            response = self.session.get(url, params=params, timeout=self.timeout, stream=True)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            token.raise_if_canceled()
            raise TransientNetworkError(
                f"Cannot reach {source.address}: {e}",
                details={"url": url, "original_error": str(e)}
            ) from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(
                f"Request to {source.address} failed: {e}",
                details={"url": url, "original_error": str(e)}
            ) from e

        try:
            exchange.attach(response)
            self._check_status(response, url)
            return self._read_body(response, url, token)
        finally:
            response.close()

    def _check_status(self, response: requests.Response, url: str) -> None:
        status = response.status_code
        if status < 400:
            return

        details = {"url": url, "status_code": status}
        if status >= 500 or status in _RETRYABLE_STATUSES:
            raise TransientNetworkError(
                f"Remote answered HTTP {status}", details=details, status_code=status
            )
        raise NetworkError(
            f"Remote rejected request: HTTP {status}", details=details, status_code=status
        )

    def _read_body(
        self,
        response: requests.Response,
        url: str,
        token: "CancellationToken"
    ) -> bytes:
        chunks = []
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                token.raise_if_canceled()
                chunks.append(chunk)
        except (requests.exceptions.RequestException, OSError, ValueError) as e:
            # A close() from the cancel trigger shows up as a broken read
            token.raise_if_canceled()
            raise TransientNetworkError(
                f"Reading response from {url} failed: {e}",
                details={"url": url, "original_error": str(e)}
            ) from e

        token.raise_if_canceled()
        return b"".join(chunks)

    def close(self) -> None:
        self.session.close()


class _Exchange:
    """
    Hand-off between fetch_page() and its request thread.

    Attributes:
        done: Set when the request thread finished or the caller gave up.
        body: Response body, once read.
        error: Exception the request thread raised, if any.
    """

    def __init__(self) -> None:
        self.done = threading.Event()
        self.body: bytes | None = None
        self.error: BaseException | None = None
        self._lock = threading.Lock()
        self._response: requests.Response | None = None
        self._abandoned = False

    def run(self, request: Callable[..., bytes], *args: Any) -> None:
        try:
            self.body = request(*args)
        except BaseException as e:
            self.error = e
        finally:
            self.done.set()

    def attach(self, response: requests.Response) -> None:
        """Remember the response so abandon() can close it."""
        with self._lock:
            self._response = response
            abandoned = self._abandoned
        if abandoned:
            response.close()

    def abandon(self) -> None:
        """Cancel trigger: stop waiting and close the response if there is one."""
        with self._lock:
            self._abandoned = True
            response = self._response
        if response is not None:
            response.close()
        self.done.set()
