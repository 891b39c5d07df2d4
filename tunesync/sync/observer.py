"""
Observer boundary: sync events going out to the presentation layer.

Events are strictly nested:

    begin_sync
        begin_source(a)  update_progress(a, ...)*  end_source(a)
        begin_source(b)  update_progress(b, ...)*  end_source(b)
    end_sync

Every begin has its end, whatever the outcome of the source or the run.
Within one source, item_index and item_count never go down.

Observers are called on the sync worker thread.
"""

from typing import Iterable

from tunesync.core.logger import get_logger

logger = get_logger(__name__)


class SyncObserver:
    """Base observer. Every event is a no-op; override the ones you need."""

    def begin_sync(self) -> None:
        pass

    def end_sync(self) -> None:
        pass

    def begin_source(self, source_id: int) -> None:
        pass

    def end_source(self, source_id: int) -> None:
        pass

    def update_progress(self, source_id: int, item_index: int, item_count: int) -> None:
        pass


class ObserverGroup(SyncObserver):
    """
    Fans every event out to several observers.

    An observer that raises is logged and skipped; it never breaks the
    sync or starves the observers after it.
    """

    def __init__(self, observers: Iterable[SyncObserver] = ()) -> None:
        self.observers = list(observers)

    def add(self, observer: SyncObserver) -> None:
        self.observers.append(observer)

    def _dispatch(self, event: str, *args) -> None:
        for observer in self.observers:
            try:
                getattr(observer, event)(*args)
            except Exception:
                logger.exception(f"Observer {type(observer).__name__}.{event} raised")

    def begin_sync(self) -> None:
        self._dispatch("begin_sync")

    def end_sync(self) -> None:
        self._dispatch("end_sync")

    def begin_source(self, source_id: int) -> None:
        self._dispatch("begin_source", source_id)

    def end_source(self, source_id: int) -> None:
        self._dispatch("end_source", source_id)

    def update_progress(self, source_id: int, item_index: int, item_count: int) -> None:
        self._dispatch("update_progress", source_id, item_index, item_count)


class LoggingObserver(SyncObserver):
    """Writes sync events to the log. Progress goes to DEBUG only."""

    def begin_sync(self) -> None:
        logger.info("Sync started")

    def end_sync(self) -> None:
        logger.info("Sync finished")

    def begin_source(self, source_id: int) -> None:
        logger.info(f"Syncing source {source_id}")

    def end_source(self, source_id: int) -> None:
        logger.info(f"Source {source_id} done")

    def update_progress(self, source_id: int, item_index: int, item_count: int) -> None:
        logger.debug(f"Source {source_id}: {item_index}/{item_count}")
