"""
Progress bar handling for tunesync using Rich library.

SyncProgressBar is a SyncObserver: plug it into the SyncService and it
draws one bar per source as the sync engine reports progress.

Usage:
    from tunesync.core.progress import SyncProgressBar

    progress = SyncProgressBar(source_names={1: "Living room (10.0.0.5:8080)"})
    service = SyncService(synchronizer, observer=progress)
    service.run_sync()

Observer events arrive on the sync worker thread; Rich's Progress is
thread-safe, so the bars are updated directly from there.
"""

from abc import ABC, abstractmethod
from typing import Mapping, Optional

from rich import get_console
from rich.console import JustifyMethod, OverflowMethod
from rich.highlighter import Highlighter
from rich.progress import (
    BarColumn,
    Progress,
    ProgressColumn,
    Task,
    TaskID,
)
from rich.style import StyleType
from rich.text import Text
from rich.theme import Theme

from tunesync.sync.observer import SyncObserver


# =============================================================================
# Common Theme
# =============================================================================

PROGRESS_THEME = Theme({
    "bar.back": "grey23",
    "bar.complete": "rgb(165,66,129)",  # Magenta/purple
    "bar.finished": "rgb(114,156,31)",  # Green when done
    "bar.pulse": "rgb(165,66,129)",
    "progress.percentage": "white",
})


# =============================================================================
# Custom Column
# =============================================================================

class SizedTextColumn(ProgressColumn):
    """
    Text column truncated with an ellipsis past a fixed width.
    """

    def __init__(
        self,
        text_format: str,
        style: StyleType = "none",
        justify: JustifyMethod = "left",
        markup: bool = True,
        highlighter: Optional[Highlighter] = None,
        overflow: Optional[OverflowMethod] = None,
        width: int = 20,
    ) -> None:
        self.text_format = text_format
        self.justify: JustifyMethod = justify
        self.style = style
        self.markup = markup
        self.highlighter = highlighter
        self.overflow: Optional[OverflowMethod] = overflow
        self.width = width
        super().__init__()

    def render(self, task: Task) -> Text:
        """Render the column."""
        _text = self.text_format.format(task=task)
        if self.markup:
            text = Text.from_markup(_text, style=self.style, justify=self.justify)
        else:
            text = Text(_text, style=self.style, justify=self.justify)
        if self.highlighter:
            self.highlighter.highlight(text)

        text.truncate(max_width=self.width, overflow=self.overflow, pad=True)
        return text


# =============================================================================
# Base Progress Bar
# =============================================================================

class BaseProgressBar(ABC):
    """
    Abstract base class for progress displays with one bar per task.

    Provides:
    - Rich Progress instance with the shared theme
    - Context manager support (__enter__/__exit__)
    - Manual start/stop control
    - Log method for printing above the bars

    Subclasses must implement:
    - _get_status_text(): Return formatted status string for a task key
    """

    def __init__(self, status_width: int = 30, description_width: int = 28):
        """
        Initialize the progress display.

        Args:
            status_width: Width of the status column.
            description_width: Width of the description column.
        """
        self.console = get_console()
        self.console.push_theme(PROGRESS_THEME)

        self.progress = Progress(
            SizedTextColumn(
                "[white]{task.description}",
                overflow="ellipsis",
                width=description_width,
            ),
            SizedTextColumn(
                "{task.fields[status]}",
                width=status_width,
                style="white",
            ),
            BarColumn(bar_width=40, finished_style="green"),
            "[progress.percentage]{task.percentage:>3.0f}%",
            console=self.console,
            transient=False,
            refresh_per_second=10,
        )

        self.task_ids: dict[int, TaskID] = {}
        self._started = False

    def __enter__(self) -> "BaseProgressBar":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def start(self) -> None:
        """Start the display (can be called manually)."""
        if not self._started:
            self.progress.start()
            self._started = True

    def stop(self) -> None:
        if self._started:
            self.progress.stop()
            self._started = False

    def log(self, message: str) -> None:
        """
        Print a log message above the progress bars.

        Args:
            message: The message to print.
        """
        self.progress.console.print(message, highlight=False)

    def _add_task(self, key: int, description: str) -> None:
        self.task_ids[key] = self.progress.add_task(
            description=description,
            total=None,
            status=self._get_status_text(key),
        )

    def _update_task(self, key: int, completed: int, total: int | None) -> None:
        task_id = self.task_ids.get(key)
        if task_id is not None:
            self.progress.update(
                task_id,
                completed=completed,
                total=total,
                status=self._get_status_text(key),
            )

    @abstractmethod
    def _get_status_text(self, key: int) -> str:
        """
        Get the status text for one bar.

        Returns:
            Formatted status string with Rich markup.
        """
        pass


# =============================================================================
# Sync Progress Bar
# =============================================================================

class SyncProgressBar(BaseProgressBar, SyncObserver):
    """
    One bar per source, driven by sync observer events.

    Displays:
    - Source label
    - Status: records processed out of the current estimate
    - Progress bar
    - Percentage

    Example:
        Living room (10.0.0.5:8080)   ✓ 1840 / 2310    ━━━━━━━━━━━━━━━━━  79%
    """

    def __init__(self, source_names: Mapping[int, str] | None = None):
        """
        Args:
            source_names: Display names by source id. Ids not listed are
                          shown as "Source <id>".
        """
        super().__init__()
        self.source_names = dict(source_names or {})
        self.processed: dict[int, int] = {}
        self.estimated: dict[int, int] = {}

    def _get_status_text(self, key: int) -> str:
        processed = self.processed.get(key, 0)
        estimated = self.estimated.get(key, 0)
        if estimated:
            return f"[green]✓ {processed}[/green] / {estimated}"
        return f"[green]✓ {processed}[/green]"

    def begin_sync(self) -> None:
        self.start()

    def end_sync(self) -> None:
        self.stop()

    def begin_source(self, source_id: int) -> None:
        self.processed[source_id] = 0
        self.estimated[source_id] = 0
        self._add_task(source_id, self.source_names.get(source_id, f"Source {source_id}"))

    def update_progress(self, source_id: int, item_index: int, item_count: int) -> None:
        self.processed[source_id] = item_index
        self.estimated[source_id] = item_count
        self._update_task(source_id, item_index, item_count or None)

    def end_source(self, source_id: int) -> None:
        # Whatever the outcome, the bar is done
        processed = self.processed.get(source_id, 0)
        self.estimated[source_id] = processed
        done = max(processed, 1)
        self._update_task(source_id, done, done)


__all__ = [
    "PROGRESS_THEME",
    "SizedTextColumn",
    "BaseProgressBar",
    "SyncProgressBar",
]
