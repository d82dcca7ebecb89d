"""
Progress Tracker
================

Thread-safe progress table for items running in a batch. Many tasks write
status updates; one periodic refresher reads a snapshot and renders it
with rich.
"""

from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional
import logging
import threading
import time

from rich.table import Table

logger = logging.getLogger(__name__)


class TaskProgressStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    MERGING = "merging"


STATUS_STYLES = {
    TaskProgressStatus.PENDING: "[dim]Pending[/dim]",
    TaskProgressStatus.RUNNING: "[yellow]Running[/yellow]",
    TaskProgressStatus.COMPLETED: "[green]Completed[/green]",
    TaskProgressStatus.FAILED: "[red]Failed[/red]",
    TaskProgressStatus.MERGING: "[cyan]Merging[/cyan]",
}


@dataclass
class TaskProgressEntry:
    """Progress of one item; started/stopped are time.monotonic() values."""
    task_id: str
    title: str
    status: TaskProgressStatus = TaskProgressStatus.PENDING
    log_file: Optional[str] = None
    output_bytes: int = 0
    started: Optional[float] = None
    stopped: Optional[float] = None

    @property
    def elapsed(self) -> float:
        if self.started is None:
            return 0.0
        end = self.stopped if self.stopped is not None else time.monotonic()
        return end - self.started


def format_bytes(size: int) -> str:
    if size <= 0:
        return "-"
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def format_elapsed(seconds: float) -> str:
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


class TaskProgressTracker:
    """
    Concurrent map of item id to progress entry.

    All access goes through one lock; readers get copies.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, TaskProgressEntry] = {}

    def register(self, task_id: str, title: str, log_file: Optional[str] = None) -> None:
        with self._lock:
            self._entries[task_id] = TaskProgressEntry(task_id=task_id, title=title, log_file=log_file)

    def update_status(self, task_id: str, status: TaskProgressStatus) -> None:
        """
        Set an item's status.

        The clock starts on the first RUNNING and stops on COMPLETED or FAILED.
        """
        with self._lock:
            entry = self._entries.get(task_id)
            if entry is None:
                logger.debug(f"Progress update for unregistered task {task_id}")
                return
            entry.status = status
            if status == TaskProgressStatus.RUNNING and entry.started is None:
                entry.started = time.monotonic()
            elif status in (TaskProgressStatus.COMPLETED, TaskProgressStatus.FAILED):
                if entry.started is not None and entry.stopped is None:
                    entry.stopped = time.monotonic()

    def update_output_size(self, task_id: str, size: int) -> None:
        with self._lock:
            entry = self._entries.get(task_id)
            if entry is not None:
                entry.output_bytes = size

    def refresh_all_output_sizes(self) -> None:
        """Read each entry's log file size from disk."""
        with self._lock:
            entries = list(self._entries.values())
        for entry in entries:
            if entry.log_file:
                try:
                    size = Path(entry.log_file).stat().st_size
                except OSError:
                    continue
                self.update_output_size(entry.task_id, size)

    def snapshot(self) -> List[TaskProgressEntry]:
        with self._lock:
            return [replace(e) for e in sorted(self._entries.values(), key=lambda e: e.task_id)]

    def build_table(self, title: str = "Parallel Tasks") -> Table:
        table = Table(title=title, show_header=True, header_style="bold cyan")
        table.add_column("Task ID", style="cyan")
        table.add_column("Status")
        table.add_column("Elapsed", style="dim", justify="right")
        table.add_column("Output", justify="right")
        table.add_column("Log File", style="dim")

        for entry in self.snapshot():
            table.add_row(
                entry.task_id,
                STATUS_STYLES.get(entry.status, entry.status.value),
                format_elapsed(entry.elapsed),
                format_bytes(entry.output_bytes),
                Path(entry.log_file).name if entry.log_file else "-"
            )
        return table
