"""CLI progress display for sync operations.

This module provides a Rich-based reporter that shows the current phase
of a sync engine run as a spinner.
"""

from typing import Optional

from rich.progress import (
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from .sync.engine import SyncPhase
from .sync.verdict import SyncResult


class SyncProgressDisplay:
    """Rich-based progress display for sync operations.

    Implements the engine's reporter interface. Results are kept in
    ``results`` for the caller to print once the display is closed.
    """

    def __init__(self, label: str = "Sync") -> None:
        self.label = label
        self.results: list[SyncResult] = []
        self.phases: list[SyncPhase] = []
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None

    def report_progress(self, phase: SyncPhase) -> None:
        self.phases.append(phase)
        if self._progress is None or self._task is None:
            return
        self._progress.update(
            self._task, description=f"{self.label}: {phase.description}"
        )

    def report_result(self, results: list[SyncResult]) -> None:
        self.results = list(results)

    def __enter__(self) -> "SyncProgressDisplay":
        """Enter context manager - start progress display."""
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            TimeElapsedColumn(),
            transient=True,
            refresh_per_second=8,
        )
        self._progress.__enter__()
        self._task = self._progress.add_task(f"{self.label}: starting", total=None)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager - stop progress display."""
        if self._progress is not None:
            self._progress.__exit__(exc_type, exc_val, exc_tb)
            self._progress = None
            self._task = None
