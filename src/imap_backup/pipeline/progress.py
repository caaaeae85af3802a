"""Byte-progress reporting for downloads."""

from __future__ import annotations

from typing import Protocol

from rich.progress import Progress, TaskID


class ProgressSink(Protocol):
    """Receives the declared size of every newly archived message."""

    def advance(self, n_bytes: int) -> None: ...


class RichProgressSink:
    """Advance a folder task and the overall task of a rich Progress display."""

    def __init__(self, *, progress: Progress, folder_task: TaskID, overall_task: TaskID) -> None:
        """Initialize the sink.

        Args:
            progress: Rich progress display.
            folder_task: Task tracking the current folder.
            overall_task: Task tracking the whole run.
        """
        self._progress = progress
        self._folder_task = folder_task
        self._overall_task = overall_task
        self.total = 0

    def advance(self, n_bytes: int) -> None:
        """Advance both tasks by `n_bytes`."""
        self.total += n_bytes
        self._progress.advance(self._folder_task, advance=n_bytes)
        self._progress.advance(self._overall_task, advance=n_bytes)
