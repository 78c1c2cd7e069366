# src/crash_bucketing/paginator.py

"""
Keyset pagination over the report store.

Windows are fetched one at a time with `fetch_window(start_after_id, limit)`,
so memory use is bounded by the window size regardless of how many reports
exist. Resuming after a report id (rather than skipping N rows) stays correct
when reports are inserted while a run is in progress.
"""

import logging
from dataclasses import dataclass
from typing import Sequence

from .schemas import Report
from .stores import ReportStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Window:
    index: int
    start_after_id: int
    reports: Sequence[Report]

    @property
    def last_report_id(self) -> int:
        return self.reports[-1].id if self.reports else self.start_after_id

    def __len__(self) -> int:
        return len(self.reports)


class WindowCursor:
    """Position of a run: the id of the last report whose window was flushed."""

    def __init__(self, start_after_id: int = 0):
        self.last_report_id = start_after_id
        self.windows_completed = 0

    def advance(self, window: Window) -> None:
        if window.last_report_id < self.last_report_id:
            raise ValueError(
                f"Cursor cannot move backwards: {window.last_report_id} < {self.last_report_id}"
            )
        self.last_report_id = window.last_report_id
        self.windows_completed += 1


class ReportPaginator:
    def __init__(self, store: ReportStore, window_size: int):
        if window_size <= 0:
            raise ValueError("window_size must be a positive integer")
        self._store = store
        self.window_size = window_size

    def fetch(self, index: int, start_after_id: int) -> Window:
        """
        Fetches the window after *start_after_id*. Calling it again with the
        same arguments replays the window, which is how a failed window is
        retried.
        """
        reports = self._store.fetch_window(start_after_id, self.window_size)
        if not reports:
            logger.debug("Empty window, pagination finished", extra={"index": index})
        return Window(index=index, start_after_id=start_after_id, reports=reports)

    def is_final(self, window: Window) -> bool:
        """An empty or short window means no reports remain after it."""
        return len(window) < self.window_size
