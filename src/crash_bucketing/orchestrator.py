# src/crash_bucketing/orchestrator.py

"""
Drives a bucketing run over the whole report store.

For every window: resolve each report's bucket (creating buckets and applying
aggregates as needed), write all of the window's back-references in one
batch, and only then advance the cursor and save the checkpoint. A window
that fails part-way is replayed from its start; reports already resolved in an
earlier attempt of the same window are not applied to their bucket again.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from .aggregator import BucketAggregator
from .exceptions import (
    CrashBucketingError,
    FatalConfigurationError,
    MalformedReportError,
    TransientStoreError,
    WindowProcessingError,
)
from .keys import build_signature, validate_signature
from .paginator import ReportPaginator, Window, WindowCursor
from .resolver import (
    DEFAULT_BUCKET_ID_FLOOR,
    BucketIdAllocator,
    BucketResolver,
    Resolution,
)
from .schemas import RunSummary
from .stores import BucketStore, CheckpointStore, ReportStore

logger = logging.getLogger(__name__)

DEFAULT_JOB_NAME = "crash-bucketing"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _never_stop() -> bool:
    return False


@dataclass
class _WindowState:
    """Work done for one window, kept across retry attempts of that window."""

    resolved: dict[int, Resolution] = field(default_factory=dict)
    skipped: list[int] = field(default_factory=list)
    already_bucketed: set[int] = field(default_factory=set)

    @property
    def assignments(self) -> dict[int, int]:
        return {report_id: r.bucket_id for report_id, r in self.resolved.items()}


class BucketingOrchestrator:
    def __init__(
        self,
        report_store: ReportStore,
        bucket_store: BucketStore,
        window_size: int,
        *,
        checkpoint_store: Optional[CheckpointStore] = None,
        job_name: str = DEFAULT_JOB_NAME,
        bucket_id_floor: int = DEFAULT_BUCKET_ID_FLOOR,
        required_signature_fields: Iterable[str] = (),
        max_window_attempts: int = 3,
        retry_backoff_seconds: float = 0.5,
        should_stop: Callable[[], bool] = _never_stop,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._report_store = report_store
        self._bucket_store = bucket_store
        self._paginator = ReportPaginator(report_store, window_size)
        self._aggregator = BucketAggregator(bucket_store)
        self._checkpoint_store = checkpoint_store
        self._job_name = job_name
        self._bucket_id_floor = bucket_id_floor
        self._required_fields = tuple(required_signature_fields)
        self._max_window_attempts = max(1, max_window_attempts)
        self._retry_backoff_seconds = retry_backoff_seconds
        self._should_stop = should_stop
        self._sleep = sleep
        self._clock = clock

    # --- Startup ---
    def _start_position(self, start_after_id: Optional[int]) -> int:
        if start_after_id is not None:
            return start_after_id
        if self._checkpoint_store is None:
            return 0
        try:
            checkpoint = self._checkpoint_store.load(self._job_name)
        except CrashBucketingError as e:
            raise FatalConfigurationError(
                "Checkpoint store unreachable at startup",
                context={"job": self._job_name, **e.context},
            ) from e
        if checkpoint is not None:
            logger.info(
                "Resuming from checkpoint",
                extra={"job": self._job_name, "start_after_id": checkpoint},
            )
        return checkpoint or 0

    def _count_reports(self) -> int:
        try:
            return self._report_store.count_reports()
        except CrashBucketingError as e:
            raise FatalConfigurationError(
                "Report store unreachable at startup", context=e.context
            ) from e

    # --- Main loop ---
    def run(self, start_after_id: Optional[int] = None) -> RunSummary:
        """
        Processes every window after *start_after_id* (or after the saved
        checkpoint when omitted). Raises FatalConfigurationError before any
        window is touched if the stores are not usable, and
        WindowProcessingError when a window cannot be completed.

        A window that fails for good may already have created buckets or
        incremented aggregates for some of its reports. Their back-references
        were never written, so the next run applies them again and those
        buckets end up with a crash count above the number of reports
        referencing them.
        """
        summary = RunSummary(total_reports=self._count_reports())
        if summary.total_reports == 0:
            logger.info("Report store is empty, nothing to bucket.")
            return summary

        allocator = BucketIdAllocator.seed_from_store(
            self._bucket_store, floor=self._bucket_id_floor
        )
        resolver = BucketResolver(self._bucket_store, allocator, clock=self._clock)
        cursor = WindowCursor(self._start_position(start_after_id))
        summary.last_report_id = cursor.last_report_id

        created_ids: set[int] = set()
        touched_ids: set[int] = set()

        logger.info(
            "Starting bucketing run",
            extra={
                "total_reports": summary.total_reports,
                "start_after_id": cursor.last_report_id,
                "window_size": self._paginator.window_size,
            },
        )

        while True:
            if self._should_stop():
                summary.stopped_early = True
                logger.warning(
                    "Stop requested, ending run at window boundary",
                    extra={"last_report_id": cursor.last_report_id},
                )
                break

            try:
                window, state = self._run_window_with_retries(
                    cursor.windows_completed, cursor.last_report_id, resolver
                )
            except WindowProcessingError as e:
                self._finish(summary, created_ids, touched_ids)
                e.summary = summary
                raise
            if not window.reports:
                break
            cursor.advance(window)

            for resolution in state.resolved.values():
                touched_ids.add(resolution.bucket_id)
                if resolution.created:
                    created_ids.add(resolution.bucket_id)
            summary.processed += len(state.resolved)
            summary.skipped += len(state.skipped)
            summary.skipped_report_ids.extend(state.skipped)
            summary.already_bucketed += len(state.already_bucketed)
            summary.windows += 1
            summary.last_report_id = cursor.last_report_id

            logger.info(
                "Processed window",
                extra={
                    "window_index": window.index,
                    "processed_total": summary.processed,
                    "total_reports": summary.total_reports,
                    "unique_buckets": resolver.cache_size,
                    "last_report_id": cursor.last_report_id,
                },
            )
            if self._paginator.is_final(window):
                break

        self._finish(summary, created_ids, touched_ids)
        logger.info(
            "Bucketing run finished",
            extra={"summary": summary.model_dump(exclude={"skipped_report_ids"})},
        )
        return summary

    @staticmethod
    def _finish(summary: RunSummary, created_ids: set[int], touched_ids: set[int]) -> None:
        summary.created = len(created_ids)
        summary.reused = len(touched_ids - created_ids)
        summary.buckets_touched = len(touched_ids)

    def _run_window_with_retries(
        self, index: int, start_after_id: int, resolver: BucketResolver
    ) -> tuple[Window, _WindowState]:
        """
        Fetches, resolves and flushes one window. Every attempt refetches the
        window, so a failed fetch is retried like any other transient failure.
        """
        state = _WindowState()
        attempt = 0
        while True:
            attempt += 1
            try:
                window = self._paginator.fetch(index, start_after_id)
                if not window.reports:
                    return window, state
                self._resolve_window(window, resolver, state)
                if state.resolved:
                    self._report_store.set_bucket_references(state.assignments)
                if self._checkpoint_store is not None:
                    self._checkpoint_store.save(self._job_name, window.last_report_id)
                return window, state
            except TransientStoreError as e:
                if attempt >= self._max_window_attempts:
                    logger.error(
                        "Window failed after retries",
                        extra={"window_index": index, "attempts": attempt, "error": e.to_dict()},
                    )
                    raise WindowProcessingError(
                        index, start_after_id, e, attempts=attempt
                    ) from e
                delay = self._retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Transient store error, retrying window",
                    extra={
                        "window_index": index,
                        "start_after_id": start_after_id,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "error_code": e.error_code,
                    },
                )
                self._sleep(delay)
            except CrashBucketingError as e:
                logger.error(
                    "Non-retryable error, aborting window",
                    extra={"window_index": index, "error": e.to_dict()},
                )
                raise WindowProcessingError(
                    index, start_after_id, e, attempts=attempt
                ) from e

    def _resolve_window(
        self, window: Window, resolver: BucketResolver, state: _WindowState
    ) -> None:
        for report in window.reports:
            if (
                report.id in state.resolved
                or report.id in state.skipped
                or report.id in state.already_bucketed
            ):
                continue
            if report.is_bucketed:
                # Back-references are written once; a set one means the report was counted.
                state.already_bucketed.add(report.id)
                continue

            try:
                signature = validate_signature(
                    report.id, build_signature(report), self._required_fields
                )
            except MalformedReportError as e:
                logger.warning("Skipping malformed report", extra={"error": e.to_dict()})
                state.skipped.append(report.id)
                continue

            resolution = resolver.resolve(signature, report)
            if not resolution.created:
                self._aggregator.apply_report(resolution.bucket_id, report.crash_date)
            state.resolved[report.id] = resolution
