"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

import pytest

from crash_bucketing.exceptions import (
    BackReferenceConflictError,
    ConflictError,
    StoreError,
    TransientStoreError,
)
from crash_bucketing.keys import signature_key
from crash_bucketing.schemas import Bucket, Report, Signature


@pytest.fixture(scope="session", autouse=True)
def _env_vars():
    """
    Ensures a deterministic environment for every test run.
    Overwrite *only* the variables needed by the handler.
    """
    original = os.environ.copy()
    os.environ.setdefault("REPORTS_TABLE_NAME", "test-reports")
    os.environ.setdefault("BUCKETS_TABLE_NAME", "test-buckets")
    os.environ.setdefault("SERVICE_NAME", "crash-bucketing-test")
    os.environ.setdefault("ENVIRONMENT", "test")
    os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
    os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "true")
    os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "CrashBucketing")
    yield
    os.environ.clear()
    os.environ.update(original)


BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_report(
    report_id: int,
    signature: Signature,
    minutes: int = 0,
    bucket_id: Optional[int] = None,
    app_id: Optional[int] = None,
) -> Report:
    return Report(
        id=report_id,
        product=signature.product,
        version=signature.version,
        build=signature.build,
        module=signature.module,
        offset=signature.offset,
        crash_date=BASE_TIME + timedelta(minutes=minutes),
        bucket_id=bucket_id,
        app_id=app_id,
    )


# ---------- In-memory stores honouring the store contracts ---------- #
class InMemoryReportStore:
    def __init__(self, reports: list[Report] | None = None):
        self.reports: dict[int, Report] = {r.id: r for r in reports or []}
        self.count_calls = 0
        self.fetch_calls: list[tuple[int, int]] = []
        self.reference_writes: list[dict[int, int]] = []
        self.fail_next_reference_writes = 0

    def count_reports(self) -> int:
        self.count_calls += 1
        return len(self.reports)

    def fetch_window(self, start_after_id: int, limit: int) -> list[Report]:
        self.fetch_calls.append((start_after_id, limit))
        ids = sorted(i for i in self.reports if i > start_after_id)[:limit]
        return [self.reports[i] for i in ids]

    def set_bucket_references(self, assignments: Mapping[int, int]) -> None:
        if self.fail_next_reference_writes:
            self.fail_next_reference_writes -= 1
            raise TransientStoreError("set_bucket_references")
        conflicting = [
            report_id
            for report_id, bucket_id in assignments.items()
            if self.reports[report_id].bucket_id not in (None, bucket_id)
        ]
        if conflicting:
            raise BackReferenceConflictError(conflicting)
        self.reference_writes.append(dict(assignments))
        for report_id, bucket_id in assignments.items():
            self.reports[report_id] = self.reports[report_id].model_copy(
                update={"bucket_id": bucket_id}
            )


class InMemoryBucketStore:
    def __init__(self, buckets: list[Bucket] | None = None):
        self.buckets: dict[int, Bucket] = {}
        self.by_signature: dict[str, int] = {}
        self.inserts: list[Bucket] = []
        self.increments: list[tuple[int, datetime]] = []
        self.find_calls = 0
        for bucket in buckets or []:
            self.buckets[bucket.id] = bucket
            self.by_signature[signature_key(bucket.signature)] = bucket.id

    def find_by_signature(self, signature: Signature) -> Optional[Bucket]:
        self.find_calls += 1
        bucket_id = self.by_signature.get(signature_key(signature))
        return self.buckets.get(bucket_id) if bucket_id is not None else None

    def insert(self, bucket: Bucket) -> None:
        if signature_key(bucket.signature) in self.by_signature:
            raise ConflictError("signature already has a bucket", signature_conflict=True)
        if bucket.id in self.buckets:
            raise ConflictError("bucket id already allocated", signature_conflict=False)
        self.inserts.append(bucket)
        self.buckets[bucket.id] = bucket
        self.by_signature[signature_key(bucket.signature)] = bucket.id

    def increment_aggregate(self, bucket_id: int, timestamp: datetime) -> None:
        if bucket_id not in self.buckets:
            raise StoreError("increment_aggregate", "bucket does not exist")
        self.increments.append((bucket_id, timestamp))
        bucket = self.buckets[bucket_id]
        self.buckets[bucket_id] = bucket.model_copy(
            update={
                "crash_count": bucket.crash_count + 1,
                "unique_steps_count": bucket.unique_steps_count + 1,
                "last_crash_date": max(bucket.last_crash_date, timestamp),
            }
        )

    def max_bucket_id(self) -> int:
        return max(self.buckets, default=0)

    def bucket_for(self, signature: Signature) -> Bucket:
        return self.buckets[self.by_signature[signature_key(signature)]]


class InMemoryCheckpointStore:
    def __init__(self):
        self.positions: dict[str, int] = {}

    def load(self, job_name: str) -> Optional[int]:
        return self.positions.get(job_name)

    def save(self, job_name: str, last_report_id: int) -> None:
        self.positions[job_name] = last_report_id


# ---------- Fixtures ---------- #
SIG_A = Signature("Photoshop", "2024.3", "7", "PhotoshopCore", 4096)
SIG_B = Signature("Illustrator", "2024.1", "2", "IllustratorCore", 1024)


@pytest.fixture
def report_store() -> InMemoryReportStore:
    return InMemoryReportStore()


@pytest.fixture
def bucket_store() -> InMemoryBucketStore:
    return InMemoryBucketStore()


@pytest.fixture
def checkpoint_store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()
