# src/crash_bucketing/stores.py

"""
Contracts for the persistence collaborators of the bucketing engine.

The engine only talks to these protocols. `clients.py` provides the DynamoDB
implementations; any other technology can be plugged in as long as it keeps
the semantics documented on each method.
"""

from datetime import datetime
from typing import Mapping, Optional, Protocol, Sequence

from .schemas import Bucket, Report, Signature


class ReportStore(Protocol):
    def count_reports(self) -> int:
        ...

    def fetch_window(self, start_after_id: int, limit: int) -> Sequence[Report]:
        """Reports with id > start_after_id, ascending by id, at most *limit*."""
        ...

    def set_bucket_references(self, assignments: Mapping[int, int]) -> None:
        """
        Applies report_id -> bucket_id back-references. Writing the value a
        report already holds is a no-op; a different value raises
        BackReferenceConflictError.
        """
        ...


class BucketStore(Protocol):
    def find_by_signature(self, signature: Signature) -> Optional[Bucket]:
        ...

    def insert(self, bucket: Bucket) -> None:
        """Raises ConflictError if the signature or the id already exists."""
        ...

    def increment_aggregate(self, bucket_id: int, timestamp: datetime) -> None:
        """Atomically bumps both counters and moves last_crash_date forward only."""
        ...

    def max_bucket_id(self) -> int:
        """Highest id ever written, 0 for an empty store."""
        ...


class CheckpointStore(Protocol):
    def load(self, job_name: str) -> Optional[int]:
        ...

    def save(self, job_name: str, last_report_id: int) -> None:
        ...
