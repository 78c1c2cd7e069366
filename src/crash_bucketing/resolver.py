# src/crash_bucketing/resolver.py

"""
Bucket identity resolution.

`BucketResolver.resolve` maps a signature to a bucket id through a two-tier
lookup: the process-local cache first, then the bucket store. Only when both
miss is a new bucket allocated and persisted. The cache is a convenience for a
single run and is never trusted across runs.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .exceptions import ConflictError, CrashBucketingError, FatalConfigurationError
from .keys import signature_key
from .schemas import Bucket, Report, Signature
from .stores import BucketStore

logger = logging.getLogger(__name__)

DEFAULT_BUCKET_ID_FLOOR = 10000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BucketIdAllocator:
    """
    Hands out strictly increasing bucket ids. Ids are never reused, including
    ids burned by a failed or conflicting insert.
    """

    def __init__(self, next_id: int):
        self._next_id = next_id

    @classmethod
    def seed_from_store(
        cls, store: BucketStore, floor: int = DEFAULT_BUCKET_ID_FLOOR
    ) -> "BucketIdAllocator":
        """Starts above every id already present in *store*, and never below *floor*."""
        try:
            current_max = store.max_bucket_id()
        except CrashBucketingError as e:
            raise FatalConfigurationError(
                "Bucket id counter cannot be seeded from the bucket store",
                context=e.context,
            ) from e
        seed = max(current_max + 1, floor)
        logger.info(
            "Bucket id allocator seeded",
            extra={"store_max_bucket_id": current_max, "next_bucket_id": seed},
        )
        return cls(seed)

    def next_id(self) -> int:
        allocated = self._next_id
        self._next_id += 1
        return allocated

    def advance_past(self, bucket_id: int) -> None:
        """Moves the counter above *bucket_id*; never moves it backwards."""
        if bucket_id >= self._next_id:
            self._next_id = bucket_id + 1


@dataclass(frozen=True)
class Resolution:
    bucket_id: int
    created: bool


class BucketResolver:
    def __init__(
        self,
        store: BucketStore,
        allocator: BucketIdAllocator,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._allocator = allocator
        self._clock = clock
        self._cache: dict[Signature, int] = {}

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def resolve(self, signature: Signature, report: Report) -> Resolution:
        """
        Returns the bucket for *signature*, creating it from *report* when the
        signature has never been seen. Store failures propagate and leave the
        cache untouched.
        """
        bucket_id = self._cache.get(signature)
        if bucket_id is not None:
            return Resolution(bucket_id, created=False)

        existing = self._store.find_by_signature(signature)
        if existing is not None:
            self._cache[signature] = existing.id
            self._allocator.advance_past(existing.id)
            return Resolution(existing.id, created=False)

        return self._create(signature, report)

    def _create(self, signature: Signature, report: Report) -> Resolution:
        # One retry covers an id collision with a bucket written by another run.
        attempts = 0
        while True:
            attempts += 1
            bucket = Bucket.new(
                bucket_id=self._allocator.next_id(),
                signature=signature,
                crash_date=report.crash_date,
                created=self._clock(),
                app_id=report.app_id,
            )
            try:
                self._store.insert(bucket)
            except ConflictError as e:
                if e.signature_conflict:
                    return self._adopt_concurrent_bucket(signature, e)
                if attempts >= 2:
                    raise
                logger.warning(
                    "Bucket id collision, re-seeding allocator",
                    extra={"bucket_id": bucket.id, "signature": signature_key(signature)},
                )
                self._allocator.advance_past(self._store.max_bucket_id())
                continue

            self._cache[signature] = bucket.id
            logger.debug(
                "Created bucket",
                extra={"bucket_id": bucket.id, "signature": signature_key(signature)},
            )
            return Resolution(bucket.id, created=True)

    def _adopt_concurrent_bucket(self, signature: Signature, error: ConflictError) -> Resolution:
        existing = self._store.find_by_signature(signature)
        if existing is None:
            raise error
        logger.info(
            "Signature created concurrently, reusing bucket",
            extra={"bucket_id": existing.id, "signature": signature_key(signature)},
        )
        self._cache[signature] = existing.id
        self._allocator.advance_past(existing.id)
        return Resolution(existing.id, created=False)
