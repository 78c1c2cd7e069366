# src/crash_bucketing/aggregator.py

import logging
from datetime import datetime

from .stores import BucketStore

logger = logging.getLogger(__name__)


class BucketAggregator:
    """
    Applies one report to an existing bucket's aggregates. The store performs
    the increment atomically; nothing is read back here.
    """

    def __init__(self, store: BucketStore):
        self._store = store

    def apply_report(self, bucket_id: int, report_timestamp: datetime) -> None:
        self._store.increment_aggregate(bucket_id, report_timestamp)
        logger.debug(
            "Aggregate updated",
            extra={"bucket_id": bucket_id, "report_timestamp": report_timestamp.isoformat()},
        )
