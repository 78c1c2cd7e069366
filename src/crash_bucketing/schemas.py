# In src/crash_bucketing/schemas.py

from datetime import datetime, timezone
from typing import NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

BUCKET_STATUS_OPEN = 1


class Signature(NamedTuple):
    """
    The natural key of a bucket. Compared positionally, field by field, so two
    signatures are equal only when all five components are equal.
    """

    product: Optional[str]
    version: Optional[str]
    build: Optional[str]
    module: Optional[str]
    offset: Optional[int]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# --- Runtime Validation (using Pydantic) ---


class Report(BaseModel):
    """A single crash report as read from the report store."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=0)
    product: Optional[str] = None
    version: Optional[str] = None
    build: Optional[str] = None
    module: Optional[str] = None
    offset: Optional[int] = None
    crash_date: datetime
    app_id: Optional[int] = None
    bucket_id: Optional[int] = None

    @field_validator("crash_date")
    @classmethod
    def normalise_crash_date(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def is_bucketed(self) -> bool:
        return self.bucket_id is not None


class Bucket(BaseModel):
    """
    Aggregate cluster of reports sharing one signature. Only the aggregate
    fields change after creation, and only through the bucket store.
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., gt=0)
    product: Optional[str] = None
    version: Optional[str] = None
    build: Optional[str] = None
    module: Optional[str] = None
    offset: Optional[int] = None

    crash_count: int = Field(1, ge=1)
    unique_steps_count: int = Field(1, ge=1)
    last_crash_date: datetime
    created: datetime

    name: str = ""
    status: int = BUCKET_STATUS_OPEN
    parent_bucket_id: Optional[int] = None
    app_id: Optional[int] = None

    @field_validator("last_crash_date", "created")
    @classmethod
    def normalise_dates(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def signature(self) -> Signature:
        return Signature(self.product, self.version, self.build, self.module, self.offset)

    @classmethod
    def new(
        cls,
        bucket_id: int,
        signature: Signature,
        crash_date: datetime,
        created: datetime,
        app_id: Optional[int] = None,
    ) -> "Bucket":
        """Builds the record for a signature seen for the first time."""
        return cls(
            id=bucket_id,
            product=signature.product,
            version=signature.version,
            build=signature.build,
            module=signature.module,
            offset=signature.offset,
            crash_count=1,
            unique_steps_count=1,
            last_crash_date=crash_date,
            created=created,
            name=f"Crash in {signature.product or 'unknown product'}",
            app_id=app_id,
        )


class RunSummary(BaseModel):
    """Counters reported at the end of a bucketing run."""

    total_reports: int = 0
    processed: int = 0
    created: int = 0
    reused: int = 0
    skipped: int = 0
    already_bucketed: int = 0
    windows: int = 0
    buckets_touched: int = 0
    last_report_id: int = 0
    stopped_early: bool = False
    skipped_report_ids: list[int] = Field(default_factory=list)
