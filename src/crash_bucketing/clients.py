# src/crash_bucketing/clients.py

"""
DynamoDB-backed implementations of the report, bucket and checkpoint stores.

These classes provide a clean, abstracted interface over a raw boto3 DynamoDB
client and translate botocore failures into the service's own exception
hierarchy, so the bucketing engine never sees a ClientError.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Iterator, Mapping, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .exceptions import (
    BackReferenceConflictError,
    ConflictError,
    StoreError,
    TransientStoreError,
)
from .keys import signature_key
from .schemas import Bucket, Report, Signature

if TYPE_CHECKING:
    from mypy_boto3_dynamodb.client import DynamoDBClient as DynamoDBClientType

logger = logging.getLogger(__name__)

# DynamoDB caps a single transaction at 100 actions.
MAX_TRANSACTION_ITEMS = 100

_TRANSIENT_ERROR_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "Throttling",
    "RequestLimitExceeded",
    "InternalServerError",
    "ServiceUnavailable",
    "TransactionConflictException",
    "TransactionInProgressException",
    "RequestTimeout",
    "RequestTimeoutException",
}
_TRANSIENT_CANCELLATION_CODES = {
    "ThrottlingError",
    "ProvisionedThroughputExceeded",
    "TransactionConflict",
    "RequestLimitExceeded",
}

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


# --- Helpers ---
def _to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _from_epoch_ms(value: Decimal | int) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def _serialize(item: Mapping[str, Any]) -> dict[str, Any]:
    return {k: _serializer.serialize(v) for k, v in item.items()}


def _deserialize(item: Mapping[str, Any]) -> dict[str, Any]:
    return {k: _deserializer.deserialize(v) for k, v in item.items()}


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def _cancellation_codes(e: ClientError) -> list[str]:
    """Per-action reason codes of a cancelled transaction, in request order."""
    reasons = e.response.get("CancellationReasons", [])
    return [reason.get("Code", "None") for reason in reasons]


@contextmanager
def _store_errors(operation: str, **context: Any) -> Iterator[None]:
    """
    Maps botocore failures that no caller handles specially onto
    TransientStoreError or StoreError.
    """
    try:
        yield
    except ClientError as e:
        error_code = _error_code(e)
        error_message = e.response.get("Error", {}).get("Message", "")
        error_context = {
            **context,
            "aws_error_code": error_code,
            "aws_error_message": error_message,
        }
        if error_code in _TRANSIENT_ERROR_CODES:
            raise TransientStoreError(operation, context=error_context) from e
        raise StoreError(operation, error_message or error_code, context=error_context) from e
    except (ReadTimeoutError, ConnectionClosedError) as e:
        raise TransientStoreError(
            operation,
            error_code="STORE_TIMEOUT",
            context={**context, "timeout_error": str(e)},
        ) from e
    except EndpointConnectionError as e:
        raise TransientStoreError(
            operation,
            error_code="STORE_CONNECTION_ERROR",
            context={**context, "connection_error": str(e)},
        ) from e


class DynamoReportStore:
    """
    Report collection stored under one partition key value with the report id
    as a numeric sort key, which gives id-ordered keyset pagination for free.
    """

    def __init__(
        self,
        dynamo_client: "DynamoDBClientType",
        table_name: str,
        partition: str = "CRASH",
    ):
        self._client = dynamo_client
        self._table = table_name
        self._partition = partition

    def count_reports(self) -> int:
        total = 0
        with _store_errors("count_reports", table=self._table):
            paginator = self._client.get_paginator("query")
            for page in paginator.paginate(
                TableName=self._table,
                KeyConditionExpression="#p = :p",
                ExpressionAttributeNames={"#p": "partition"},
                ExpressionAttributeValues={":p": {"S": self._partition}},
                Select="COUNT",
            ):
                total += page.get("Count", 0)
        return total

    def fetch_window(self, start_after_id: int, limit: int) -> list[Report]:
        """
        Returns up to *limit* reports with id > *start_after_id*. Keeps querying
        while DynamoDB stops early on its 1 MB page limit.
        """
        reports: list[Report] = []
        exclusive_start_key: dict[str, Any] | None = None

        with _store_errors("fetch_window", table=self._table, start_after_id=start_after_id):
            while len(reports) < limit:
                params: dict[str, Any] = {
                    "TableName": self._table,
                    "KeyConditionExpression": "#p = :p AND #id > :after",
                    "ExpressionAttributeNames": {"#p": "partition", "#id": "id"},
                    "ExpressionAttributeValues": {
                        ":p": {"S": self._partition},
                        ":after": {"N": str(start_after_id)},
                    },
                    "ScanIndexForward": True,
                    "ConsistentRead": True,
                    "Limit": limit - len(reports),
                }
                if exclusive_start_key:
                    params["ExclusiveStartKey"] = exclusive_start_key

                response = self._client.query(**params)
                reports.extend(
                    self._report_from_item(_deserialize(item))
                    for item in response.get("Items", [])
                )
                exclusive_start_key = response.get("LastEvaluatedKey")
                if not exclusive_start_key:
                    break

        return reports

    def set_bucket_references(self, assignments: Mapping[int, int]) -> None:
        """
        Writes back-references in transactions of up to 100 conditional updates.
        A report that already holds the same bucket id passes the condition,
        which makes replaying a window harmless.
        """
        report_ids = sorted(assignments)
        for start in range(0, len(report_ids), MAX_TRANSACTION_ITEMS):
            chunk = report_ids[start : start + MAX_TRANSACTION_ITEMS]
            actions = [
                {
                    "Update": {
                        "TableName": self._table,
                        "Key": {
                            "partition": {"S": self._partition},
                            "id": {"N": str(report_id)},
                        },
                        "UpdateExpression": "SET bucket_id = :b",
                        "ConditionExpression": (
                            "attribute_exists(#id) AND "
                            "(attribute_not_exists(bucket_id) OR bucket_id = :b)"
                        ),
                        "ExpressionAttributeNames": {"#id": "id"},
                        "ExpressionAttributeValues": {
                            ":b": {"N": str(assignments[report_id])}
                        },
                    }
                }
                for report_id in chunk
            ]
            with _store_errors("set_bucket_references", table=self._table):
                try:
                    self._client.transact_write_items(TransactItems=actions)
                except ClientError as e:
                    if _error_code(e) != "TransactionCanceledException":
                        raise
                    self._raise_for_cancelled_references(e, chunk)
            logger.debug(
                "Back-references written",
                extra={"first_report_id": chunk[0], "count": len(chunk)},
            )

    def _raise_for_cancelled_references(self, e: ClientError, chunk: list[int]) -> None:
        codes = _cancellation_codes(e)
        if any(code in _TRANSIENT_CANCELLATION_CODES for code in codes):
            raise TransientStoreError(
                "set_bucket_references",
                context={"table": self._table, "cancellation_reasons": codes},
            ) from e
        conflicting = [
            report_id
            for report_id, code in zip(chunk, codes)
            if code == "ConditionalCheckFailed"
        ]
        if conflicting:
            raise BackReferenceConflictError(conflicting) from e
        raise StoreError(
            "set_bucket_references",
            "transaction cancelled",
            context={"table": self._table, "cancellation_reasons": codes},
        ) from e

    @staticmethod
    def _report_from_item(item: dict[str, Any]) -> Report:
        return Report(
            id=int(item["id"]),
            product=item.get("product"),
            version=item.get("version"),
            build=item.get("build"),
            module=item.get("module"),
            offset=_optional_int(item.get("offset")),
            crash_date=_from_epoch_ms(item["crash_date"]),
            app_id=_optional_int(item.get("app_id")),
            bucket_id=_optional_int(item.get("bucket_id")),
        )


class DynamoBucketStore:
    """
    Buckets table holding three kinds of records under a string key `pk`:

    - ``BUCKET#<id>``: the bucket itself;
    - ``SIGNATURE#<signature key>``: unique index from signature to bucket id;
    - ``META#BUCKETS``: the highest bucket id ever inserted.

    All three are written in one transaction, so a signature can never map to
    two buckets even if two runs race.
    """

    META_KEY = "META#BUCKETS"

    def __init__(self, dynamo_client: "DynamoDBClientType", table_name: str):
        self._client = dynamo_client
        self._table = table_name

    @staticmethod
    def _bucket_key(bucket_id: int) -> dict[str, Any]:
        return {"pk": {"S": f"BUCKET#{bucket_id}"}}

    @staticmethod
    def _signature_key(signature: Signature) -> dict[str, Any]:
        return {"pk": {"S": f"SIGNATURE#{signature_key(signature)}"}}

    def find_by_signature(self, signature: Signature) -> Optional[Bucket]:
        with _store_errors("find_by_signature", table=self._table):
            response = self._client.get_item(
                TableName=self._table,
                Key=self._signature_key(signature),
                ConsistentRead=True,
            )
            index_item = response.get("Item")
            if not index_item:
                return None

            bucket_id = int(_deserialize(index_item)["bucket_id"])
            response = self._client.get_item(
                TableName=self._table,
                Key=self._bucket_key(bucket_id),
                ConsistentRead=True,
            )

        bucket_item = response.get("Item")
        if not bucket_item:
            raise StoreError(
                "find_by_signature",
                "signature index points at a missing bucket",
                context={"table": self._table, "bucket_id": bucket_id},
            )
        return self._bucket_from_item(_deserialize(bucket_item))

    def insert(self, bucket: Bucket) -> None:
        bucket_item = {**self._bucket_key(bucket.id), **_serialize(self._item_from_bucket(bucket))}
        index_item = {
            **self._signature_key(bucket.signature),
            "bucket_id": {"N": str(bucket.id)},
        }
        actions = [
            {
                "Put": {
                    "TableName": self._table,
                    "Item": bucket_item,
                    "ConditionExpression": "attribute_not_exists(pk)",
                }
            },
            {
                "Put": {
                    "TableName": self._table,
                    "Item": index_item,
                    "ConditionExpression": "attribute_not_exists(pk)",
                }
            },
            {
                "Update": {
                    "TableName": self._table,
                    "Key": {"pk": {"S": self.META_KEY}},
                    "UpdateExpression": "SET max_bucket_id = :id",
                    "ConditionExpression": (
                        "attribute_not_exists(max_bucket_id) OR max_bucket_id < :id"
                    ),
                    "ExpressionAttributeValues": {":id": {"N": str(bucket.id)}},
                }
            },
        ]

        with _store_errors("insert_bucket", table=self._table, bucket_id=bucket.id):
            try:
                self._client.transact_write_items(TransactItems=actions)
            except ClientError as e:
                if _error_code(e) != "TransactionCanceledException":
                    raise
                self._raise_for_cancelled_insert(e, bucket)

        logger.debug(
            "Bucket inserted",
            extra={"bucket_id": bucket.id, "signature": signature_key(bucket.signature)},
        )

    def _raise_for_cancelled_insert(self, e: ClientError, bucket: Bucket) -> None:
        codes = _cancellation_codes(e)
        context = {
            "table": self._table,
            "bucket_id": bucket.id,
            "cancellation_reasons": codes,
        }
        if any(code in _TRANSIENT_CANCELLATION_CODES for code in codes):
            raise TransientStoreError("insert_bucket", context=context) from e

        padded = codes + ["None"] * (3 - len(codes))
        bucket_code, index_code, meta_code = padded[:3]
        if index_code == "ConditionalCheckFailed":
            raise ConflictError(
                "signature already has a bucket",
                signature_conflict=True,
                context=context,
            ) from e
        if "ConditionalCheckFailed" in (bucket_code, meta_code):
            raise ConflictError(
                "bucket id already allocated",
                signature_conflict=False,
                context=context,
            ) from e
        raise StoreError("insert_bucket", "transaction cancelled", context=context) from e

    def increment_aggregate(self, bucket_id: int, timestamp: datetime) -> None:
        """
        One conditional update bumps the counters and moves the timestamp when
        the report is newer. If the stored timestamp is already later, that
        write is rejected as a whole and a counters-only update is issued.
        """
        ts = str(_to_epoch_ms(timestamp))
        with _store_errors("increment_aggregate", table=self._table, bucket_id=bucket_id):
            try:
                self._client.update_item(
                    TableName=self._table,
                    Key=self._bucket_key(bucket_id),
                    UpdateExpression=(
                        "ADD crash_count :one, unique_steps_count :one "
                        "SET last_crash_date = :ts"
                    ),
                    ConditionExpression="attribute_exists(pk) AND last_crash_date < :ts",
                    ExpressionAttributeValues={":one": {"N": "1"}, ":ts": {"N": ts}},
                )
                return
            except ClientError as e:
                if _error_code(e) != "ConditionalCheckFailedException":
                    raise

            try:
                self._client.update_item(
                    TableName=self._table,
                    Key=self._bucket_key(bucket_id),
                    UpdateExpression="ADD crash_count :one, unique_steps_count :one",
                    ConditionExpression="attribute_exists(pk)",
                    ExpressionAttributeValues={":one": {"N": "1"}},
                )
            except ClientError as e:
                if _error_code(e) != "ConditionalCheckFailedException":
                    raise
                raise StoreError(
                    "increment_aggregate",
                    "bucket does not exist",
                    context={"table": self._table, "bucket_id": bucket_id},
                ) from e

    def max_bucket_id(self) -> int:
        with _store_errors("max_bucket_id", table=self._table):
            response = self._client.get_item(
                TableName=self._table,
                Key={"pk": {"S": self.META_KEY}},
                ConsistentRead=True,
            )
        item = response.get("Item")
        if not item:
            return 0
        return int(_deserialize(item).get("max_bucket_id", 0))

    @staticmethod
    def _item_from_bucket(bucket: Bucket) -> dict[str, Any]:
        return {
            "id": bucket.id,
            "product": bucket.product,
            "version": bucket.version,
            "build": bucket.build,
            "module": bucket.module,
            "offset": bucket.offset,
            "crash_count": bucket.crash_count,
            "unique_steps_count": bucket.unique_steps_count,
            "last_crash_date": _to_epoch_ms(bucket.last_crash_date),
            "created": _to_epoch_ms(bucket.created),
            "name": bucket.name,
            "status": bucket.status,
            "parent_bucket_id": bucket.parent_bucket_id,
            "app_id": bucket.app_id,
        }

    @staticmethod
    def _bucket_from_item(item: dict[str, Any]) -> Bucket:
        return Bucket(
            id=int(item["id"]),
            product=item.get("product"),
            version=item.get("version"),
            build=item.get("build"),
            module=item.get("module"),
            offset=_optional_int(item.get("offset")),
            crash_count=int(item["crash_count"]),
            unique_steps_count=int(item["unique_steps_count"]),
            last_crash_date=_from_epoch_ms(item["last_crash_date"]),
            created=_from_epoch_ms(item["created"]),
            name=item.get("name", ""),
            status=int(item.get("status", 1)),
            parent_bucket_id=_optional_int(item.get("parent_bucket_id")),
            app_id=_optional_int(item.get("app_id")),
        )


class DynamoCheckpointStore:
    """Last fully flushed report id per bucketing job."""

    def __init__(self, dynamo_client: "DynamoDBClientType", table_name: str):
        self._client = dynamo_client
        self._table = table_name

    def load(self, job_name: str) -> Optional[int]:
        with _store_errors("load_checkpoint", table=self._table, job=job_name):
            response = self._client.get_item(
                TableName=self._table,
                Key={"job": {"S": job_name}},
                ConsistentRead=True,
            )
        item = response.get("Item")
        if not item:
            return None
        return int(_deserialize(item)["last_report_id"])

    def save(self, job_name: str, last_report_id: int) -> None:
        with _store_errors("save_checkpoint", table=self._table, job=job_name):
            self._client.put_item(
                TableName=self._table,
                Item={
                    "job": {"S": job_name},
                    "last_report_id": {"N": str(last_report_id)},
                    "updated_at": {"N": str(_to_epoch_ms(datetime.now(timezone.utc)))},
                },
            )
