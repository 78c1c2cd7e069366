"""
The Lambda entry point for the Crash Bucketing service.

This module is responsible for:
1.  Initializing and configuring AWS Lambda Powertools (Logger, Tracer and
    Metrics) and routing the library modules' loggers through them.
2.  Building the DynamoDB clients and store adapters from the environment.
3.  Running the bucketing orchestrator with a guard that stops at a window
    boundary before the Lambda timeout.
4.  Turning the outcome into a response and CloudWatch metrics: a run summary
    on success, or a clear abort reason with the window bounds to resume from.
"""

from typing import Any, Callable, Optional

import boto3
from aws_lambda_powertools import Logger, Metrics, Tracer
from aws_lambda_powertools.logging.utils import copy_config_to_registered_loggers
from aws_lambda_powertools.metrics import MetricUnit
from aws_lambda_powertools.utilities.typing import LambdaContext
from botocore.config import Config

from .clients import DynamoBucketStore, DynamoCheckpointStore, DynamoReportStore
from .config import AppConfig, get_config
from .exceptions import (
    FatalConfigurationError,
    WindowProcessingError,
    get_error_context,
    is_retryable_error,
)
from .orchestrator import BucketingOrchestrator
from .schemas import RunSummary

# --- Global & Reusable Components ---
CONFIG = get_config()

logger = Logger(service=CONFIG.service_name, level=CONFIG.log_level)
tracer = Tracer(service=CONFIG.service_name)
metrics = Metrics(namespace="CrashBucketing", service=CONFIG.service_name)

copy_config_to_registered_loggers(source_logger=logger, include={"crash_bucketing"})


def build_dynamodb_client(config: AppConfig):
    """DynamoDB client whose calls give up after the configured timeout."""
    boto_config = Config(
        connect_timeout=config.store_timeout_seconds,
        read_timeout=config.store_timeout_seconds,
        retries={"max_attempts": 2, "mode": "standard"},
    )
    return boto3.client("dynamodb", config=boto_config)


def build_orchestrator(
    config: AppConfig,
    dynamo_client: Any,
    should_stop: Optional[Callable[[], bool]] = None,
) -> BucketingOrchestrator:
    checkpoint_store = (
        DynamoCheckpointStore(dynamo_client, config.checkpoint_table)
        if config.checkpoints_enabled
        else None
    )
    kwargs: dict[str, Any] = {}
    if should_stop is not None:
        kwargs["should_stop"] = should_stop
    return BucketingOrchestrator(
        report_store=DynamoReportStore(
            dynamo_client, config.reports_table, partition=config.report_partition
        ),
        bucket_store=DynamoBucketStore(dynamo_client, config.buckets_table),
        window_size=config.window_size,
        checkpoint_store=checkpoint_store,
        job_name=config.job_name,
        bucket_id_floor=config.bucket_id_floor,
        required_signature_fields=config.required_signature_fields,
        max_window_attempts=config.max_window_attempts,
        retry_backoff_seconds=config.retry_backoff_seconds,
        **kwargs,
    )


def _publish_metrics(summary: RunSummary) -> None:
    metrics.add_metric(name="ReportsProcessed", unit=MetricUnit.Count, value=summary.processed)
    metrics.add_metric(name="BucketsCreated", unit=MetricUnit.Count, value=summary.created)
    metrics.add_metric(name="BucketsReused", unit=MetricUnit.Count, value=summary.reused)
    metrics.add_metric(name="ReportsSkipped", unit=MetricUnit.Count, value=summary.skipped)
    metrics.add_metric(name="WindowsProcessed", unit=MetricUnit.Count, value=summary.windows)


@logger.inject_lambda_context()
@tracer.capture_lambda_handler
@metrics.log_metrics(capture_cold_start_metric=True)
def handler(event: dict, context: LambdaContext) -> dict[str, Any]:
    """
    Runs one bucketing pass. The event may carry ``start_after_id`` to force a
    starting position; otherwise the run resumes from the saved checkpoint.
    """
    metrics.add_dimension("environment", CONFIG.environment)

    start_after_id = event.get("start_after_id") if event else None
    if start_after_id is not None:
        start_after_id = int(start_after_id)

    def remaining_time_exhausted() -> bool:
        return context.get_remaining_time_in_millis() < CONFIG.timeout_guard_threshold_ms

    orchestrator = build_orchestrator(
        CONFIG, build_dynamodb_client(CONFIG), should_stop=remaining_time_exhausted
    )

    try:
        summary = orchestrator.run(start_after_id=start_after_id)
    except FatalConfigurationError as e:
        metrics.add_metric(name="RunsAborted", unit=MetricUnit.Count, value=1)
        logger.error(f"Bucketing run aborted before processing: {e}", extra={"error": get_error_context(e)})
        return {"status": "aborted", "reason": e.message, "error": e.to_dict()}
    except WindowProcessingError as e:
        metrics.add_metric(name="WindowFailures", unit=MetricUnit.Count, value=1)
        log = logger.warning if is_retryable_error(e) else logger.error
        log(f"Bucketing run failed: {e}", extra={"error": get_error_context(e)})
        response: dict[str, Any] = {
            "status": "failed",
            "reason": e.message,
            "error": e.to_dict(),
        }
        if e.summary is not None:
            _publish_metrics(e.summary)
            response["summary"] = e.summary.model_dump()
        return response

    _publish_metrics(summary)
    status = "stopped" if summary.stopped_early else "completed"
    logger.info(
        "Bucketing run %s",
        status,
        extra={"processed": summary.processed, "buckets_created": summary.created},
    )
    return {"status": status, "summary": summary.model_dump()}
