# src/crash_bucketing/exceptions.py

"""
Shared custom exceptions for the Crash Bucketing service.

Centralizing exception definitions in a separate module prevents circular
import errors between the stores, the resolver and the orchestrator, which all
need to raise or catch them.

Exception Hierarchy:
- CrashBucketingError (base)
  - RetryableError (can be retried)
    - TransientStoreError
  - NonRetryableError (should not be retried)
    - ValidationError
      - MalformedReportError
    - FatalConfigurationError
      - ConfigurationError
    - StoreError
      - ConflictError
      - BackReferenceConflictError
  - WindowProcessingError (carries the retryability of its cause)
"""

from typing import Any, Dict, Optional


class CrashBucketingError(Exception):
    """Base exception for all Crash Bucketing service errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = dict(context) if context else {}  # Copy context to prevent mutation
        self.correlation_id = correlation_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "retryable": is_retryable_error(self),
        }


class RetryableError(CrashBucketingError):
    """Base class for errors that can be retried."""
    pass


class NonRetryableError(CrashBucketingError):
    """Base class for errors that should not be retried."""
    pass


# === Store Errors ===

class TransientStoreError(RetryableError):
    """Raised for timeouts, throttling and connection loss against a store."""

    def __init__(self, operation: str, **kwargs):
        message = f"Transient store error during: {operation}"
        context = {}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        context.update({"operation": operation})
        kwargs.setdefault("error_code", "TRANSIENT_STORE_ERROR")
        super().__init__(message, context=context, **kwargs)


class StoreError(NonRetryableError):
    """Raised for store failures that retrying will not fix."""

    def __init__(self, operation: str, reason: str, **kwargs):
        message = f"Store operation '{operation}' failed: {reason}"
        context = {}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        context.update({"operation": operation, "reason": reason})
        kwargs.setdefault("error_code", "STORE_ERROR")
        super().__init__(message, context=context, **kwargs)


class ConflictError(StoreError):
    """
    Raised when a bucket insert collides with a record that already exists,
    either for the same signature or for the same bucket id.
    """

    def __init__(self, reason: str, signature_conflict: bool = True, **kwargs):
        self.signature_conflict = signature_conflict
        kwargs.setdefault("error_code", "BUCKET_CONFLICT")
        super().__init__("insert_bucket", reason, **kwargs)


class BackReferenceConflictError(StoreError):
    """Raised when a report already references a different bucket."""

    def __init__(self, report_ids: list[int], **kwargs):
        kwargs.setdefault("error_code", "BACK_REFERENCE_CONFLICT")
        context = {"report_ids": report_ids}
        super().__init__(
            "set_bucket_references",
            "report already assigned to another bucket",
            context=context,
            **kwargs,
        )


# === Validation Errors ===

class ValidationError(NonRetryableError):
    """Base class for validation errors."""
    pass


class MalformedReportError(ValidationError):
    """Raised when a report lacks a signature field the domain requires."""

    def __init__(self, report_id: int, missing_fields: list[str], **kwargs):
        message = f"Report {report_id} is missing required signature fields: {', '.join(missing_fields)}"
        context = {"report_id": report_id, "missing_fields": missing_fields}
        super().__init__(message, error_code="MALFORMED_REPORT", context=context, **kwargs)
        self.report_id = report_id


# === Configuration Errors ===

class FatalConfigurationError(NonRetryableError):
    """Raised when a run cannot start: stores unreachable or the id counter cannot be seeded."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "FATAL_CONFIGURATION_ERROR")
        super().__init__(message, **kwargs)


class ConfigurationError(FatalConfigurationError):
    """Raised when there's an error in the application configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


# === Orchestration Errors ===

class WindowProcessingError(CrashBucketingError):
    """
    Raised by the orchestrator when a window could not be completed. The
    context carries the window bounds so the caller can resume.
    """

    def __init__(
        self,
        window_index: int,
        start_after_id: int,
        cause: CrashBucketingError,
        attempts: int,
        **kwargs,
    ):
        message = f"Window {window_index} (after report {start_after_id}) failed: {cause.message}"
        context = {
            "window_index": window_index,
            "start_after_id": start_after_id,
            "error_kind": cause.__class__.__name__,
            "attempts": attempts,
            "cause": cause.context,
        }
        super().__init__(message, error_code="WINDOW_FAILED", context=context, **kwargs)
        self.cause = cause
        # Partial RunSummary, attached by the orchestrator.
        self.summary: Any = None


# === Utility Functions ===

def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, WindowProcessingError):
        return is_retryable_error(error.cause)
    return isinstance(error, RetryableError)


def get_error_context(error: Exception) -> Dict[str, Any]:
    """Extract error context for logging."""
    if isinstance(error, CrashBucketingError):
        return error.to_dict()
    else:
        return {
            "error_type": error.__class__.__name__,
            "message": str(error),
            "retryable": False  # Unknown errors default to non-retryable
        }
