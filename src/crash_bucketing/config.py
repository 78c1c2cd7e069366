import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

SIGNATURE_FIELDS = ("product", "version", "build", "module", "offset")


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Application configuration loaded from environment variables."""

    # --- Required Variables ---
    reports_table: str
    buckets_table: str
    service_name: str
    environment: str

    # --- Optional Variables with Defaults ---
    checkpoint_table: str | None
    report_partition: str
    job_name: str
    window_size: int
    bucket_id_floor: int
    log_level: str
    required_signature_fields: tuple[str, ...]

    # --- Error Handling Configuration ---
    max_window_attempts: int
    retry_backoff_seconds: float
    store_timeout_seconds: int
    timeout_guard_threshold_seconds: int

    # --- Derived Properties ---
    @property
    def timeout_guard_threshold_ms(self) -> int:
        return self.timeout_guard_threshold_seconds * 1000

    @property
    def checkpoints_enabled(self) -> bool:
        return bool(self.checkpoint_table)

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables, performing validation and type casting.
        Fails fast with a ConfigurationError if anything is invalid.
        """
        try:
            # --- Handle required string variables ---
            reports_table = os.environ["REPORTS_TABLE_NAME"]
            buckets_table = os.environ["BUCKETS_TABLE_NAME"]
            service_name = os.environ["SERVICE_NAME"]
            environment = os.environ["ENVIRONMENT"]

            checkpoint_table = os.getenv("CHECKPOINT_TABLE_NAME") or None
            report_partition = os.getenv("REPORT_PARTITION", "CRASH")
            job_name = os.getenv("JOB_NAME", "crash-bucketing")

            # --- Handle optional and numeric variables with validation ---
            window_size = int(os.getenv("WINDOW_SIZE", "1000"))
            if window_size <= 0:
                raise ValueError("WINDOW_SIZE must be a positive integer.")

            bucket_id_floor = int(os.getenv("BUCKET_ID_FLOOR", "10000"))
            if bucket_id_floor <= 0:
                raise ValueError("BUCKET_ID_FLOOR must be a positive integer.")

            # --- Handle special-case variables like log level ---
            log_level = os.getenv("LOG_LEVEL", "INFO").upper()
            allowed_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
            if log_level not in allowed_log_levels:
                raise ValueError(
                    f"LOG_LEVEL must be one of {allowed_log_levels}, not '{log_level}'"
                )

            raw_fields = os.getenv("REQUIRED_SIGNATURE_FIELDS", "")
            required_signature_fields = tuple(
                f.strip().lower() for f in raw_fields.split(",") if f.strip()
            )
            unknown = set(required_signature_fields) - set(SIGNATURE_FIELDS)
            if unknown:
                raise ValueError(
                    f"REQUIRED_SIGNATURE_FIELDS contains unknown fields: {sorted(unknown)}"
                )

            # --- Handle error handling configuration ---
            max_window_attempts = int(os.getenv("MAX_WINDOW_ATTEMPTS", "3"))
            if max_window_attempts <= 0:
                raise ValueError("MAX_WINDOW_ATTEMPTS must be a positive integer.")

            retry_backoff_seconds = float(os.getenv("RETRY_BACKOFF_SECONDS", "0.5"))
            if retry_backoff_seconds < 0:
                raise ValueError("RETRY_BACKOFF_SECONDS must not be negative.")

            store_timeout_seconds = int(os.getenv("STORE_TIMEOUT_SECONDS", "10"))
            if store_timeout_seconds <= 0:
                raise ValueError("STORE_TIMEOUT_SECONDS must be a positive integer.")

            timeout_guard_threshold_seconds = int(
                os.getenv("TIMEOUT_GUARD_THRESHOLD_SECONDS", "30")
            )
            if timeout_guard_threshold_seconds <= 0:
                raise ValueError(
                    "TIMEOUT_GUARD_THRESHOLD_SECONDS must be a positive integer."
                )

        except KeyError as e:
            raise ConfigurationError(
                f"Missing required environment variable: {e.args[0]}"
            ) from e
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid value for an environment variable: {e}"
            ) from e

        return cls(
            reports_table=reports_table,
            buckets_table=buckets_table,
            service_name=service_name,
            environment=environment,
            checkpoint_table=checkpoint_table,
            report_partition=report_partition,
            job_name=job_name,
            window_size=window_size,
            bucket_id_floor=bucket_id_floor,
            log_level=log_level,
            required_signature_fields=required_signature_fields,
            max_window_attempts=max_window_attempts,
            retry_backoff_seconds=retry_backoff_seconds,
            store_timeout_seconds=store_timeout_seconds,
            timeout_guard_threshold_seconds=timeout_guard_threshold_seconds,
        )


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """
    Loads the application configuration from environment variables.
    The result is cached, so the environment is only read on the first call.
    """
    logger.info("Loading application configuration from environment...")
    return AppConfig.load_from_env()
