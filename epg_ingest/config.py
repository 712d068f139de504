from pathlib import Path
import logging

from croniter import croniter
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


class IngestSettings(BaseSettings):
    """Application settings loaded from environment variables.

    Validates configuration at startup to catch misconfiguration early.
    """

    database_path: str = "./data/epg.db"
    log_level: str = "INFO"

    # Program window around "now"
    epg_window_hours_before: int = 12
    epg_window_hours_after: int = 36
    epg_missing_stop_minutes: int = 60  # End fallback when <programme> has no usable stop

    # Batched writer
    epg_insert_threshold: int = 500
    epg_max_queue_size: int = 2000
    epg_min_flush_interval_ms: int = 250
    epg_progress_interval_bytes: int = 100_000
    epg_read_chunk_size: int = 65536

    # Refresh scheduling
    epg_sync_cron: str = "0 */4 * * *"  # Every 4 hours
    epg_sync_misfire_grace_sec: int = 3600
    epg_refresh_min_age_minutes: int = 30

    # Source download
    epg_http_timeout_sec: float = 120.0
    epg_http_max_retries: int = 3
    epg_http_user_agent: str = "epg-ingest/0.1"

    # Storage
    epg_store_lock_retries: int = 5
    epg_store_lock_backoff_ms: int = 75

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("database_path")
    @classmethod
    def validate_database_path(cls, value: str) -> str:
        """Validate database path is accessible."""
        path = Path(value)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            return value
        except (OSError, PermissionError) as exc:
            raise ValueError(f"Cannot access database path '{value}': {exc}") from exc

    @field_validator("epg_window_hours_before", "epg_window_hours_after")
    @classmethod
    def validate_window_hours(cls, value: int, info) -> int:
        """Validate window bounds are non-negative and reasonable."""
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        if value > 24 * 14:
            raise ValueError(f"{info.field_name} must be <= 336 hours")
        return value

    @field_validator(
        "epg_missing_stop_minutes",
        "epg_insert_threshold",
        "epg_max_queue_size",
        "epg_progress_interval_bytes",
        "epg_read_chunk_size",
        "epg_store_lock_retries",
    )
    @classmethod
    def validate_positive_ints(cls, value: int, info) -> int:
        """Ensure sizes and counts are positive integers."""
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator(
        "epg_min_flush_interval_ms",
        "epg_sync_misfire_grace_sec",
        "epg_refresh_min_age_minutes",
        "epg_http_max_retries",
        "epg_store_lock_backoff_ms",
    )
    @classmethod
    def validate_non_negative_ints(cls, value: int, info) -> int:
        """Ensure delays and retry counts are non-negative."""
        if value < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return value

    @field_validator("epg_http_timeout_sec")
    @classmethod
    def validate_http_timeout(cls, value: float) -> float:
        """Validate HTTP timeout (seconds)."""
        if value <= 0:
            raise ValueError("epg_http_timeout_sec must be > 0")
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate log level name."""
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Invalid log level '{value}'")
        return level

    @field_validator("epg_sync_cron")
    @classmethod
    def validate_cron_expression(cls, value: str) -> str:
        """Validate cron expression is valid."""
        try:
            croniter(value)
            return value
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc

    @model_validator(mode="after")
    def validate_ingestion_configuration(self):
        """Validate cross-field configuration."""
        if self.epg_window_hours_before == 0 and self.epg_window_hours_after == 0:
            raise ValueError(
                "At least one of epg_window_hours_before or epg_window_hours_after must be > 0"
            )

        if self.epg_insert_threshold > self.epg_max_queue_size:
            logger.warning(
                "epg_insert_threshold (%s) exceeds epg_max_queue_size (%s); "
                "flushes will be driven by the queue limit",
                self.epg_insert_threshold,
                self.epg_max_queue_size,
            )

        return self

    def __init__(self, **data):
        """Initialize settings and log configuration."""
        super().__init__(**data)

        logger.info("Configuration loaded:")
        logger.info("  Database: %s", self.database_path)
        logger.info(
            "  Program Window: -%sh / +%sh",
            self.epg_window_hours_before,
            self.epg_window_hours_after,
        )
        logger.info("  Missing Stop Fallback: %s minutes", self.epg_missing_stop_minutes)
        logger.info("  Insert Threshold: %s", self.epg_insert_threshold)
        logger.info("  Max Queue Size: %s", self.epg_max_queue_size)
        logger.info("  Min Flush Interval: %sms", self.epg_min_flush_interval_ms)
        logger.info("  Progress Interval: %s bytes", self.epg_progress_interval_bytes)
        logger.info("  Sync Schedule: %s", self.epg_sync_cron)
        logger.info("  HTTP Timeout: %ss (max retries: %s)", self.epg_http_timeout_sec, self.epg_http_max_retries)


settings = IngestSettings()


def setup_logging() -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Per-request and per-job chatter from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler.executors.default").setLevel(logging.WARNING)
