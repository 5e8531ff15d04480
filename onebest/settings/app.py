"""Application settings powered by Pydantic BaseSettings."""

import logging
from pathlib import Path

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Centralized environment configuration.

    Every field can be set through an ``ONEBEST_``-prefixed environment
    variable, a ``.env`` file, or a YAML override file passed to
    :func:`load_settings`.
    """

    model_config = SettingsConfigDict(
        env_prefix="ONEBEST_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    db_path: Path = Field(default=Path("state/onebest.sqlite"))

    # Ranking
    max_list_length: int = Field(default=5, ge=1)
    lock_retry_attempts: int = Field(default=3, ge=1)

    # Queue
    queue_name: str = Field(default="ranking-events", min_length=1)
    visibility_timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    batch_size: int = Field(default=10, ge=1, le=10)
    max_batch_wait_seconds: float = Field(default=30.0, ge=0)
    poll_interval_seconds: float = Field(default=0.5, gt=0)
    dlq_retention_days: int = Field(default=14, ge=1)

    # Workers
    worker_count: int = Field(default=4, ge=1)

    # Producer
    event_source: str = Field(default="onebest.api", min_length=1)
    event_version: str = Field(default="1.0", min_length=1)

    # Logging
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)

    @property
    def log_level_value(self) -> int:
        """Numeric logging level for ``configure_logging``."""
        value = logging.getLevelName(self.log_level.upper())
        return value if isinstance(value, int) else logging.INFO


def get_settings() -> AppSettings:
    """Get a settings instance."""
    return AppSettings()


def load_settings(config_path: Path | None = None) -> AppSettings:
    """Load settings, applying an optional YAML override file.

    Values from the YAML file take precedence over environment variables.

    Args:
        config_path: Optional path to a YAML mapping of setting names.

    Returns:
        Validated settings.

    Raises:
        ValueError: If the YAML file does not contain a mapping.
    """
    if config_path is None:
        return AppSettings()

    parsed = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(parsed, dict):
        msg = f"Settings file must contain a mapping: {config_path}"
        raise ValueError(msg)

    return AppSettings(**parsed)
