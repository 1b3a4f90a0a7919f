"""Timeout and polling settings for pgconvert operations.

Provides centralized timeout configuration using Pydantic BaseSettings
with environment variable support for operational tuning.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineTimeoutSettings(BaseSettings):
    """External command timeout and readiness polling configuration."""

    command_timeout: float = Field(
        120, alias="PGCONVERT_COMMAND_TIMEOUT", description="Short command timeout in seconds"
    )

    service_timeout: float = Field(
        120,
        alias="PGCONVERT_SERVICE_TIMEOUT",
        description="Service stop/start command timeout in seconds",
    )

    extract_timeout: float = Field(
        7200,
        alias="PGCONVERT_EXTRACT_TIMEOUT",
        description="Decompress and extract timeout in seconds",
    )

    dump_timeout: float = Field(
        14400, alias="PGCONVERT_DUMP_TIMEOUT", description="Per-dump timeout in seconds"
    )

    archive_timeout: float = Field(
        7200, alias="PGCONVERT_ARCHIVE_TIMEOUT", description="Packaging timeout in seconds"
    )

    poll_interval: float = Field(
        1.0, alias="PGCONVERT_POLL_INTERVAL", description="Initial readiness poll delay"
    )

    poll_max_interval: float = Field(
        5.0, alias="PGCONVERT_POLL_MAX_INTERVAL", description="Maximum readiness poll delay"
    )

    poll_backoff: float = Field(
        1.5, alias="PGCONVERT_POLL_BACKOFF", description="Readiness poll backoff multiplier"
    )

    max_polls: int = Field(
        480, alias="PGCONVERT_MAX_POLLS", description="Polls before a service is declared failed"
    )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)


def load_timeout_settings() -> PipelineTimeoutSettings:
    """Read timeout settings from the environment and ``.env``."""
    return PipelineTimeoutSettings()
