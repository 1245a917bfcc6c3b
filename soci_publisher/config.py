"""Runtime configuration: env-driven.

Reads from a .env file and SOCI_PUBLISHER_* environment variables. The AWS
region override is read from the standard ``AWS_REGION`` variable.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PublisherConfig(BaseSettings):
    """Publisher configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export SOCI_PUBLISHER_SCRATCH_ROOT=/mnt/scratch
        export SOCI_PUBLISHER_LOG_LEVEL=DEBUG
        export AWS_REGION=eu-west-1
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SOCI_PUBLISHER_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Scratch storage
    scratch_root: Path = Path("/tmp")
    workspace_prefix: str = "soci-"

    log_level: str = "INFO"

    # Registry transport
    registry_timeout_seconds: float = 60.0
    chunk_size: int = 1024 * 1024

    # Takes precedence over the request region for credential and endpoint
    # resolution.
    aws_region_override: str | None = Field(
        default=None,
        validation_alias=AliasChoices("AWS_REGION", "SOCI_PUBLISHER_AWS_REGION_OVERRIDE"),
    )

    # Lambda: stop this many seconds before the invocation deadline
    cancel_margin_seconds: float = 10.0

    def resolve_region(self, region: str) -> str:
        """Return the region used for AWS API calls."""
        return self.aws_region_override or region


# Module-level singleton: import as `from soci_publisher.config import config`
config = PublisherConfig()
