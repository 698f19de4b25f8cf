"""Application configuration via Pydantic Settings.

All configuration is driven by environment variables. Missing required variables
raise a ``ValidationError`` at startup so misconfigured deployments fail fast.
Command-line flags (see :mod:`redactstream.__main__`) are applied on top of the
environment as keyword overrides.

Usage::

    from redactstream.config import get_settings

    settings = get_settings()
    print(settings.bucket_url)

The ``get_settings`` function is cached with ``functools.lru_cache``. To override
settings in tests, construct :class:`Settings` directly with keyword arguments
or set the relevant environment variables before calling ``get_settings()`` for
the first time.
"""
from __future__ import annotations

import functools
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_location(value: str) -> bool:
    if value.startswith("s3://"):
        return bool(value[len("s3://"):].partition("/")[0])
    return "://" not in value and bool(value.strip())


class Settings(BaseSettings):
    """redactstream runtime settings.

    Environment variables are read case-insensitively. A ``.env`` file in the
    working directory is loaded automatically when present.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Redaction service
    project_id: str = Field(
        ...,
        min_length=1,
        description="GCP project that owns the DLP quota and templates",
    )
    deidentify_template_name: str = Field(
        ...,
        description="Full resource name of the DLP de-identify template",
    )
    inspect_template_name: str = Field(
        ...,
        description="Full resource name of the DLP inspect template",
    )
    dlp_location: str = Field(
        default="global",
        description="DLP processing location, 'global' or a region such as europe-west2",
    )

    # Input / output
    bucket_url: str = Field(
        ...,
        description="Input file pattern, e.g. s3://bucket/incoming/*.txt or /data/in/*.txt",
    )
    output_path: str = Field(
        ...,
        description="Destination root, e.g. s3://bucket/redacted or /data/out",
    )
    output_naming: Literal["key", "windowed"] = Field(
        default="key",
        description="'key' writes <file>.txt; 'windowed' adds window bounds to the shard name",
    )

    # Pipeline tuning
    poll_interval_seconds: float = Field(default=300.0, gt=0)
    batch_size: int = Field(
        default=51200,
        ge=1,
        description="Read buffer size in bytes; each chunk holds at most this many bytes",
    )
    window_seconds: float = Field(default=60.0, gt=0)
    fire_delay_seconds: float = Field(default=0.0, ge=0)
    allowed_lateness_seconds: float = Field(default=0.0, ge=0)
    abort_on_open_error: bool = Field(
        default=False,
        description="Halt the whole run when an input file cannot be opened",
    )

    # Retry / timeout policy
    redaction_max_retries: int = Field(default=3, ge=0)
    redaction_timeout_seconds: float = Field(default=30.0, gt=0)
    write_max_retries: int = Field(default=3, ge=0)
    write_timeout_seconds: float = Field(default=60.0, gt=0)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)

    # Worker pools
    reader_workers: int = Field(default=4, ge=1)
    redaction_workers: int = Field(default=8, ge=1)
    writer_workers: int = Field(default=2, ge=1)
    queue_size: int = Field(default=256, ge=1)

    # AWS (input bucket)
    aws_region: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    s3_endpoint_url: Optional[str] = None

    # Observability
    metrics_port: Optional[int] = Field(
        default=None,
        ge=1,
        le=65535,
        description="Expose Prometheus metrics on this port when set",
    )
    log_level: str = Field(default="INFO")

    @field_validator("bucket_url", "output_path")
    @classmethod
    def validate_location(cls, v: str) -> str:
        if not _is_location(v):
            raise ValueError("must be an s3:// URL or a local filesystem path")
        return v

    @field_validator("deidentify_template_name")
    @classmethod
    def validate_deidentify_template(cls, v: str) -> str:
        if "/deidentifyTemplates/" not in v:
            raise ValueError(
                "deidentify_template_name must be a full resource name, "
                "e.g. projects/<id>/deidentifyTemplates/<name>"
            )
        return v

    @field_validator("inspect_template_name")
    @classmethod
    def validate_inspect_template(cls, v: str) -> str:
        if "/inspectTemplates/" not in v:
            raise ValueError(
                "inspect_template_name must be a full resource name, "
                "e.g. projects/<id>/inspectTemplates/<name>"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached application settings singleton.

    The first call reads environment variables (and ``.env``). Subsequent calls
    return the cached instance. Clear the cache with ``get_settings.cache_clear()``
    between tests.
    """
    return Settings()
