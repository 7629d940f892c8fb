"""Configuration management for the transfer pipeline."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from syncronicity.backoff import BackoffPolicy
from syncronicity.exceptions import ConfigurationError
from syncronicity.session import SourceRef
from syncronicity.stage import normalize_stage_ref

MIB = 1024 * 1024

SUPPORTED_COMPRESSION = {"snappy", "zstd", "gzip", "lz4", "brotli", "none"}


class TransferConfig(BaseSettings):
    """Configuration for one BigQuery to Snowflake transfer.

    Instances are frozen: a running transfer always sees the values it started with.
    """

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        env_file="config.env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Source (BigQuery)
    project_id: str = Field(..., min_length=1, description="GCP project that owns the source table")
    dataset: str = Field(..., min_length=1, description="BigQuery dataset of the source table")
    table: str = Field(..., min_length=1, description="BigQuery source table")
    billing_project: str | None = Field(default=None, description="Project billed for the read session")
    service_account_file: Path | None = Field(default=None)
    selected_fields: list[str] = Field(default_factory=list)
    row_restriction: str | None = Field(default=None)

    # Destination (Snowflake)
    snowflake_account: str = Field(...)
    snowflake_user: str = Field(...)
    snowflake_password: str | None = Field(default=None)
    snowflake_role: str | None = Field(default=None)
    snowflake_warehouse: str | None = Field(default=None)
    snowflake_database: str | None = Field(default=None)
    snowflake_schema: str | None = Field(default=None)
    snowflake_stage: str = Field(..., description="Stage the Parquet files are PUT into")
    destination_table: str = Field(..., description="Table loaded by COPY INTO")

    # Parallelism
    max_stream_count: int = Field(default=4, ge=1, le=1000)
    writer_concurrency: int = Field(default=4, ge=1, le=64)
    upload_concurrency: int = Field(default=8, ge=1, le=99)

    # Files
    batch_size_bytes: int = Field(default=64 * MIB, ge=1)
    compression: str = Field(default="snappy")
    parquet_version: Literal["1.0", "2.4", "2.6"] = Field(default="2.6")
    data_dir: Path = Field(default=Path("data"))

    # Policies
    load_mode: Literal["end", "per_file"] = Field(default="end")
    empty_session_policy: Literal["fatal", "empty"] = Field(default="fatal")
    transfer_timeout_seconds: float = Field(default=1800.0, gt=0)

    # Retry (read path)
    retry_initial_delay: float = Field(default=0.1, gt=0)
    retry_multiplier: float = Field(default=1.3, ge=1.0)
    retry_max_delay: float = Field(default=60.0, gt=0)
    retry_max_attempts: int = Field(default=10, ge=1, le=100)

    # Transfer state snapshot
    state_dir: Path = Field(default=Path("state"))
    state_file_name: str = Field(default="transfer_state.json")

    # Logging
    log_level: str = Field(default="INFO")

    @field_validator("project_id", "dataset", "table")
    @classmethod
    def validate_source_part(cls, v: str) -> str:
        v = v.strip()
        if not v or "/" in v:
            raise ValueError(f"Invalid source table component: {v!r}")
        return v

    @field_validator("snowflake_stage")
    @classmethod
    def validate_stage(cls, v: str) -> str:
        try:
            return normalize_stage_ref(v)
        except ConfigurationError as e:
            raise ValueError(e.message) from e

    @field_validator("compression")
    @classmethod
    def validate_compression(cls, v: str) -> str:
        v = v.lower()
        if v not in SUPPORTED_COMPRESSION:
            raise ValueError(f"COMPRESSION must be one of {sorted(SUPPORTED_COMPRESSION)}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v

    @model_validator(mode="after")
    def validate_retry_bounds(self) -> "TransferConfig":
        if self.retry_max_delay < self.retry_initial_delay:
            raise ValueError(
                f"RETRY_MAX_DELAY ({self.retry_max_delay}) must be >= RETRY_INITIAL_DELAY ({self.retry_initial_delay})"
            )
        return self

    @property
    def source_ref(self) -> SourceRef:
        try:
            return SourceRef(project=self.project_id, dataset=self.dataset, table=self.table)
        except ValidationError as e:
            raise ConfigurationError(
                "Invalid source table reference",
                details={"project_id": self.project_id, "dataset": self.dataset, "table": self.table},
            ) from e

    @property
    def parent_project(self) -> str:
        return self.billing_project or self.project_id

    @property
    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial_delay=self.retry_initial_delay,
            multiplier=self.retry_multiplier,
            max_delay=self.retry_max_delay,
            max_attempts=self.retry_max_attempts,
        )

    @property
    def allow_empty_session(self) -> bool:
        return self.empty_session_policy == "empty"

    @property
    def parquet_compression(self) -> str | None:
        return None if self.compression == "none" else self.compression

    @property
    def state_file(self) -> Path:
        return self.state_dir / self.state_file_name


def get_config(env_file: str | None = "config.env", **overrides) -> TransferConfig:
    """Load configuration from environment, env file and explicit overrides.

    Overrides set to ``None`` are ignored so CLI flags that were not given
    fall back to the environment.
    """
    try:
        if env_file:
            load_dotenv(env_file)
        values = {k: v for k, v in overrides.items() if v is not None}
        return TransferConfig(**values, _env_file=env_file)
    except ValidationError as e:
        raise ConfigurationError(f"Failed to load configuration: {e}") from e
