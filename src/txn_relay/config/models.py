"""Pydantic configuration models for the relay."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

_IDENTIFIER = re.compile(r"^[a-zA-Z_]\w*$")
# Optionally schema-qualified, e.g. "transaction" or "public.transaction"
_QUALIFIED_IDENTIFIER = re.compile(r"^[a-zA-Z_]\w*(\.[a-zA-Z_]\w*)?$")


class SslMode(StrEnum):
    """libpq ``sslmode`` values."""

    DISABLE = "disable"
    ALLOW = "allow"
    PREFER = "prefer"
    REQUIRE = "require"
    VERIFY_CA = "verify-ca"
    VERIFY_FULL = "verify-full"


class WriteErrorPolicy(StrEnum):
    """What the relay does when a single event cannot be mirrored."""

    STOP = "stop"
    SKIP = "skip"


class SourceTables(BaseModel):
    """The three source tables recording a transaction lifecycle."""

    start: str = "transaction_start"
    stop: str = "transaction_stop"
    stop_failed: str = "transaction_stop_failed"

    @field_validator("start", "stop", "stop_failed")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        if not _IDENTIFIER.match(v):
            msg = f"Source table '{v}' is not a plain table name"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def check_distinct(self) -> Self:
        """A table can drive only one lifecycle transition."""
        names = [self.start, self.stop, self.stop_failed]
        if len(set(names)) != len(names):
            msg = f"Source tables must be distinct, got {names}"
            raise ValueError(msg)
        return self


class SourceConfig(BaseModel):
    """MySQL source: binlog stream and baseline position query."""

    host: str = "localhost"
    port: int = Field(default=3306, ge=1, le=65535)
    database: str
    username: str = "root"
    password: SecretStr = SecretStr("")
    tables: SourceTables = SourceTables()
    # Must be unique across all MySQL replicas in the topology.
    server_id: int = Field(default=100, ge=1)
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    # Server heartbeat on the replication connection; an idle stream still
    # wakes the reader this often, and a silent one is detected after three.
    heartbeat_seconds: float = Field(default=5.0, gt=0)
    # Lets events following a binlog rotation through the replay filter.
    rotation_aware: bool = False

    @property
    def read_timeout_seconds(self) -> float:
        return self.heartbeat_seconds * 3


class DestinationConfig(BaseModel):
    """PostgreSQL destination holding the mirrored transaction rows."""

    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str
    username: str = "postgres"
    password: SecretStr = SecretStr("")
    sslmode: SslMode = SslMode.DISABLE
    target_table: str = "transaction"
    pool_min_size: int = Field(default=1, ge=1)
    pool_max_size: int = Field(default=2, ge=1)
    connect_timeout_seconds: int = Field(default=10, ge=1)
    # libpq TCP keepalives for pooled connections
    keepalives_idle_seconds: int = Field(default=60, ge=1)
    keepalives_interval_seconds: int = Field(default=10, ge=1)
    keepalives_count: int = Field(default=5, ge=1)
    # Pooled connections idle longer than this are pinged before reuse.
    validate_after_idle_seconds: float = Field(default=30.0, ge=0)

    @field_validator("target_table")
    @classmethod
    def validate_target_table(cls, v: str) -> str:
        if not _QUALIFIED_IDENTIFIER.match(v):
            msg = (
                f"target_table '{v}' must be a table name, optionally "
                f"schema-qualified (e.g. 'public.transaction')"
            )
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def check_pool_bounds(self) -> Self:
        if self.pool_min_size > self.pool_max_size:
            msg = (
                f"pool_min_size ({self.pool_min_size}) must not exceed "
                f"pool_max_size ({self.pool_max_size})"
            )
            raise ValueError(msg)
        return self


class RetryConfig(BaseModel):
    """Retry / backoff for destination writes lost to a dropped connection.

    ``max_attempts=1`` disables retries.
    """

    max_attempts: int = Field(default=1, ge=1)
    initial_wait_seconds: float = Field(default=1.0, gt=0)
    max_wait_seconds: float = Field(default=30.0, gt=0)
    jitter: bool = True


class LoggingConfig(BaseModel):
    """structlog output settings."""

    level: str = "INFO"
    json_output: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            msg = f"Unknown log level '{v}'"
            raise ValueError(msg)
        return level


class RelayConfig(BaseModel, extra="forbid"):
    """Top-level relay configuration."""

    relay_id: str = "txn-relay"
    source: SourceConfig
    destination: DestinationConfig
    retry: RetryConfig = RetryConfig()
    logging: LoggingConfig = LoggingConfig()
    on_write_error: WriteErrorPolicy = WriteErrorPolicy.STOP
    # Binlog reconnect backoff, seconds
    reconnect_backoff_base: float = Field(default=1.0, gt=0)
    reconnect_backoff_cap: float = Field(default=60.0, gt=0)
    # 0 = reconnect forever
    reconnect_max_retries: int = Field(default=0, ge=0)
