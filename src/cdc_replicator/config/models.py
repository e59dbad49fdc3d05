"""Pydantic configuration models for the replicator."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator


class AckPolicyType(StrEnum):
    """What happens to a message whose processing attempt failed."""

    ALWAYS = "always"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


class DatabaseConfig(BaseModel):
    """Connection settings for a PostgreSQL database (source or target)."""

    host: str = "localhost"
    port: int = 5432
    database: str
    username: str = "postgres"
    password: SecretStr = SecretStr("password")
    min_connections: int = Field(default=1, ge=1)
    max_connections: int = Field(default=10, ge=1)
    connect_timeout_seconds: int = Field(default=30, ge=1)
    reconnect_attempts: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def check_pool_bounds(self) -> Self:
        if self.max_connections < self.min_connections:
            msg = (
                f"max_connections ({self.max_connections}) must be >= "
                f"min_connections ({self.min_connections})"
            )
            raise ValueError(msg)
        return self


class KafkaConfig(BaseModel):
    """Kafka consumer settings."""

    bootstrap_servers: str = "localhost:9092"
    group_id: str = "cdc-replicator"
    # Explicit topic names; when empty, topic_pattern is subscribed instead.
    topics: list[str] = Field(default_factory=list)
    topic_pattern: str = r"^dbserver1\.inventory\..*"
    auto_offset_reset: str = "earliest"
    session_timeout_ms: int = Field(default=45000, ge=1000)
    max_poll_interval_ms: int = Field(default=300000, ge=1000)
    fetch_min_bytes: int = Field(default=1, ge=1)
    fetch_max_wait_ms: int = Field(default=500, ge=0)
    commit_asynchronous: bool = False
    # Producer settings (dead-letter topic)
    enable_idempotence: bool = True
    acks: str = "all"

    @field_validator("topic_pattern")
    @classmethod
    def validate_topic_pattern(cls, v: str) -> str:
        if not v:
            return v
        if not v.startswith("^"):
            msg = f"topic_pattern '{v}' must start with '^' to be treated as a regex"
            raise ValueError(msg)
        try:
            re.compile(v)
        except re.error as exc:
            msg = f"topic_pattern '{v}' is not a valid regex: {exc}"
            raise ValueError(msg) from exc
        return v

    @model_validator(mode="after")
    def check_subscription(self) -> Self:
        if not self.topics and not self.topic_pattern:
            msg = "either topics or topic_pattern must be set"
            raise ValueError(msg)
        return self


class DLQConfig(BaseModel):
    """Dead Letter Queue settings (used by the dead_letter ack policy)."""

    topic_suffix: str = Field(default="dlq", min_length=1)
    include_headers: bool = True
    flush_timeout_seconds: float = Field(default=30.0, gt=0)


class RetryConfig(BaseModel):
    """Retry / backoff configuration."""

    max_attempts: int = Field(default=5, ge=1)
    initial_wait_seconds: float = Field(default=1.0, gt=0)
    max_wait_seconds: float = Field(default=60.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: bool = True


class SchemaConfig(BaseModel):
    """Target schema discovery settings."""

    target_schema: str = Field(default="public", pattern=r"^[a-zA-Z_]\w*$")
    # Resolve cached metadata by table-name suffix when the database-qualified
    # key is missing. Two source databases with equally named tables collide.
    suffix_fallback: bool = True


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


class ReplicatorConfig(BaseModel, extra="forbid"):
    """Top-level configuration: transport, source catalog, target store."""

    kafka: KafkaConfig = KafkaConfig()
    source: DatabaseConfig
    target: DatabaseConfig
    schema_catalog: SchemaConfig = SchemaConfig()
    ack_policy: AckPolicyType = AckPolicyType.ALWAYS
    dlq: DLQConfig = DLQConfig()
    retry: RetryConfig = RetryConfig()
    worker_threads: int = Field(default=4, ge=1)
    max_buffered_messages: int = Field(default=1000, ge=1)
    logging: LoggingConfig = LoggingConfig()
