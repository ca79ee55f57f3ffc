"""Configuration models for Changewire."""

from __future__ import annotations

import re

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from changewire.bus.topics import CRITICAL_ENTITY_CHANGE, DISPATCH_TOPICS, ENTITY_CHANGE, SYSTEM_LOG, USER_ACTIVITY

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _validate_identifier(value: str) -> str:
    normalized = value.strip()
    if not _IDENTIFIER.match(normalized):
        raise ValueError(f"{value!r} is not a valid SQL identifier")
    return normalized


class WatchedTable(BaseModel):
    """One entity table whose mutations are captured."""

    name: str
    id_column: str = "id"
    actor_column: str | None = None
    identity: bool = Field(default=False, description="Identity entity (user accounts).")
    credential_data: bool = Field(default=False, description="Table stores credentials or tokens.")
    credential_fields: list[str] = Field(default_factory=list)

    @field_validator("name", "id_column")
    @classmethod
    def _identifier(cls, value: str) -> str:
        return _validate_identifier(value)

    @field_validator("actor_column")
    @classmethod
    def _optional_identifier(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return _validate_identifier(value)


def _default_watched_tables() -> list[WatchedTable]:
    return [
        WatchedTable(name="users", actor_column="id", identity=True, credential_fields=["password"]),
        WatchedTable(name="user_tokens", actor_column="user_id", credential_data=True),
        WatchedTable(name="user_activity_log", actor_column="user_id"),
    ]


class DatabaseConfig(BaseModel):
    """Database connection settings."""

    url: str = Field(default="", description="Falls back to CHANGEWIRE_DATABASE_URL when empty.")
    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=5, ge=0)
    echo: bool = False


class KafkaConfig(BaseModel):
    """Kafka client settings shared by producer and consumer."""

    bootstrap_servers: list[str] = Field(default_factory=lambda: ["localhost:9092"])
    client_id: str = "changewire"
    max_retries: int = Field(default=8, ge=0)
    initial_retry_ms: int = Field(default=100, ge=1)
    retry_multiplier: float = Field(default=2.0, ge=1.0)
    consumer_group: str = "changewire-dispatch"
    session_timeout_ms: int = Field(default=30000, ge=1000)
    heartbeat_interval_ms: int = Field(default=3000, ge=100)
    auto_offset_reset: str = "latest"

    @field_validator("bootstrap_servers", mode="before")
    @classmethod
    def _split_servers(cls, value: object) -> object:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


class TopicsConfig(BaseModel):
    """Bus topic names."""

    entity_change: str = ENTITY_CHANGE
    critical_entity_change: str = CRITICAL_ENTITY_CHANGE
    user_activity: str = USER_ACTIVITY
    system_log: str = SYSTEM_LOG


class CaptureConfig(BaseModel):
    """Change Recorder settings."""

    mode: str = Field(default="auto", description="auto, trigger or hook.")
    tables: list[WatchedTable] = Field(default_factory=_default_watched_tables)

    @field_validator("mode")
    @classmethod
    def _mode(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"auto", "trigger", "hook"}:
            raise ValueError("mode must be one of auto, trigger, hook")
        return normalized

    @model_validator(mode="after")
    def _unique_tables(self) -> CaptureConfig:
        names = [table.name for table in self.tables]
        if len(names) != len(set(names)):
            raise ValueError("watched table names must be unique")
        return self


class PollerConfig(BaseModel):
    """Poller/cursor settings."""

    interval_seconds: float = Field(default=5.0, gt=0)
    batch_size: int = Field(default=100, ge=1, le=10000)
    consumer_group: str = "changewire-poller"


class DispatcherConfig(BaseModel):
    """Consumer-side dispatcher settings."""

    topics: list[str] = Field(default_factory=lambda: list(DISPATCH_TOPICS))
    idempotency_window: int = Field(default=3600, ge=1)
    poll_timeout_ms: int = Field(default=1000, ge=1)
    max_batch_records: int = Field(default=500, ge=1)
    partition_queue_size: int = Field(default=1000, ge=1)
    reconnect_backoff_seconds: float = Field(default=1.0, gt=0)
    reconnect_backoff_max_seconds: float = Field(default=30.0, gt=0)
    idempotency: str = Field(default="memory", description="memory or redis.")
    redis_url: str = "redis://localhost:6379/0"

    @field_validator("idempotency")
    @classmethod
    def _idempotency(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"memory", "redis"}:
            raise ValueError("idempotency must be one of memory, redis")
        return normalized


class LoggingConfig(BaseModel):
    """Diagnostic logging settings."""

    level: str = "INFO"
    json_output: bool = False


class ChangewireConfig(BaseSettings):
    """Root configuration model for Changewire."""

    environment: str = "development"
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    kafka: KafkaConfig = Field(default_factory=KafkaConfig)
    topics: TopicsConfig = Field(default_factory=TopicsConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    poller: PollerConfig = Field(default_factory=PollerConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CHANGEWIRE_",
        env_nested_delimiter="__",
        extra="ignore",
    )
