from __future__ import annotations

import os
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from flowsync.logging import get_logger

logger = get_logger(__name__)


class ExecutionMode(str, Enum):
    """Where prediction runs execute for the whole deployment.

    - MAIN: runs execute inside the API process; aborts signal the local pool
    - QUEUE: runs are dispatched to workers; aborts are published as events
    """

    MAIN = "main"
    QUEUE = "queue"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read once per process."""

    database_url: str = env_field(
        "postgresql://localhost:5432/flowsync", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    mode: ExecutionMode = env_field(
        ExecutionMode.MAIN,
        "MODE",
        description="main runs predictions in-process; queue dispatches them to workers",
    )
    prediction_events_channel: str = env_field(
        "prediction:events", "PREDICTION_EVENTS_CHANNEL"
    )
    abort_consumer_enabled: bool = env_field(
        False,
        "ABORT_CONSUMER_ENABLED",
        description="Subscribe to abort events (queue-mode worker processes only)",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("mode", mode="before")
    @classmethod
    def _validate_mode(cls, value: Any) -> ExecutionMode:
        if isinstance(value, str):
            value = value.strip().lower()
        return ExecutionMode(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("db_pool_max_size")
    @classmethod
    def _validate_pool_size(cls, value: int) -> int:
        if value < 1:
            logger.warning("db_pool_max_size_invalid", value=value)
            return 1
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
