from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class StoreBackend(str, Enum):
    """Backing stores able to persist captured sessions between runs."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for session caching."""

    sessions_enabled: bool = env_field(
        True,
        "SESSIONS_ENABLED",
        description="Feature flag for session caching; when off, run_session is rejected",
    )
    test_isolation: bool = env_field(
        True,
        "TEST_ISOLATION",
        description="Clear the applied session state before every test",
    )
    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "SESSION_STORE")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    session_key_prefix: str = env_field("sessionflow", "SESSION_KEY_PREFIX")
    session_ttl_seconds: int = env_field(
        24 * 60 * 60,
        "SESSION_TTL_SECONDS",
        description="Expiry of saved sessions in the redis store",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests of this package",
    )

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

    @field_validator("store_backend")
    @classmethod
    def _validate_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("session_ttl_seconds")
    @classmethod
    def _validate_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("session_ttl_seconds must be positive")
        return value

    @field_validator("session_key_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        value = value.strip().rstrip(":")
        if not value:
            raise ValueError("session_key_prefix must not be empty")
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
