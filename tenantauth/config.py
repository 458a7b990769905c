from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantauth.logging import get_logger

logger = get_logger(__name__)

# Shortest signing secret accepted for HS256
MIN_JWT_SECRET_LENGTH = 16


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide configuration for the credential service."""

    jwt_secret: str = env_field(
        None,
        "JWT_SECRET",
        description="HMAC signing secret for access tokens (required)",
        validate_default=True,
    )
    jwt_issuer: str = env_field("tenantauth", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantauth-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking access token expiry",
    )
    access_token_ttl_minutes: int = env_field(24 * 60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Directory for the memory store JSON snapshot; unset keeps state in-process only",
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Deadline applied to the store calls of one engine operation",
    )

    session_sweep_enabled: bool = env_field(True, "SESSION_SWEEP_ENABLED")
    session_sweep_interval_seconds: int = env_field(
        60 * 60, "SESSION_SWEEP_INTERVAL_SECONDS"
    )
    session_sweep_timeout_seconds: float = env_field(
        30.0, "SESSION_SWEEP_TIMEOUT_SECONDS"
    )

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests",
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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        # Missing secret is fatal; never generate one
        if not value or not str(value).strip():
            logger.error("jwt_secret_missing")
            raise ValueError("JWT_SECRET must be set")
        value = str(value)
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_sweep_interval_seconds",
    )
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("store_timeout_seconds", "session_sweep_timeout_seconds")
    @classmethod
    def _positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
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
