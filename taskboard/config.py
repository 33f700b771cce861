from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from taskboard.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment modes; only development exposes stack traces in error bodies."""

    PRODUCTION = "production"
    DEVELOPMENT = "development"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the API server and the bundled client."""

    environment: Environment = env_field(Environment.PRODUCTION, "ENVIRONMENT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests",
    )
    data_dir: str | None = env_field(
        None,
        "DATA_DIR",
        description="Directory for JSON state persistence; unset keeps state in memory only",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("taskboard", "JWT_ISSUER")
    jwt_audience: str = env_field("taskboard-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)
    token_clock_skew_seconds: int = env_field(30, "TOKEN_CLOCK_SKEW_SECONDS", ge=0)

    # Accounts
    password_min_length: int = env_field(6, "PASSWORD_MIN_LENGTH", ge=1)
    login_rate_limit_per_minute: int = env_field(20, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(10, "REGISTER_RATE_LIMIT_PER_MINUTE")

    # Task listing
    default_page_size: int = env_field(20, "DEFAULT_PAGE_SIZE", ge=1)
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE", ge=1)

    cors_allow_origins: List[str] = env_field(
        ["http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )

    # Client
    api_base_url: str = env_field("http://localhost:5000/api", "API_BASE_URL")
    client_timeout_seconds: float = env_field(10.0, "CLIENT_TIMEOUT_SECONDS", gt=0)
    client_storage_path: str | None = env_field(None, "CLIENT_STORAGE_PATH")

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

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_secret(cls, value: str | None, info) -> str:
        if value:
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            field=info.field_name,
            message="Set JWT_SECRET and JWT_REFRESH_SECRET to keep tokens valid across restarts",
        )
        return secrets.token_urlsafe(64)

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_REFRESH_SECRET must differ from JWT_SECRET")
        if self.default_page_size > self.max_page_size:
            raise ValueError("DEFAULT_PAGE_SIZE cannot exceed MAX_PAGE_SIZE")
        return self


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
