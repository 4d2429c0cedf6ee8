from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chatbridge.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments the bridge recognises."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication bridge."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    jwt_secret: str | None = env_field(
        None,
        "JWT_SECRET",
        description="Shared access-token secret recognised by both platforms",
    )
    encryption_key: str | None = env_field(
        None,
        "ENCRYPTION_KEY",
        description="Key material for the token passphrase claim and TOTP secrets; defaults to JWT_SECRET",
    )
    access_token_ttl_minutes: int = env_field(24 * 60, "ACCESS_TOKEN_TTL_MINUTES")
    step_up_token_ttl_minutes: int = env_field(5, "STEP_UP_TOKEN_TTL_MINUTES")
    session_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "SESSION_TTL_MINUTES",
        description="Lifetime of a refresh-bound session and its cookie",
    )
    allow_registration: bool = env_field(False, "ALLOW_REGISTRATION")
    email_verification_required: bool = env_field(False, "EMAIL_VERIFICATION_REQUIRED")
    multi_user_mode: bool = env_field(
        False,
        "MULTI_USER_MODE",
        description="Initial multi-user flag for the in-memory primary store",
    )
    auth_dev_bypass: bool = env_field(
        False,
        "AUTH_DEV_BYPASS",
        description="Skip token checks on protected routes; never honoured in production",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    primary_database_url: str = env_field(
        "postgresql://localhost:5432/workspace", "PRIMARY_DATABASE_URL"
    )
    secondary_database_url: str = env_field(
        "postgresql://localhost:5432/chat", "SECONDARY_DATABASE_URL"
    )
    cors_allow_origins: list[str] = env_field(
        [
            "http://localhost:3000",
            "http://localhost:3080",
            "http://127.0.0.1:3000",
        ],
        "CORS_ALLOW_ORIGINS",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

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

    @field_validator(
        "access_token_ttl_minutes", "step_up_token_ttl_minutes", "session_ttl_minutes"
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @model_validator(mode="after")
    def _reject_production_bypass(self) -> "Settings":
        if self.auth_dev_bypass and self.environment == Environment.PRODUCTION:
            raise ValueError("AUTH_DEV_BYPASS cannot be enabled when ENVIRONMENT=production")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def dev_bypass_active(self) -> bool:
        return self.auth_dev_bypass and not self.is_production


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
