from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tasktrack.logging import get_logger

logger = get_logger(__name__)

# Signing secrets shorter than this are refused outright.
MIN_JWT_SECRET_LENGTH = 64

DEFAULT_PUBLIC_PATHS = ["/auth/", "/health", "/docs", "/openapi.json", "/redoc"]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the task tracker API."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tasktrack", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/tasktrack", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between test cases",
    )
    jwt_secret: str | None = env_field(
        None,
        "JWT_SECRET",
        description=f"HMAC signing secret, at least {MIN_JWT_SECRET_LENGTH} characters",
    )
    jwt_issuer: str = env_field("tasktrack", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", gt=0
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    max_login_attempts: int = env_field(
        5,
        "MAX_LOGIN_ATTEMPTS",
        ge=1,
        description="Consecutive password failures before the account locks",
    )
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES", gt=0)
    verification_code_ttl_hours: int = env_field(24, "VERIFICATION_CODE_TTL_HOURS", gt=0)
    reset_code_ttl_hours: int = env_field(1, "RESET_CODE_TTL_HOURS", gt=0)
    public_paths: list[str] = env_field(
        DEFAULT_PUBLIC_PATHS,
        "PUBLIC_PATHS",
        description="Path prefixes served without bearer authentication",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Task Tracker", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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

    @field_validator("public_paths", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("jwt_secret")
    @classmethod
    def _check_jwt_secret(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @model_validator(mode="after")
    def _check_token_ttls(self) -> "Settings":
        if self.refresh_token_ttl_minutes <= self.access_token_ttl_minutes:
            raise ValueError(
                "REFRESH_TOKEN_TTL_MINUTES must exceed ACCESS_TOKEN_TTL_MINUTES"
            )
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            test_mode=_settings_cache.test_mode,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
