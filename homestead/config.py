from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core and its HTTP surface."""

    database_url: str = env_field(
        "postgresql://localhost:5432/homestead", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relax startup behaviors that only make sense in a deployed container",
    )
    # Secrets: all three set here override the persisted secrets file
    secrets_file: str = env_field(
        "/data/secrets.env",
        "SECRETS_FILE",
        description="Durable key=value file holding generated signing/encryption keys",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    encryption_key: str | None = env_field(None, "ENCRYPTION_KEY")
    jwt_issuer: str = env_field("homestead", "JWT_ISSUER")
    jwt_audience: str = env_field("homestead-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime"
    )
    refresh_token_ttl_days: int = env_field(
        7,
        "REFRESH_TOKEN_TTL_DAYS",
        description="Refresh token and ledger session lifetime",
    )
    # Credential policy
    password_min_length: int = env_field(24, "PASSWORD_MIN_LENGTH")
    password_hash_time_cost: int = env_field(
        3, "PASSWORD_HASH_TIME_COST", description="argon2id iterations (work factor)"
    )
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", description="argon2id memory in KiB"
    )
    totp_issuer: str = env_field("Homestead", "TOTP_ISSUER")
    auth_rate_limit_per_minute: int = env_field(
        10,
        "AUTH_RATE_LIMIT_PER_MINUTE",
        description="Per-identifier budget for login, registration and pre-auth 2FA; 0 disables",
    )
    session_prune_interval_seconds: int = env_field(
        3600, "SESSION_PRUNE_INTERVAL_SECONDS"
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", "jwt_refresh_secret", "encryption_key", mode="before")
    @classmethod
    def _blank_secret_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("password_min_length", "password_hash_time_cost")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
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
