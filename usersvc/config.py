from __future__ import annotations

import os
import secrets
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from usersvc.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than this are rejected outside TEST_MODE
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Service settings.

    Built once at startup (usually via ``Settings.from_env()``) and passed to
    ``create_app`` and the runtime. Nothing in the service reads a global copy.
    """

    service_name: str = env_field("user-service", "SERVICE_NAME")
    database_url: str = env_field(
        "postgresql://localhost:5432/users", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    use_memory_cache: bool = env_field(False, "USE_MEMORY_CACHE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    memory_state_path: str | None = env_field(
        None,
        "MEMORY_STATE_PATH",
        description="Optional JSON file persisting the in-memory credential store",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviors; allows a generated JWT secret.",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("user-service", "JWT_ISSUER")
    jwt_audience: str = env_field("user-service-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        30, "JWT_LEEWAY_SECONDS", description="Allowed clock skew when checking exp"
    )
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )

    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(
        64 * 1024, "ARGON2_MEMORY_COST", description="Argon2 memory cost in KiB"
    )
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # Fixed-window rate limits: attempts allowed per window
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(15 * 60, "LOGIN_RATE_WINDOW_SECONDS")
    register_rate_limit: int = env_field(10, "REGISTER_RATE_LIMIT")
    register_rate_window_seconds: int = env_field(
        60 * 60, "REGISTER_RATE_WINDOW_SECONDS"
    )
    refresh_rate_limit: int = env_field(30, "REFRESH_RATE_LIMIT")
    refresh_rate_window_seconds: int = env_field(
        15 * 60, "REFRESH_RATE_WINDOW_SECONDS"
    )
    password_rate_limit: int = env_field(5, "PASSWORD_RATE_LIMIT")
    password_rate_window_seconds: int = env_field(
        15 * 60, "PASSWORD_RATE_WINDOW_SECONDS"
    )

    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    cache_timeout_seconds: float = env_field(2.0, "CACHE_TIMEOUT_SECONDS")

    default_page_size: int = env_field(20, "DEFAULT_PAGE_SIZE")
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE")

    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        env_file_values = dotenv_values(env_file)
        merged: dict[str, Any] = {}
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

    @field_validator("redis_url", "memory_state_path", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "login_rate_limit",
        "login_rate_window_seconds",
        "register_rate_limit",
        "register_rate_window_seconds",
        "refresh_rate_limit",
        "refresh_rate_window_seconds",
        "password_rate_limit",
        "password_rate_window_seconds",
        "argon2_time_cost",
        "argon2_memory_cost",
        "argon2_parallelism",
        "default_page_size",
        "max_page_size",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("store_timeout_seconds", "cache_timeout_seconds")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @field_validator("jwt_leeway_seconds")
    @classmethod
    def _non_negative_leeway(cls, value: int) -> int:
        if value < 0:
            raise ValueError("leeway cannot be negative")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret and len(self.jwt_secret) >= MIN_JWT_SECRET_LENGTH:
            return self
        if not self.test_mode:
            raise ValueError(
                f"JWT_SECRET must be set to at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        if not self.jwt_secret:
            # Process-local secret: tokens do not survive a restart
            self.jwt_secret = secrets.token_urlsafe(48)
            logger.warning("jwt_secret_generated", reason="TEST_MODE without JWT_SECRET")
        return self
