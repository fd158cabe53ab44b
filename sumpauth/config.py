from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sumpauth.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


class StoreBackend(str, Enum):
    """Where sessions and reset tokens are persisted."""

    MEMORY = "memory"
    POSTGRES = "postgres"
    REDIS = "redis"


class SameSite(str, Enum):
    LAX = "lax"
    STRICT = "strict"
    NONE = "none"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    database_url: str = env_field("postgresql://localhost:5432/sump", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field(
        "",
        "SHARED_FS_ROOT",
        description="Directory for memory-store snapshots and the generated secret; empty disables both",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Cookie signing
    auth_secret: str | None = env_field(None, "AUTH_SECRET")
    auth_previous_secret: str | None = env_field(
        None,
        "AUTH_PREVIOUS_SECRET",
        description="Accepted when verifying cookies during secret rotation",
    )

    # Sessions
    session_cookie_name: str = env_field("sump_session", "SESSION_COOKIE_NAME")
    session_absolute_timeout_seconds: int = env_field(
        30 * 24 * 3600,
        "SESSION_ABSOLUTE_TIMEOUT_SECONDS",
        description="Hard session lifetime regardless of activity",
    )
    session_idle_timeout_seconds: int = env_field(
        7 * 24 * 3600,
        "SESSION_IDLE_TIMEOUT_SECONDS",
        description="Maximum inactivity before a session expires",
    )
    session_cookie_secure: bool = env_field(True, "SESSION_COOKIE_SECURE")
    session_cookie_samesite: SameSite = env_field(SameSite.LAX, "SESSION_COOKIE_SAMESITE")

    # Passwords
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(72, "PASSWORD_MAX_LENGTH")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # Password reset
    reset_token_ttl_seconds: int = env_field(3600, "RESET_TOKEN_TTL_SECONDS")
    reset_supersede_previous: bool = env_field(
        True,
        "RESET_SUPERSEDE_PREVIOUS",
        description="Invalidate earlier outstanding reset tokens when a new one is issued",
    )

    # Operations
    storage_timeout_seconds: float = env_field(5.0, "STORAGE_TIMEOUT_SECONDS")
    cleanup_interval_seconds: int = env_field(900, "CLEANUP_INTERVAL_SECONDS")

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

    @field_validator(
        "session_absolute_timeout_seconds",
        "session_idle_timeout_seconds",
        "reset_token_ttl_seconds",
        "cleanup_interval_seconds",
        "password_min_length",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("storage_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("auth_previous_secret")
    @classmethod
    def _check_previous_secret(cls, value: str | None) -> str | None:
        if value and len(value) < _MIN_SECRET_LENGTH:
            raise ValueError(f"must be at least {_MIN_SECRET_LENGTH} characters")
        return value or None

    @model_validator(mode="after")
    def _check_password_bounds(self) -> "Settings":
        if self.password_min_length > self.password_max_length:
            raise ValueError("password_min_length cannot exceed password_max_length")
        return self

    @model_validator(mode="after")
    def _ensure_auth_secret(self) -> "Settings":
        if self.auth_secret:
            if len(self.auth_secret) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"AUTH_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return self
        self.auth_secret = _load_or_generate_secret(self.shared_fs_root)
        return self


def _load_or_generate_secret(fs_root: str) -> str:
    """Read the persisted cookie secret, generating one on first start."""
    if not fs_root:
        logger.warning(
            "auth_secret_ephemeral",
            message="AUTH_SECRET unset and no SHARED_FS_ROOT; cookies will not survive restarts",
        )
        return secrets.token_urlsafe(48)

    root = Path(fs_root)
    secret_path = root / ".auth_secret"
    try:
        root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise RuntimeError(f"unable to create {root} for the auth secret") from exc

    if secret_path.exists() and not secret_path.is_symlink():
        persisted = secret_path.read_text().strip()
        if len(persisted) >= _MIN_SECRET_LENGTH:
            return persisted
        logger.warning("auth_secret_too_short", path=str(secret_path))

    generated = secrets.token_urlsafe(48)
    # Write to a temp file then rename so readers never see a partial secret
    fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=".auth_secret_", suffix=".tmp")
    try:
        os.write(fd, generated.encode())
        os.fchmod(fd, 0o600)
    finally:
        os.close(fd)
    os.replace(tmp_path, secret_path)
    logger.info("auth_secret_generated", path=str(secret_path))
    return generated


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
