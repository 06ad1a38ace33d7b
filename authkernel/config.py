from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, Field, field_validator, model_validator

from authkernel.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Persistence backends able to hold the user aggregate."""

    MEMORY = "memory"
    POSTGRES = "postgres"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session kernel."""

    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    database_url: str = env_field(
        "postgresql://localhost:5432/authkernel", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_key_prefix: str = env_field("authkernel", "REDIS_KEY_PREFIX")
    redis_max_retries: int = env_field(
        8,
        "REDIS_MAX_RETRIES",
        description="Optimistic transaction attempts before a write is abandoned",
    )
    shared_fs_root: str = env_field("/srv/authkernel", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authkernel", "JWT_ISSUER")
    jwt_audience: str = env_field("authkernel-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token TTL in minutes",
    )
    session_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "SESSION_TTL_MINUTES",
        description="Absolute lifetime of a refresh session in minutes",
    )
    refresh_secret_bytes: int = env_field(32, "REFRESH_SECRET_BYTES")
    refresh_reuse_revokes_all: bool = env_field(
        False,
        "REFRESH_REUSE_REVOKES_ALL",
        description="Revoke every session of the user when a replayed refresh secret is seen",
    )
    require_verified_login: bool = env_field(
        False,
        "REQUIRE_VERIFIED_LOGIN",
        description="Refuse login for accounts that have not confirmed their email",
    )

    # Verification codes
    verification_code_length: int = env_field(6, "VERIFICATION_CODE_LENGTH")
    verification_code_ttl_minutes: int = env_field(10, "VERIFICATION_CODE_TTL_MINUTES")
    verification_single_active_code: bool = env_field(
        True,
        "VERIFICATION_SINGLE_ACTIVE_CODE",
        description="A newly issued code supersedes older unused codes of the same context",
    )

    # Password handling
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    password_reset_token_bytes: int = env_field(32, "PASSWORD_RESET_TOKEN_BYTES")
    password_reset_path: str = env_field("/reset-password", "PASSWORD_RESET_PATH")

    # Email dispatch
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthKernel", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

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

    @field_validator("store_backend", mode="before")
    @classmethod
    def _validate_store_backend(cls, value: Any) -> StoreBackend:
        if isinstance(value, str):
            value = value.strip().lower()
        return StoreBackend(value)

    @field_validator(
        "access_token_ttl_minutes",
        "session_ttl_minutes",
        "verification_code_ttl_minutes",
        "password_reset_ttl_minutes",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("ttl must be positive")
        return value

    @field_validator("verification_code_length")
    @classmethod
    def _validate_code_length(cls, value: int) -> int:
        if not 4 <= value <= 12:
            raise ValueError("verification code length must be between 4 and 12")
        return value

    @field_validator("refresh_secret_bytes", "password_reset_token_bytes")
    @classmethod
    def _validate_secret_bytes(cls, value: int) -> int:
        if value < 16:
            raise ValueError("secret length must be at least 16 bytes")
        return value

    @model_validator(mode="after")
    def _check_token_lifetimes(self) -> "Settings":
        if self.access_token_ttl_minutes >= self.session_ttl_minutes:
            raise ValueError("access tokens must expire before the refresh session")
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authkernel"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
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
