from __future__ import annotations

import os
import re
import secrets
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd])\s*$", re.IGNORECASE)
_DURATION_UNITS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def parse_duration(value: Any) -> timedelta:
    """Parse a validity window such as ``15m``, ``7d``, ``900`` or a timedelta."""

    if isinstance(value, timedelta):
        parsed = value
    elif isinstance(value, bool):
        raise ValueError("duration must be a number of seconds or <n><s|m|h|d>")
    elif isinstance(value, (int, float)):
        parsed = timedelta(seconds=value)
    elif isinstance(value, str):
        raw = value.strip()
        if raw.isdigit():
            parsed = timedelta(seconds=int(raw))
        else:
            match = _DURATION_PATTERN.match(raw)
            if not match:
                raise ValueError(
                    f"invalid duration {value!r}; expected <n><s|m|h|d>, e.g. 15m or 7d"
                )
            amount, unit = match.groups()
            parsed = timedelta(seconds=int(amount) * _DURATION_UNITS[unit.lower()])
    else:
        raise ValueError("duration must be a number of seconds or <n><s|m|h|d>")
    if parsed.total_seconds() <= 0:
        raise ValueError("duration must be positive")
    return parsed


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    test_mode: bool = env_field(False, "TEST_MODE")
    dev_mode: bool = env_field(
        False,
        "DEV_MODE",
        description="Include sanitized internal error detail in responses",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    access_token_ttl: timedelta = env_field(
        timedelta(minutes=15),
        "JWT_ACCESS_EXPIRES_IN",
        description="Bearer credential validity, e.g. 15m",
    )
    refresh_token_ttl: timedelta = env_field(
        timedelta(days=7),
        "JWT_REFRESH_EXPIRES_IN",
        description="Rotation credential and session validity, e.g. 7d",
    )

    # argon2id work factor
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        64 * 1024, "PASSWORD_HASH_MEMORY_COST", ge=8, description="KiB"
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH", ge=8)

    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    refresh_cookie_path: str = env_field("/v1/auth", "REFRESH_COOKIE_PATH")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    turnstile_secret_key: str | None = env_field(
        None,
        "TURNSTILE_SECRET_KEY",
        description="Bot verification secret; unset disables the check",
    )
    turnstile_verify_url: str = env_field(
        "https://challenges.cloudflare.com/turnstile/v0/siteverify",
        "TURNSTILE_VERIFY_URL",
    )
    turnstile_timeout_seconds: float = env_field(10.0, "TURNSTILE_TIMEOUT_SECONDS")

    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    session_sweep_interval_seconds: int = env_field(
        3600,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        ge=0,
        description="Interval for deleting expired sessions; 0 disables",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("access_token_ttl", "refresh_token_ttl", mode="before")
    @classmethod
    def _parse_ttl(cls, value: Any) -> timedelta:
        return parse_duration(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Persist a generated signing key so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authcore"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
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
        tmp_path: str | None = None
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
        logger.info("jwt_secret_generated", path=str(secret_path))
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
