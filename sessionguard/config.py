from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)

DAY_SECONDS = 24 * 60 * 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the post-login pipeline."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Per-command Redis timeout in seconds",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the synchronous Redis client and allow the in-memory fallback",
    )
    state_dir: str = env_field("/var/lib/sessionguard", "STATE_DIR")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sessionguard", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionguard-clients", "JWT_AUDIENCE")
    token_clock_skew_seconds: int = env_field(120, "TOKEN_CLOCK_SKEW_SECONDS")

    # Token lifecycle
    token_ttl_seconds: int = env_field(DAY_SECONDS, "TOKEN_TTL_SECONDS")
    blacklist_ttl_seconds: int = env_field(DAY_SECONDS, "BLACKLIST_TTL_SECONDS")
    session_ttl_seconds: int = env_field(DAY_SECONDS, "SESSION_TTL_SECONDS")
    elevated_session_ttl_seconds: int = env_field(
        2 * DAY_SECONDS, "ELEVATED_SESSION_TTL_SECONDS"
    )
    login_history_limit: int = env_field(100, "LOGIN_HISTORY_LIMIT")
    login_history_ttl_seconds: int = env_field(30 * DAY_SECONDS, "LOGIN_HISTORY_TTL_SECONDS")

    # Audit retention
    audit_actor_cap: int = env_field(1000, "AUDIT_ACTOR_CAP")
    audit_global_cap: int = env_field(10000, "AUDIT_GLOBAL_CAP")
    audit_high_risk_cap: int = env_field(100, "AUDIT_HIGH_RISK_CAP")
    audit_ttl_seconds: int = env_field(365 * DAY_SECONDS, "AUDIT_TTL_SECONDS")

    # Permissions and compliance
    permission_ttl_seconds: int = env_field(60 * 60, "PERMISSION_TTL_SECONDS")
    loader_timeout_seconds: float = env_field(
        5.0,
        "LOADER_TIMEOUT_SECONDS",
        description="Upper bound for an injected permission loader call",
    )
    failed_attempts_ttl_seconds: int = env_field(60 * 60, "FAILED_ATTEMPTS_TTL_SECONDS")
    failed_attempts_threshold: int = env_field(5, "FAILED_ATTEMPTS_THRESHOLD")

    local_timezone: str | None = env_field(
        None,
        "LOCAL_TIMEZONE",
        description="IANA zone used for off-hours detection; system zone when unset",
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

    def tzinfo(self) -> ZoneInfo | None:
        if not self.local_timezone:
            return None
        return ZoneInfo(self.local_timezone)

    @field_validator("local_timezone")
    @classmethod
    def _validate_timezone(cls, value: str | None) -> str | None:
        if not value:
            return None
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"unknown time zone: {value}") from exc
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        state_dir = Path(os.getenv("STATE_DIR", "/var/lib/sessionguard"))
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(state_dir),
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
        try:
            import tempfile

            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
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
