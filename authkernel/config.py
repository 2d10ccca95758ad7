from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authkernel.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    app_name: str = env_field("authkernel", "APP_NAME")
    database_url: str = env_field(
        "postgresql://localhost:5432/authkernel", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/authkernel", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI; cheap hashing parameters.",
    )
    # Token settings
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authkernel", "JWT_ISSUER")
    jwt_audience: str = env_field("authkernel-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", ge=1
    )
    refresh_token_ttl_minutes: int = env_field(
        30 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    password_reset_token_ttl_minutes: int = env_field(
        15, "PASSWORD_RESET_TOKEN_TTL_MINUTES", ge=1
    )
    refresh_reuse_grace_seconds: int = env_field(
        10,
        "REFRESH_REUSE_GRACE_SECONDS",
        ge=0,
        description="Window in which a replayed previous refresh token is treated as a lost race",
    )
    # One-time codes
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=12)
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES", ge=1)
    # Hashing
    hash_time_cost: int = env_field(3, "HASH_TIME_COST", ge=1)
    hash_memory_cost_kib: int = env_field(65536, "HASH_MEMORY_COST_KIB", ge=64)
    # OAuth settings
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str | None = env_field(None, "GOOGLE_REDIRECT_URI")
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("authkernel", "EMAIL_FROM_NAME")

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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authkernel"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # may already exist with different ownership (containers)
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if len(persisted) >= _MIN_SECRET_LENGTH:
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
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @model_validator(mode="after")
    def _check_ttls(self) -> "Settings":
        if self.refresh_token_ttl_minutes <= self.access_token_ttl_minutes:
            raise ValueError("refresh token TTL must exceed access token TTL")
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
