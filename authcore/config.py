from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _shared_fs_root() -> Path:
    """Resolve SHARED_FS_ROOT with the same precedence as ``Settings.from_env``."""
    value = os.environ.get("SHARED_FS_ROOT") or dotenv_values(".env").get("SHARED_FS_ROOT")
    return Path(value or "/srv/authcore")


def _load_or_create_secret(filename: str) -> str:
    """Return the persisted signing secret, generating it on first use."""
    fs_root = _shared_fs_root()
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup_failed",
            error=str(exc),
            path=str(fs_root),
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        # write to temp file then rename so readers never see a partial secret
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret env var or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("secret_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field("postgresql://localhost:5432/authcore", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows runtime resets and a memory cache.",
    )

    # Credential signing
    access_token_secret: str | None = env_field(
        None, "ACCESS_TOKEN_SECRET", validate_default=True
    )
    refresh_token_secret: str | None = env_field(
        None, "REFRESH_TOKEN_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0)
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS", ge=0)
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a new refresh credential on every refresh and revoke the presented one",
    )

    # Single-purpose tokens (activation / reset share one slot per account)
    activation_token_ttl_hours: int = env_field(24, "ACTIVATION_TOKEN_TTL_HOURS", gt=0)
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES", gt=0)
    reset_request_generic_response: bool = env_field(
        True,
        "RESET_REQUEST_GENERIC_RESPONSE",
        description="Answer reset/resend requests identically whether or not the account exists",
    )

    # argon2id work factor
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST", ge=8)
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)

    # Google OAuth
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    oauth_state_ttl_seconds: int = env_field(600, "OAUTH_STATE_TTL_SECONDS", gt=0)

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Authcore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # HTTP boundary
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_samesite: str = env_field("strict", "COOKIE_SAMESITE")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    build_sha: str = env_field("dev", "BUILD_SHA")

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

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in {"strict", "lax", "none"}:
            raise ValueError("COOKIE_SAMESITE must be strict, lax, or none")
        return normalized

    @field_validator("access_token_secret")
    @classmethod
    def _ensure_access_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".access_token_secret")

    @field_validator("refresh_token_secret")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        return value or _load_or_create_secret(".refresh_token_secret")

    @model_validator(mode="after")
    def _check_credential_policy(self) -> "Settings":
        if self.access_token_ttl_minutes >= self.refresh_token_ttl_minutes:
            raise ValueError(
                "ACCESS_TOKEN_TTL_MINUTES must be shorter than REFRESH_TOKEN_TTL_MINUTES"
            )
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh credentials must use distinct secrets")
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
