from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from storefront.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the storefront service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/storefront", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/storefront", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables deterministic testing behaviors and in-process fallbacks.",
    )
    secret_key: str = env_field(
        None,
        "SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest.",
    )

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Thrift Store", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")

    # Accounts and sessions
    admin_email: str = env_field(
        "admin@example.com",
        "ADMIN_EMAIL",
        description="Reserved address that is created with the admin role at signup.",
    )
    session_inactivity_minutes: int = env_field(30, "SESSION_INACTIVITY_MINUTES")
    session_absolute_ttl_hours: int = env_field(24, "SESSION_ABSOLUTE_TTL_HOURS")
    secure_cookies: bool = env_field(True, "SECURE_COOKIES")
    email_verification_ttl_minutes: int = env_field(60, "EMAIL_VERIFICATION_TTL_MINUTES")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    # Lockout and CAPTCHA
    lockout_max_attempts: int = env_field(5, "LOCKOUT_MAX_ATTEMPTS")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")
    lock_notice_cooldown_seconds: int = env_field(60, "LOCK_NOTICE_COOLDOWN_SECONDS")
    captcha_after_failures: int = env_field(3, "CAPTCHA_AFTER_FAILURES")
    login_captcha_enforced: bool = env_field(
        False,
        "LOGIN_CAPTCHA_ENFORCED",
        description="Require a solved CAPTCHA once an account reaches the failure threshold.",
    )
    captcha_ttl_seconds: int = env_field(300, "CAPTCHA_TTL_SECONDS")

    # Two-factor
    totp_issuer: str = env_field("Thrift Store", "TOTP_ISSUER")
    two_factor_challenge_ttl_seconds: int = env_field(
        300, "TWO_FACTOR_CHALLENGE_TTL_SECONDS"
    )

    # Password policy
    password_min_length: int = env_field(12, "PASSWORD_MIN_LENGTH")
    password_max_age_days: int = env_field(90, "PASSWORD_MAX_AGE_DAYS")
    password_warning_days: int = env_field(7, "PASSWORD_WARNING_DAYS")
    password_history_size: int = env_field(5, "PASSWORD_HISTORY_SIZE")

    # Payment gateway
    khalti_secret_key: str | None = env_field(None, "KHALTI_SECRET_KEY")
    khalti_public_key: str | None = env_field(None, "KHALTI_PUBLIC_KEY")
    khalti_gateway_url: str = env_field("https://a.khalti.com/api/v2", "KHALTI_GATEWAY_URL")
    gateway_timeout_seconds: float = env_field(15.0, "GATEWAY_TIMEOUT_SECONDS")
    gateway_amount_cap_paisa: int = env_field(
        0,
        "GATEWAY_AMOUNT_CAP_PAISA",
        description="Clamp the amount sent to the gateway (sandbox accounts); 0 disables.",
    )
    default_currency: str = env_field("NPR", "DEFAULT_CURRENCY")

    # Rate limits (requests per minute)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    verify_rate_limit_per_minute: int = env_field(10, "VERIFY_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(5, "MFA_RATE_LIMIT_PER_MINUTE")
    payment_rate_limit_per_minute: int = env_field(20, "PAYMENT_RATE_LIMIT_PER_MINUTE")
    admin_rate_limit_per_minute: int = env_field(60, "ADMIN_RATE_LIMIT_PER_MINUTE")

    cors_allow_origins: str | None = env_field(
        None,
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of origins allowed to call the API.",
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

    @field_validator("admin_email")
    @classmethod
    def _normalize_admin_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("secret_key")
    @classmethod
    def _ensure_secret_key(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated key so encrypted TOTP secrets survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/storefront"))
        secret_path = fs_root / ".secret_key"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "secret_key_dir_setup",
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
                    "secret_key_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".secret_key_", suffix=".tmp"
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
                "secret_key_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist SECRET_KEY; set SECRET_KEY env var or make SHARED_FS_ROOT writable"
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
