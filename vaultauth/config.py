from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from vaultauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [item.strip() for item in str(value).split(",") if item.strip()]


class Settings(BaseModel):
    """Runtime settings for the auth, session and OAuth core."""

    # Stores
    database_url: str = env_field(
        "postgresql://localhost:5432/vaultauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow the in-process registry fallback and runtime resets used by the test suite.",
    )
    shared_fs_root: str = env_field("/srv/vaultauth", "SHARED_FS_ROOT")

    # Token codec
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("vaultauth-api", "JWT_ISSUER")
    jwt_audience: str = env_field("vaultauth-client", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    remember_me_refresh_ttl_days: int = env_field(30, "REMEMBER_ME_REFRESH_TTL_DAYS")
    id_token_ttl_seconds: int = env_field(3600, "ID_TOKEN_TTL_SECONDS")
    clock_skew_leeway_seconds: int = env_field(30, "CLOCK_SKEW_LEEWAY_SECONDS")

    # Login policy
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS")
    account_lockout_minutes: int = env_field(30, "ACCOUNT_LOCKOUT_MINUTES")
    allow_unverified_login: bool = env_field(
        False,
        "ALLOW_UNVERIFIED_LOGIN",
        description="Let pending_verification accounts log in with limited access.",
    )

    # MFA
    mfa_challenge_ttl_seconds: int = env_field(300, "MFA_CHALLENGE_TTL_SECONDS")
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS")
    mfa_secret_key: str | None = env_field(None, "MFA_SECRET_KEY")
    mfa_issuer_name: str = env_field("VaultAuth", "MFA_ISSUER_NAME")

    # One-time tokens
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    authorization_code_ttl_seconds: int = env_field(
        600, "AUTHORIZATION_CODE_TTL_SECONDS"
    )

    # Rate limits
    auth_rate_limit_per_minute: int = env_field(5, "AUTH_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(3, "MFA_RATE_LIMIT_PER_MINUTE")

    # argon2id cost parameters
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_kib: int = env_field(65536, "PASSWORD_HASH_MEMORY_KIB")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    # OAuth authorization server
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    login_url: str = env_field("/auth/login", "LOGIN_URL")
    oauth_client_id: str = env_field("vaultauth-web-app", "OAUTH_CLIENT_ID")
    oauth_client_secret: str = env_field(
        "vaultauth-web-app-secret-change-me", "OAUTH_CLIENT_SECRET"
    )
    oauth_redirect_uris: list[str] = env_field(
        ["http://localhost:3001/auth/callback"],
        "OAUTH_REDIRECT_URIS",
        description="Comma separated list of redirect URIs registered for the static clients.",
    )
    oauth_public_client_id: str | None = env_field(None, "OAUTH_PUBLIC_CLIENT_ID")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("VaultAuth", "EMAIL_FROM_NAME")

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

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

    @field_validator("oauth_redirect_uris", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> str | None:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "remember_me_refresh_ttl_days",
        "id_token_ttl_seconds",
        "mfa_challenge_ttl_seconds",
        "mfa_max_attempts",
        "authorization_code_ttl_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/vaultauth"))
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
        tmp_path: str | None = None
        try:
            # Write to a temp file then rename so readers never see a partial secret
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

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60

    @property
    def remember_me_refresh_ttl_seconds(self) -> int:
        return self.remember_me_refresh_ttl_days * 24 * 60 * 60


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
