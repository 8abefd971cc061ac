from __future__ import annotations

import asyncio
import threading
from typing import Optional, Tuple
from urllib.parse import urlparse, urlunparse

from vaultauth.config import get_settings, reset_settings_cache
from vaultauth.logging import get_logger
from vaultauth.service.auth import AuthService
from vaultauth.service.notifications import NotificationService
from vaultauth.service.oauth import ClientRegistry, OAuthServer
from vaultauth.service.passwords import PasswordService
from vaultauth.service.tokens import TokenCodec
from vaultauth.storage.memory import MemoryStore
from vaultauth.storage.postgres import PostgresStore
from vaultauth.storage.redis_cache import RedisSessionRegistry
from vaultauth.storage.session_registry import MemorySessionRegistry

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        mfa_key = self.settings.mfa_secret_key or self.settings.jwt_secret

        try:
            self.store = (
                MemoryStore(mfa_encryption_key=mfa_key)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, mfa_encryption_key=mfa_key)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.registry = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                registry = RedisSessionRegistry(self.settings.redis_url)
                registry.verify_connection()
                self.registry = registry
            except Exception as exc:
                redis_error = exc

        if self.registry is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions, refresh token families and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions and rate limits "
                    "are held in this process only."
                ),
                mode=fallback_mode,
            )
            self.registry = MemorySessionRegistry()

        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
            remember_me_refresh_ttl_seconds=self.settings.remember_me_refresh_ttl_seconds,
            leeway_seconds=self.settings.clock_skew_leeway_seconds,
        )
        self.passwords = PasswordService(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_kib,
            parallelism=self.settings.password_hash_parallelism,
        )
        self.notifier = NotificationService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            verification_ttl_hours=self.settings.email_verification_ttl_hours,
            reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        if not self.notifier.is_configured:
            logger.info("email_delivery_dev_mode", message="SMTP not configured; messages are logged")

        self.auth = AuthService(
            self.store,
            self.registry,
            self.codec,
            self.passwords,
            self.notifier,
            self.settings,
        )
        self.clients = ClientRegistry.from_settings(self.settings)
        self.oauth = OAuthServer(
            self.auth,
            self.registry,
            self.codec,
            self.store,
            self.clients,
            self.settings,
        )
        logger.info(
            "runtime_init_completed",
            registry_type="redis" if isinstance(self.registry, RedisSessionRegistry) else "memory",
        )

    async def close(self) -> None:
        await self.registry.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for the existing
    runtime, then a locked re-check before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None and isinstance(runtime.registry, RedisSessionRegistry):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.registry.close())
            except RuntimeError:
                asyncio.run(runtime.registry.close())
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Token-bucket rate limit backed by the session registry.

    Returns ``(allowed, remaining, retry_after_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0)
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    return await runtime.registry.check_rate_limit(key, limit, window_seconds, cost=cost)
