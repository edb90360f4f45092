from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.email import EmailService
from authcore.service.federation import GoogleIdentityExchange
from authcore.service.passwords import PasswordHasher
from authcore.service.signer import CredentialSigner
from authcore.storage.memory import MemoryStore
from authcore.storage.memory_cache import MemoryCache
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Cache = Union[RedisCache, SyncRedisCache, MemoryCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _build_cache(settings: Settings) -> Cache:
    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            # sync client in test mode avoids binding to pytest's event loops
            cache: Cache = (
                SyncRedisCache(settings.redis_url)
                if settings.test_mode
                else RedisCache(settings.redis_url)
            )
            cache.verify_connection()
            return cache
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for refresh sessions, rate limits and OAuth state; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            f"Running without Redis under {fallback_mode}; refresh sessions and rate limits "
            "are process-local and lost on restart."
        ),
        mode=fallback_mode,
    )
    return MemoryCache()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = _build_cache(self.settings)

        self.hasher = PasswordHasher(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
            parallelism=self.settings.password_hash_parallelism,
        )
        self.signer = CredentialSigner(
            self.settings.access_token_secret,
            self.settings.refresh_token_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            leeway_seconds=self.settings.jwt_leeway_seconds,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        if not self.email.is_configured:
            logger.warning("email_not_configured", message="activation and reset mail is logged, not sent")

        self.identity: Optional[GoogleIdentityExchange] = None
        if (
            self.settings.oauth_google_client_id
            and self.settings.oauth_google_client_secret
            and self.settings.oauth_redirect_uri
        ):
            self.identity = GoogleIdentityExchange(
                self.settings.oauth_google_client_id,
                self.settings.oauth_google_client_secret,
                self.settings.oauth_redirect_uri,
            )

        self.auth = AuthService(
            self.store,
            self.cache,
            self.hasher,
            self.signer,
            self.email,
            identity=self.identity,
            activation_ttl=timedelta(hours=self.settings.activation_token_ttl_hours),
            reset_ttl=timedelta(minutes=self.settings.reset_token_ttl_minutes),
            oauth_state_ttl=timedelta(seconds=self.settings.oauth_state_ttl_seconds),
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
        )
        logger.info(
            "runtime_init_completed",
            cache_type=type(self.cache).__name__,
            federated_login=self.identity is not None,
        )

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        if runtime is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache._sync_client.close()
            elif isinstance(runtime.cache, MemoryCache):
                runtime.cache.clear()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
