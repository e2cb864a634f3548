from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from sessionguard.config import Settings, get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.auth import BearerAuthenticator
from sessionguard.service.client_ip import ClientIpResolver
from sessionguard.service.errors import InvalidConfigurationError
from sessionguard.service.guest import GuestIdentityResolver
from sessionguard.service.oauth import GoogleOAuthClient, OAuthLoginService
from sessionguard.service.oauth_state import OAuthStateGuard
from sessionguard.service.rate_limit import RateLimiter
from sessionguard.service.rotation import RefreshRotationEngine
from sessionguard.service.tokens import TokenCodec
from sessionguard.storage.local_cache import LocalCache
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.postgres import PostgresStore
from sessionguard.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Cache = Union[RedisCache, SyncRedisCache, LocalCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
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
            # Sync client in test mode avoids binding a pool to pytest's loops
            if settings.test_mode:
                cache: Cache = SyncRedisCache(
                    settings.redis_url, socket_timeout=settings.redis_socket_timeout_seconds
                )
            else:
                cache = RedisCache(
                    settings.redis_url, socket_timeout=settings.redis_socket_timeout_seconds
                )
            cache.verify_connection()
            return cache
        except (RedisError, OSError) as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for refresh rotation and rate limits; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            f"Running without Redis under {fallback_mode}; refresh markers and rate limits "
            "are process-local only."
        ),
        mode=fallback_mode,
    )
    return LocalCache()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.codec = TokenCodec(
                self.settings.jwt_secret,
                issuer=self.settings.jwt_issuer,
                audience=self.settings.jwt_audience,
                access_ttl_seconds=self.settings.access_token_ttl_seconds,
                refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
                clock_skew_seconds=self.settings.jwt_clock_skew_seconds,
            )
        except InvalidConfigurationError as exc:
            logger.error("runtime_signing_key_invalid", error=str(exc))
            raise

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = _build_cache(self.settings)

        self.rotation = RefreshRotationEngine(self.codec, self.cache)
        self.authenticator = BearerAuthenticator(self.codec)
        self.oauth_client = GoogleOAuthClient.from_settings(self.settings)
        self.oauth = OAuthLoginService(self.store, self.oauth_client, self.rotation)
        self.state_guard = OAuthStateGuard()
        self.ip_resolver = ClientIpResolver(self.settings.trusted_proxy_cidrs)
        self.rate_limiter = RateLimiter(self.cache)
        self.guests = GuestIdentityResolver(self.store, self.settings.guest_ip_hash_salt)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            cache_type=type(self.cache).__name__,
            trusted_proxy_ranges=len(self.ip_resolver.trusted_networks),
            oauth_configured=self.oauth_client.configured,
        )

    async def aclose(self) -> None:
        await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: Cache) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                _close_cache(runtime.cache)
            except (RedisError, OSError) as exc:
                # Connection may already be gone
                logger.warning("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
