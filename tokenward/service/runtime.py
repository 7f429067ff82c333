from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

from tokenward.clock import Clock, SystemClock
from tokenward.config import Settings, get_settings
from tokenward.logging import get_logger
from tokenward.service.passwords import Argon2PasswordHasher, PasswordHasher
from tokenward.service.profile_cache import ProfileCache
from tokenward.service.rate_limit import RateLimiter, RateLimitPolicy
from tokenward.service.sessions import SessionManager
from tokenward.service.tokens import TokenCodec
from tokenward.storage.base import CacheLayer, CredentialStore
from tokenward.storage.errors import CacheUnavailable
from tokenward.storage.memory import MemoryStore
from tokenward.storage.memory_cache import MemoryCache
from tokenward.storage.postgres import PostgresStore
from tokenward.storage.redis_cache import RedisCache

logger = get_logger(__name__)

AUTH_SCOPE = "auth"
GLOBAL_SCOPE = "global"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
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
    except ValueError:
        return "***url_parse_error***"


def build_store(settings: Settings) -> CredentialStore:
    if settings.use_memory_store:
        store: CredentialStore = MemoryStore()
    else:
        store = PostgresStore(settings.database_url, timeout_seconds=settings.store_timeout_seconds)
    logger.info(
        "runtime_store_initialized",
        store_type="memory" if settings.use_memory_store else "postgres",
    )
    return store


async def build_cache(settings: Settings, clock: Optional[Clock] = None) -> CacheLayer:
    """Connect to Redis, falling back to the in-process cache only where allowed.

    Rate-limit counters live in the cache, so a silent fallback in production
    would make limits per-process. The fallback requires TEST_MODE or
    ALLOW_CACHE_FALLBACK_DEV.
    """
    if settings.use_memory_cache:
        return MemoryCache(clock)

    cache_error: Exception | None = None
    if settings.redis_url:
        cache = RedisCache(settings.redis_url, socket_timeout=settings.cache_timeout_seconds)
        try:
            await cache.verify_connection()
            logger.info("runtime_cache_initialized", cache_type="redis")
            return cache
        except CacheUnavailable as exc:
            cache_error = exc
            await cache.close()

    if not settings.test_mode and not settings.allow_cache_fallback_dev:
        raise RuntimeError(
            "Redis is required for rate limits and profile caching; start Redis or set "
            "TEST_MODE=true/ALLOW_CACHE_FALLBACK_DEV=true for an in-process fallback."
        ) from cache_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_CACHE_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(cache_error) if cache_error else "redis_url_missing",
        message=f"Running without Redis under {fallback_mode}; rate limits are per-process.",
        mode=fallback_mode,
    )
    return MemoryCache(clock)


class Runtime:
    """Holds the process-scoped components behind the HTTP app.

    Built once at startup, stored on ``app.state.runtime`` and closed on
    shutdown.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: CredentialStore,
        cache: CacheLayer,
        clock: Optional[Clock] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        self.store = store
        self.cache = cache
        self.codec = TokenCodec(settings.jwt_issuer, settings.jwt_audience, self.clock)
        self.hasher: PasswordHasher = hasher or Argon2PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
        )
        self.profiles = ProfileCache(store, cache, settings.profile_cache_ttl_seconds)
        self.sessions = SessionManager(store, self.codec, self.hasher, self.profiles, settings)
        self.rate_limiter = RateLimiter(cache)
        self.auth_policy = RateLimitPolicy(
            scope=AUTH_SCOPE,
            limit=settings.auth_rate_limit_max,
            window_seconds=settings.auth_rate_limit_window_seconds,
            skip_successful=settings.auth_rate_limit_skip_successful,
        )
        self.global_policy = RateLimitPolicy(
            scope=GLOBAL_SCOPE,
            limit=settings.global_rate_limit_max,
            window_seconds=settings.global_rate_limit_window_seconds,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(store).__name__,
            cache_type=type(cache).__name__,
            rotate_refresh_tokens=settings.rotate_refresh_tokens,
            test_mode=settings.test_mode,
        )

    @classmethod
    async def create(
        cls, settings: Optional[Settings] = None, *, clock: Optional[Clock] = None
    ) -> "Runtime":
        settings = settings or get_settings()
        store = build_store(settings)
        cache = await build_cache(settings, clock)
        return cls(settings, store=store, cache=cache, clock=clock)

    async def close(self) -> None:
        try:
            await self.cache.close()
        finally:
            self.store.close()
        logger.info("runtime_cleanup_complete")


__all__ = ["Runtime", "build_store", "build_cache", "AUTH_SCOPE", "GLOBAL_SCOPE"]
