"""Fixed-window rate limiting on the shared cache layer.

A window opens on a client's first hit and lasts ``window_seconds``; the
counter is incremented atomically in the cache, so concurrent requests from
one client always see distinct counts. Because the window resets at first hit
rather than sliding, a client can land up to ``2 * limit`` hits across a
window boundary.

The counter has no other source of truth: when the cache is unreachable the
gated request is rejected rather than let through.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tokenward.logging import get_logger
from tokenward.result import Failure, Result, Success
from tokenward.service.errors import AuthFailure, ErrorKind
from tokenward.storage.base import CacheLayer
from tokenward.storage.errors import CacheUnavailable

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitPolicy:
    scope: str
    limit: int
    window_seconds: int
    skip_successful: bool = False


@dataclass(frozen=True)
class RateLimitDecision:
    limit: int
    count: int
    reset_seconds: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


def rate_limit_key(scope: str, client_key: str) -> str:
    return f"ratelimit:{scope}:{client_key}"


class RateLimiter:
    def __init__(self, cache: CacheLayer) -> None:
        self.cache = cache

    @staticmethod
    def _window(policy: RateLimitPolicy) -> int:
        if policy.window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                scope=policy.scope,
                window_seconds=policy.window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            return DEFAULT_WINDOW_SECONDS
        return policy.window_seconds

    async def hit(
        self, policy: RateLimitPolicy, client_key: str
    ) -> Result[RateLimitDecision, AuthFailure]:
        """Count one request against ``client_key``; fail with RATE_LIMITED past the limit."""
        if policy.limit <= 0:
            return Success(RateLimitDecision(limit=policy.limit, count=0, reset_seconds=0))
        window = self._window(policy)
        key = rate_limit_key(policy.scope, client_key)
        try:
            count = await self.cache.increment(key, window)
            reset_seconds = await self.cache.ttl(key)
        except CacheUnavailable as exc:
            logger.warning(
                "rate_limit_cache_unavailable",
                scope=policy.scope,
                operation=exc.operation,
                message="Rejecting request; rate-limit state is unreachable",
            )
            return Failure(AuthFailure.of(ErrorKind.RATE_LIMITED, retry_after=window))
        decision = RateLimitDecision(
            limit=policy.limit,
            count=count,
            reset_seconds=reset_seconds if reset_seconds is not None else window,
        )
        if count > policy.limit:
            logger.info(
                "rate_limit_exceeded",
                scope=policy.scope,
                client_key=client_key,
                count=count,
                limit=policy.limit,
            )
            return Failure(
                AuthFailure.of(ErrorKind.RATE_LIMITED, retry_after=max(1, decision.reset_seconds))
            )
        return Success(decision)

    async def release(self, policy: RateLimitPolicy, client_key: str) -> Optional[int]:
        """Give back one hit after a successful request when the policy skips successes.

        The decrement is guarded so racing releases never drive the counter
        below zero. Failures are logged and ignored since the request already
        succeeded.
        """
        if not policy.skip_successful or policy.limit <= 0:
            return None
        key = rate_limit_key(policy.scope, client_key)
        try:
            return await self.cache.decrement_if_positive(key)
        except CacheUnavailable as exc:
            logger.warning(
                "rate_limit_release_failed", scope=policy.scope, operation=exc.operation
            )
            return None

    async def reset(self, policy: RateLimitPolicy, client_key: str) -> None:
        await self.cache.delete(rate_limit_key(policy.scope, client_key))


__all__ = [
    "RateLimitPolicy",
    "RateLimitDecision",
    "RateLimiter",
    "rate_limit_key",
]
