from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from redis.exceptions import RedisError

from sessionguard.logging import get_logger
from sessionguard.service.errors import RateLimitedError, UpstreamDependencyError

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


class WindowCounter(Protocol):
    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, int]: ...


class RateLimitActor(Protocol):
    actor_id: str
    is_authenticated: bool


@dataclass(frozen=True)
class RateLimitPolicy:
    """Per-route quota: at most ``requests`` calls per ``window_seconds``."""

    requests: int = 10
    window_seconds: int = DEFAULT_WINDOW_SECONDS


@dataclass(frozen=True)
class RateLimitDecision:
    limit: int
    remaining: int
    reset_seconds: int


def build_scope_key(
    method: str,
    path: str,
    principal: Optional[RateLimitActor],
    client_ip: Optional[str],
) -> str:
    """Bucket key; authenticated and anonymous traffic never share a bucket.

    Guests are anonymous here and are keyed by address like any other
    unauthenticated caller.
    """
    if principal is not None and principal.is_authenticated:
        actor, auth_state = f"user:{principal.actor_id}", "auth"
    else:
        actor, auth_state = f"ip:{client_ip or 'unknown'}", "anon"
    return f"rate_limit:{method.upper()}:{path}:{actor}:{auth_state}"


class RateLimiter:
    """Fixed-window limiter over the shared cache; accept or reject, never queue."""

    def __init__(self, cache: WindowCounter) -> None:
        self.cache = cache

    async def acquire(self, scope_key: str, policy: RateLimitPolicy) -> RateLimitDecision:
        limit = policy.requests
        if limit <= 0:
            return RateLimitDecision(limit=limit, remaining=limit, reset_seconds=0)
        window_seconds = policy.window_seconds
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=scope_key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS

        try:
            count, ttl = await self.cache.hit_window(scope_key, window_seconds)
        except (RedisError, OSError) as exc:
            logger.error(
                "rate_limit_backend_unavailable",
                key=scope_key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise UpstreamDependencyError("Rate limit backend unavailable.") from exc

        reset_seconds = ttl if ttl > 0 else window_seconds
        if count > limit:
            logger.info("rate_limit_exceeded", key=scope_key, limit=limit, count=count)
            raise RateLimitedError(
                f"Too many requests. Please try again in {window_seconds} seconds.",
                retry_after=reset_seconds,
                detail={"limit": limit, "window_seconds": window_seconds},
            )
        return RateLimitDecision(
            limit=limit, remaining=max(0, limit - count), reset_seconds=reset_seconds
        )
