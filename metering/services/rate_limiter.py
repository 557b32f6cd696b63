"""
Rate Limiter - Fixed-window request counter keyed by caller identity.

Buckets live in process memory:
- Authenticated callers are keyed by user id
- Anonymous callers by network origin plus a hash of the client signature
- Expired buckets are pruned periodically

Buckets are not shared between processes, so with N instances behind a load
balancer the effective limit is up to N times the configured one.
"""

import hashlib
import math
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from metering.config import settings
from metering.models.domain import RateLimitDecision
from metering.observability.logging import get_logger
from metering.observability.metrics import metrics

logger = get_logger(__name__)

Clock = Callable[[], float]
LimitLoader = Callable[[str], Awaitable[int]]


def identity_key(
    user_id: str | None, client_ip: str | None = None, user_agent: str | None = None
) -> str:
    """
    Bucket key for a caller.

    The user agent is hashed so raw client signatures are never held in memory.
    """
    if user_id:
        return f"user:{user_id}"
    ua_hash = hashlib.sha256((user_agent or "").encode()).hexdigest()[:16]
    return f"anon:{client_ip or 'unknown'}:{ua_hash}"


@dataclass
class RateLimitBucket:
    """Request count within one window."""

    count: int
    window_reset_at: float


class RateLimiter:
    """
    Thread-safe fixed-window limiter.

    Usage:
        decision = rate_limiter.check(identity_key(user_id, ip, ua), limit=20)
        if not decision.allowed:
            raise HTTPException(429, headers={"Retry-After": str(decision.retry_after_seconds)})
    """

    _CLEANUP_INTERVAL = 300  # seconds

    def __init__(self, window_seconds: int | None = None, clock: Clock = time.monotonic) -> None:
        self.window_seconds = window_seconds or settings.rate_limit_window_seconds
        self._clock = clock
        self._buckets: dict[str, RateLimitBucket] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def check(self, key: str, limit: int) -> RateLimitDecision:
        """Count one request against `key` and decide."""
        if limit <= 0:
            raise ValueError(f"Rate limit must be positive: {limit}")

        now = self._clock()
        with self._lock:
            self._cleanup_if_needed(now)

            bucket = self._buckets.get(key)
            if bucket is None or now >= bucket.window_reset_at:
                bucket = RateLimitBucket(count=0, window_reset_at=now + self.window_seconds)
                self._buckets[key] = bucket

            if bucket.count >= limit:
                retry_after = max(1, math.ceil(bucket.window_reset_at - now))
                return RateLimitDecision(
                    allowed=False, limit=limit, remaining=0, retry_after_seconds=retry_after
                )

            bucket.count += 1
            return RateLimitDecision(allowed=True, limit=limit, remaining=limit - bucket.count)

    def reset(self) -> None:
        """Drop every bucket."""
        with self._lock:
            self._buckets.clear()
        metrics.rate_limit_buckets.set(0)

    def _cleanup_if_needed(self, now: float) -> None:
        if now - self._last_cleanup < self._CLEANUP_INTERVAL:
            return
        expired = [key for key, bucket in self._buckets.items() if now >= bucket.window_reset_at]
        for key in expired:
            del self._buckets[key]
        self._last_cleanup = now
        metrics.rate_limit_buckets.set(len(self._buckets))
        if expired:
            logger.debug("rate_limit_buckets_pruned", removed=len(expired), kept=len(self._buckets))

    def __len__(self) -> int:
        return len(self._buckets)


async def resolve_limit(user_id: str | None, loader: LimitLoader) -> int:
    """
    Per-minute limit for a caller, re-read on every request.

    Anonymous callers and any failure to load the user's limit get the
    anonymous default, never an unlimited pass.
    """
    if not user_id:
        return settings.anonymous_rate_limit
    try:
        return await loader(user_id)
    except Exception as e:
        metrics.rate_limit_fallbacks_total.inc()
        logger.warning(
            "rate_limit_lookup_failed",
            user_id=user_id,
            error=str(e),
            fallback_limit=settings.anonymous_rate_limit,
        )
        return settings.anonymous_rate_limit


async def check_rate_limit(
    limiter: RateLimiter,
    user_id: str | None,
    client_ip: str | None,
    user_agent: str | None,
    loader: LimitLoader,
) -> RateLimitDecision:
    """Resolve the caller's limit and count the request."""
    limit = await resolve_limit(user_id, loader)
    decision = limiter.check(identity_key(user_id, client_ip, user_agent), limit)
    metrics.record_rate_limit("user" if user_id else "anonymous", decision.allowed)
    if not decision.allowed:
        logger.info(
            "rate_limited",
            user_id=user_id,
            client_ip=client_ip,
            limit=limit,
            retry_after_seconds=decision.retry_after_seconds,
        )
    return decision


# Process-wide limiter
rate_limiter = RateLimiter()
