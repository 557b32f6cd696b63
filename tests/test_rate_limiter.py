"""
Tests for the fixed-window rate limiter.
"""

from unittest.mock import AsyncMock

import pytest

from metering.services.rate_limiter import (
    RateLimiter,
    check_rate_limit,
    identity_key,
    resolve_limit,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(window_seconds=60, clock=clock)


class TestIdentityKey:
    """Tests for bucket keys."""

    def test_user_key(self):
        assert identity_key("user-1", "10.0.0.1", "Mozilla") == "user:user-1"

    def test_anonymous_key_hashes_user_agent(self):
        key = identity_key(None, "10.0.0.1", "Mozilla/5.0")
        assert key.startswith("anon:10.0.0.1:")
        assert "Mozilla" not in key
        assert len(key.split(":")[-1]) == 16

    def test_different_user_agents_get_different_buckets(self):
        assert identity_key(None, "10.0.0.1", "a") != identity_key(None, "10.0.0.1", "b")

    def test_missing_ip(self):
        assert identity_key(None, None, None).startswith("anon:unknown:")


class TestFixedWindow:
    """Tests for window counting."""

    def test_anonymous_limit_of_ten(self, limiter: RateLimiter):
        """Ten requests pass, the eleventh is refused with a bounded retry hint."""
        key = identity_key(None, "10.0.0.1", "curl")

        results = [limiter.check(key, limit=10) for _ in range(10)]
        eleventh = limiter.check(key, limit=10)

        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == list(range(9, -1, -1))
        assert eleventh.allowed is False
        assert eleventh.remaining == 0
        assert 1 <= eleventh.retry_after_seconds <= 60

    def test_next_window_allows_again(self, limiter: RateLimiter, clock: FakeClock):
        for _ in range(10):
            limiter.check("k", limit=10)
        assert limiter.check("k", limit=10).allowed is False

        clock.advance(60)

        assert limiter.check("k", limit=10).allowed is True

    def test_retry_after_counts_down(self, limiter: RateLimiter, clock: FakeClock):
        limiter.check("k", limit=1)
        clock.advance(45.5)

        decision = limiter.check("k", limit=1)

        assert decision.allowed is False
        assert decision.retry_after_seconds == 15

    def test_keys_are_independent(self, limiter: RateLimiter):
        limiter.check("a", limit=1)
        assert limiter.check("a", limit=1).allowed is False
        assert limiter.check("b", limit=1).allowed is True

    def test_non_positive_limit_rejected(self, limiter: RateLimiter):
        with pytest.raises(ValueError):
            limiter.check("k", limit=0)

    def test_expired_buckets_are_pruned(self, limiter: RateLimiter, clock: FakeClock):
        limiter.check("a", limit=5)
        limiter.check("b", limit=5)
        assert len(limiter) == 2

        clock.advance(301)
        limiter.check("c", limit=5)

        assert len(limiter) == 1

    def test_reset_clears_buckets(self, limiter: RateLimiter):
        limiter.check("a", limit=5)
        limiter.reset()
        assert len(limiter) == 0

    def test_denied_reason_is_rate_limited(self, limiter: RateLimiter):
        limiter.check("k", limit=1)
        assert limiter.check("k", limit=1).reason.value == "RateLimited"


class TestResolveLimit:
    """Tests for per-request limit lookup."""

    async def test_anonymous_gets_default(self):
        loader = AsyncMock(return_value=60)
        assert await resolve_limit(None, loader) == 10
        loader.assert_not_called()

    async def test_user_limit_is_loaded(self):
        loader = AsyncMock(return_value=60)
        assert await resolve_limit("user-1", loader) == 60

    async def test_lookup_failure_falls_back_to_anonymous(self):
        loader = AsyncMock(side_effect=ConnectionError("db down"))
        assert await resolve_limit("user-1", loader) == 10

    async def test_limit_change_applies_on_next_request(self, limiter: RateLimiter):
        """An upgrade takes effect without waiting for the window to end."""
        loader = AsyncMock(return_value=1)
        await check_rate_limit(limiter, "user-1", None, None, loader)
        assert (await check_rate_limit(limiter, "user-1", None, None, loader)).allowed is False

        loader.return_value = 60
        decision = await check_rate_limit(limiter, "user-1", None, None, loader)

        assert decision.allowed is True
        assert decision.limit == 60
