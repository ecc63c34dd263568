"""Tests for per-IP multi-window rate limiting."""

from unittest.mock import AsyncMock, patch

import pytest

from merchantauth.config import DEFAULT_RATE_LIMITS, RateLimitConfig
from merchantauth.service.errors import RateLimitedError
from merchantauth.service.rate_limit import (
    RateLimitDecision,
    RateLimiter,
    rate_limit_key,
)


@pytest.fixture
def limiter():
    return RateLimiter(None, DEFAULT_RATE_LIMITS)


class TestResolveConfig:
    """Tests for endpoint to limit resolution."""

    def test_exact_match(self, limiter):
        assert limiter.resolve_config("/api/auth/send-otp") == RateLimitConfig(3, 10, 20, 50)

    def test_prefix_match_on_segment_boundary(self, limiter):
        config = limiter.resolve_config("/api/admin/merchants/12345678/disable")

        assert config == RateLimitConfig(5, 30, 200, 1000)

    def test_prefix_does_not_match_partial_segment(self, limiter):
        assert limiter.resolve_config("/api/admin/merchantsfoo") is None

    def test_longest_prefix_wins(self):
        limiter = RateLimiter(
            None,
            {
                "/api/admin": RateLimitConfig(per_second=100),
                "/api/admin/merchants": RateLimitConfig(per_second=1),
            },
        )

        assert limiter.resolve_config("/api/admin/merchants/1").per_second == 1
        assert limiter.resolve_config("/api/admin/other").per_second == 100

    async def test_unconfigured_endpoint_is_not_limited(self, limiter):
        assert await limiter.check("/health", "10.0.0.1") is None
        assert await limiter.check("/api/merchant/profile", "10.0.0.1") is None


class TestLocalWindows:
    """Tests for the in-process counter table."""

    async def test_per_second_ceiling(self, limiter):
        decisions = [await limiter.check("/api/auth/send-otp", "10.0.0.1") for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions[:3]] == [2, 1, 0]
        denied = decisions[-1]
        assert denied.window == "second"
        assert denied.limit == 3
        assert denied.remaining == 0
        assert 1 <= denied.retry_after() <= 1

    async def test_denial_does_not_consume_other_windows(self, limiter):
        for _ in range(4):
            await limiter.check("/api/auth/send-otp", "10.0.0.1")

        minute_key = rate_limit_key("/api/auth/send-otp", "10.0.0.1", "minute")
        day_key = rate_limit_key("/api/auth/send-otp", "10.0.0.1", "day")
        assert limiter._local_counters[minute_key][0] == 3
        assert limiter._local_counters[day_key][0] == 3

    async def test_counters_are_per_ip_and_per_endpoint(self, limiter):
        for _ in range(3):
            await limiter.check("/api/auth/send-otp", "10.0.0.1")

        other_ip = await limiter.check("/api/auth/send-otp", "10.0.0.2")
        other_endpoint = await limiter.check("/api/auth/signin", "10.0.0.1")

        assert other_ip.allowed
        assert other_endpoint.allowed

    async def test_window_expiry_resets_count(self, limiter):
        with patch("merchantauth.service.rate_limit.time.monotonic", return_value=1000.0):
            for _ in range(3):
                await limiter.check("/api/auth/send-otp", "10.0.0.1")
            blocked = await limiter.check("/api/auth/send-otp", "10.0.0.1")
        with patch("merchantauth.service.rate_limit.time.monotonic", return_value=1001.5):
            allowed = await limiter.check("/api/auth/send-otp", "10.0.0.1")

        assert not blocked.allowed
        assert allowed.allowed

    async def test_minute_window_is_reported_when_tightest(self):
        limiter = RateLimiter(None, {"/x": RateLimitConfig(per_second=10, per_minute=2)})

        first = await limiter.check("/x", "10.0.0.1")
        await limiter.check("/x", "10.0.0.1")
        denied = await limiter.check("/x", "10.0.0.1")

        assert first.window == "minute"
        assert first.remaining == 1
        assert denied.window == "minute"
        assert not denied.allowed


class TestUnknownClientsAndFailures:
    """Tests for requests that are let through without counting."""

    async def test_unknown_client_skipped(self, limiter):
        for _ in range(10):
            assert await limiter.check("/api/auth/send-otp", "unknown") is None
        assert await limiter.check("/api/auth/send-otp", "") is None
        assert limiter._local_counters == {}

    async def test_cache_failure_fails_open(self):
        cache = AsyncMock()
        cache.check_rate_windows.side_effect = ConnectionError("redis down")
        limiter = RateLimiter(cache, DEFAULT_RATE_LIMITS)

        with patch("merchantauth.service.rate_limit.logger") as mock_logger:
            decision = await limiter.check("/api/auth/send-otp", "10.0.0.1")

        assert decision is None
        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args[0][0] == "rate_limit_cache_failed"

    async def test_cache_result_is_translated(self):
        cache = AsyncMock()
        cache.check_rate_windows.return_value = (False, 1, 0, 42)
        limiter = RateLimiter(cache, DEFAULT_RATE_LIMITS)

        decision = await limiter.check("/api/auth/signin", "10.0.0.1")

        keys, windows = cache.check_rate_windows.call_args[0]
        assert keys[0] == "rate_limit:/api/auth/signin:ip:10.0.0.1:second"
        assert windows == [(3, 1), (10, 60), (30, 3600), (100, 86400)]
        assert not decision.allowed
        assert decision.window == "minute"
        assert decision.limit == 10
        assert 41 <= decision.retry_after() <= 42


class TestDecision:
    """Tests for decision rendering."""

    def test_headers(self):
        decision = RateLimitDecision(
            allowed=True, limit=3, remaining=2, reset_at=1700000000, window="second"
        )

        assert decision.headers() == {
            "X-RateLimit-Limit": "3",
            "X-RateLimit-Remaining": "2",
            "X-RateLimit-Reset": "1700000000",
            "X-RateLimit-Window": "second",
        }

    def test_error_message_and_detail(self):
        decision = RateLimitDecision(
            allowed=False, limit=3, remaining=0, reset_at=1000, window="second"
        )

        with patch("merchantauth.service.rate_limit.time.time", return_value=999.2):
            error = decision.to_error()

        assert isinstance(error, RateLimitedError)
        assert error.status_code == 429
        assert error.detail == {"limit": 3, "window": "second", "retry_after": 1}
        assert "limit of 3 requests per second" in error.message
        assert "1 second." in error.message
