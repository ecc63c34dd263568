"""Tests for the Redis-backed session cache, with the client mocked out."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from merchantauth.config import Settings
from merchantauth.service.auth import AuthService
from merchantauth.service.errors import AuthenticationError
from merchantauth.storage.memory import MemoryStore
from merchantauth.storage.redis_cache import MFA_SESSION_PREFIX, RedisCache


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.get = AsyncMock()
    client.set = AsyncMock()
    client.delete = AsyncMock()
    client.eval = AsyncMock()
    client.ping = AsyncMock(return_value=True)
    client.register_script.return_value = AsyncMock()
    return client


@pytest.fixture
def cache(redis_client):
    with patch("merchantauth.storage.redis_cache.aioredis.from_url", return_value=redis_client):
        yield RedisCache("redis://localhost:6379/0")


class TestRateWindows:
    """Tests for the multi-window counter call."""

    async def test_result_is_normalized(self, cache):
        cache._rate_windows.return_value = [0, 2, 0, 37]

        result = await cache.check_rate_windows(["k1", "k2"], [(3, 1), (10, 60)])

        assert result == (False, 1, 0, 37)
        kwargs = cache._rate_windows.call_args.kwargs
        assert kwargs["keys"] == ["k1", "k2"]
        assert kwargs["args"] == [3, 1, 10, 60]

    async def test_misaligned_arguments_rejected(self, cache):
        with pytest.raises(ValueError):
            await cache.check_rate_windows(["k1"], [(3, 1), (10, 60)])


class TestMfaSessions:
    """Tests for session storage in Redis."""

    async def test_set_uses_prefix_and_ttl(self, cache, redis_client):
        await cache.set_mfa_session("abc", {"token": "abc"}, 0)

        key, raw = redis_client.set.call_args[0]
        assert key == f"{MFA_SESSION_PREFIX}abc"
        assert json.loads(raw) == {"token": "abc"}
        assert redis_client.set.call_args.kwargs["ex"] == 1

    async def test_corrupt_entry_reads_as_missing(self, cache, redis_client):
        redis_client.get.return_value = "{not json"

        assert await cache.get_mfa_session("abc") is None

    async def test_attempts_on_missing_session(self, cache, redis_client):
        redis_client.eval.return_value = -1
        assert await cache.increment_mfa_attempts("abc") is None

        redis_client.eval.return_value = 2
        assert await cache.increment_mfa_attempts("abc") == 2

    async def test_channel_flag_is_set_in_place(self, cache, redis_client):
        redis_client.eval.return_value = json.dumps({"token": "abc", "sms_otp_verified": True})

        data = await cache.mark_mfa_channel_verified("abc", "sms_otp_verified")

        assert data["sms_otp_verified"] is True
        args = redis_client.eval.call_args[0]
        assert args[1:] == (1, f"{MFA_SESSION_PREFIX}abc", "sms_otp_verified")
        assert "KEEPTTL" in args[0]

        redis_client.eval.return_value = None
        assert await cache.mark_mfa_channel_verified("abc", "sms_otp_verified") is None


class FakeSessionCache:
    """Dict-backed stand-in exposing the cache's session methods."""

    def __init__(self):
        self.sessions = {}
        self.ttls = {}

    async def set_mfa_session(self, token, payload, ttl_seconds):
        self.sessions[token] = json.loads(json.dumps(payload))
        self.ttls[token] = ttl_seconds

    async def get_mfa_session(self, token):
        return self.sessions.get(token)

    async def delete_mfa_session(self, token):
        self.sessions.pop(token, None)

    async def increment_mfa_attempts(self, token):
        if token not in self.sessions:
            return None
        self.sessions[token]["attempts"] = self.sessions[token].get("attempts", 0) + 1
        return self.sessions[token]["attempts"]

    async def mark_mfa_channel_verified(self, token, flag):
        if token not in self.sessions:
            return None
        self.sessions[token][flag] = True
        return json.loads(json.dumps(self.sessions[token]))


class InterleavingSessionCache(FakeSessionCache):
    """Records a failed attempt from another request right after each session read."""

    async def get_mfa_session(self, token):
        snapshot = await super().get_mfa_session(token)
        snapshot = json.loads(json.dumps(snapshot)) if snapshot else None
        await self.increment_mfa_attempts(token)
        return snapshot


class TestAuthServiceWithCache:
    """MFA sessions go to the cache when one is configured."""

    async def test_sessions_are_kept_in_cache(self, recorders):
        cache = FakeSessionCache()
        service = AuthService(
            MemoryStore(),
            cache,
            Settings(test_mode=True, password_hash_time_cost=1, password_hash_memory_cost=1024),
            email_channel=recorders.email,
            sms_channel=recorders.sms,
        )
        await service.signup(name="Asha", email="a@b.com", mobile="9999999999", password="password1")

        token = (await service.signin(email="a@b.com", password="password1"))["mfa_session_token"]

        assert token in cache.sessions
        assert 0 < cache.ttls[token] <= 600
        assert service.pending_sessions() == []

        bad = "000000" if recorders.email.last_code() != "000000" else "111111"
        with pytest.raises(AuthenticationError, match="Invalid OTP"):
            await service.verify_otp(otp=bad, otp_type="email", mfa_session_token=token)
        assert cache.sessions[token]["attempts"] == 1

        await service.verify_otp(
            otp=recorders.email.last_code(), otp_type="email", mfa_session_token=token
        )
        done = await service.verify_otp(
            otp=recorders.sms.last_code(), otp_type="sms", mfa_session_token=token
        )
        assert "token" in done
        assert token not in cache.sessions

    async def test_partial_activation_keeps_concurrent_failures(self, recorders):
        cache = InterleavingSessionCache()
        service = AuthService(
            MemoryStore(),
            cache,
            Settings(test_mode=True, password_hash_time_cost=1, password_hash_memory_cost=1024),
            email_channel=recorders.email,
            sms_channel=recorders.sms,
        )
        await service.signup(name="Asha", email="a@b.com", mobile="9999999999", password="password1")
        token = (await service.signin(email="a@b.com", password="password1"))["mfa_session_token"]

        progress = await service.verify_otp(
            otp=recorders.email.last_code(), otp_type="email", mfa_session_token=token
        )

        assert progress["needs_mobile_verification"] is True
        assert cache.sessions[token]["email_otp_verified"] is True
        assert cache.sessions[token]["attempts"] == 1
