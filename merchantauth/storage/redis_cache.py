from __future__ import annotations

import json
from typing import Optional, Sequence

import redis.asyncio as aioredis

MFA_SESSION_PREFIX = "mfa:session:"


class RedisCache:
    """Thin Redis wrapper for MFA sessions and rate-limit counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic multi-window check: deny on the first window at its limit without
    # touching any counter, otherwise increment every window.
    # ARGV holds (limit, window_seconds) pairs aligned with KEYS.
    # Returns {allowed, window_index, remaining, ttl}.
    _RATE_WINDOWS_SCRIPT = """
local n = #KEYS
local counts = {}
for i = 1, n do
  local count = tonumber(redis.call('GET', KEYS[i]) or '0')
  local limit = tonumber(ARGV[(i - 1) * 2 + 1])
  if count >= limit then
    return {0, i, 0, redis.call('TTL', KEYS[i])}
  end
  counts[i] = count
end

local best = 0
local best_remaining = 0
local best_ttl = 0
for i = 1, n do
  local limit = tonumber(ARGV[(i - 1) * 2 + 1])
  local window = tonumber(ARGV[(i - 1) * 2 + 2])
  local ttl = window
  if counts[i] == 0 then
    redis.call('SET', KEYS[i], 1, 'EX', window)
  else
    redis.call('INCR', KEYS[i])
    ttl = redis.call('TTL', KEYS[i])
    if ttl < 0 then
      redis.call('EXPIRE', KEYS[i], window)
      ttl = window
    end
  end
  local remaining = limit - counts[i] - 1
  if best == 0 or remaining < best_remaining then
    best = i
    best_remaining = remaining
    best_ttl = ttl
  end
end
return {1, best, best_remaining, best_ttl}
"""

    # Bump the attempt counter inside the stored session JSON, keeping its TTL
    _MFA_ATTEMPT_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return -1
end
local data = cjson.decode(raw)
local attempts = (tonumber(data['attempts']) or 0) + 1
data['attempts'] = attempts
redis.call('SET', KEYS[1], cjson.encode(data), 'KEEPTTL')
return attempts
"""

    # Set one verification flag inside the stored session JSON, keeping its TTL.
    # Returns the updated JSON, or nil when the session is gone.
    _MFA_FLAG_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return false
end
local data = cjson.decode(raw)
data[ARGV[1]] = true
local encoded = cjson.encode(data)
redis.call('SET', KEYS[1], encoded, 'KEEPTTL')
return encoded
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._rate_windows = self.client.register_script(self._RATE_WINDOWS_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    # -- rate limiting -----------------------------------------------------

    async def check_rate_windows(
        self, keys: Sequence[str], windows: Sequence[tuple[int, int]]
    ) -> tuple[bool, int, int, int]:
        """Evaluate every ``(limit, seconds)`` window for ``keys`` in one round trip.

        Returns ``(allowed, index, remaining, ttl)`` where ``index`` is the
        zero-based window that denied the request, or the window with the
        fewest remaining requests when allowed.
        """
        if len(keys) != len(windows):
            raise ValueError("keys and windows must align")
        args: list[int] = []
        for limit, seconds in windows:
            args.extend([int(limit), int(seconds)])
        allowed, index, remaining, ttl = await self._rate_windows(keys=list(keys), args=args)
        return bool(int(allowed)), int(index) - 1, max(0, int(remaining)), int(ttl)

    # -- MFA sessions ------------------------------------------------------

    async def get_mfa_session(self, token: str) -> Optional[dict]:
        cached = await self.client.get(f"{MFA_SESSION_PREFIX}{token}")
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted entry is treated like an expired one
            return None

    async def set_mfa_session(self, token: str, payload: dict, ttl_seconds: int) -> None:
        await self.client.set(
            f"{MFA_SESSION_PREFIX}{token}", json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def delete_mfa_session(self, token: str) -> None:
        await self.client.delete(f"{MFA_SESSION_PREFIX}{token}")

    async def increment_mfa_attempts(self, token: str) -> Optional[int]:
        """Atomically record a failed attempt; ``None`` when the session is gone."""
        result = await self.client.eval(
            self._MFA_ATTEMPT_SCRIPT, 1, f"{MFA_SESSION_PREFIX}{token}"
        )
        attempts = int(result)
        return None if attempts < 0 else attempts

    async def mark_mfa_channel_verified(self, token: str, flag: str) -> Optional[dict]:
        """Atomically set ``flag`` on a stored session; ``None`` when the session is gone."""
        result = await self.client.eval(
            self._MFA_FLAG_SCRIPT, 1, f"{MFA_SESSION_PREFIX}{token}", flag
        )
        if not result:
            return None
        try:
            return json.loads(result)
        except (json.JSONDecodeError, TypeError):
            return None

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
