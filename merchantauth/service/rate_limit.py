from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from merchantauth.config import RateLimitConfig
from merchantauth.logging import get_logger
from merchantauth.service.errors import RateLimitedError

logger = get_logger(__name__)

UNKNOWN_CLIENT = "unknown"


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    window: str

    def retry_after(self, now: Optional[float] = None) -> int:
        current = now if now is not None else time.time()
        return max(1, math.ceil(self.reset_at - current))

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
            "X-RateLimit-Window": self.window,
        }

    def to_error(self) -> RateLimitedError:
        seconds = self.retry_after()
        plural = "" if seconds == 1 else "s"
        return RateLimitedError(
            f"Too many requests. You have exceeded the limit of {self.limit} requests "
            f"per {self.window}. Please try again in {seconds} second{plural}.",
            detail={"limit": self.limit, "window": self.window, "retry_after": seconds},
        )


def rate_limit_key(endpoint: str, ip_address: str, window: str) -> str:
    return f"rate_limit:{endpoint}:ip:{ip_address}:{window}"


class RateLimiter:
    """Per-IP, per-endpoint admission control over second/minute/hour/day windows.

    Counters live in Redis when a cache is configured. Without one (test mode or
    ``ALLOW_REDIS_FALLBACK_DEV``) an in-process table guarded by an asyncio lock
    gives the same semantics for a single worker.
    """

    def __init__(self, cache, limits: Mapping[str, RateLimitConfig]) -> None:
        self.cache = cache
        self.limits = dict(limits)
        self._local_counters: Dict[str, Tuple[int, float]] = {}
        self._local_lock = asyncio.Lock()

    def resolve_config(self, path: str) -> Optional[RateLimitConfig]:
        """Exact path first, then the longest configured prefix on a segment boundary."""
        exact = self.limits.get(path)
        if exact is not None:
            return exact
        best: Optional[str] = None
        for prefix in self.limits:
            base = prefix.rstrip("/")
            if path.startswith(base + "/") and (best is None or len(prefix) > len(best)):
                best = prefix
        return self.limits[best] if best is not None else None

    async def check(self, endpoint: str, ip_address: str) -> Optional[RateLimitDecision]:
        """Count one request; ``None`` means the request is not rate limited.

        Unidentifiable clients and cache failures are let through.
        """
        config = self.resolve_config(endpoint)
        if config is None:
            return None
        windows = config.windows()
        if not windows:
            return None
        if not ip_address or ip_address == UNKNOWN_CLIENT:
            logger.debug("rate_limit_skipped_unknown_client", endpoint=endpoint)
            return None
        keys = [rate_limit_key(endpoint, ip_address, name) for name, _, _ in windows]
        pairs = [(limit, seconds) for _, limit, seconds in windows]
        if self.cache is not None:
            try:
                allowed, index, remaining, ttl = await self.cache.check_rate_windows(keys, pairs)
            except Exception as exc:
                logger.error(
                    "rate_limit_cache_failed",
                    endpoint=endpoint,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return None
        else:
            allowed, index, remaining, ttl = await self._check_local(keys, pairs)

        name, limit, seconds = windows[index]
        reset_at = int(time.time()) + (ttl if ttl > 0 else seconds)
        decision = RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=remaining if allowed else 0,
            reset_at=reset_at,
            window=name,
        )
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                endpoint=endpoint,
                ip_address=ip_address,
                window=name,
                limit=limit,
                retry_after=decision.retry_after(),
            )
        return decision

    async def _check_local(
        self, keys: list[str], windows: list[tuple[int, int]]
    ) -> tuple[bool, int, int, int]:
        now = time.monotonic()
        async with self._local_lock:
            counts: list[int] = []
            for i, key in enumerate(keys):
                count, expires_at = self._local_counters.get(key, (0, 0.0))
                if expires_at <= now:
                    count = 0
                limit, _ = windows[i]
                if count >= limit:
                    return False, i, 0, max(0, math.ceil(expires_at - now))
                counts.append(count)

            best = -1
            best_remaining = 0
            best_ttl = 0
            for i, key in enumerate(keys):
                limit, seconds = windows[i]
                if counts[i] == 0:
                    expires_at = now + seconds
                else:
                    expires_at = self._local_counters[key][1]
                self._local_counters[key] = (counts[i] + 1, expires_at)
                remaining = limit - counts[i] - 1
                if best < 0 or remaining < best_remaining:
                    best = i
                    best_remaining = remaining
                    best_ttl = max(0, math.ceil(expires_at - now))
            return True, best, best_remaining, best_ttl
