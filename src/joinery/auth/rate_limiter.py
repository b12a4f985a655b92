"""Sliding window rate limiter backends.

Both backends keep a log of request timestamps per key and admit a request
only while fewer than ``limit`` timestamps fall inside the trailing window.
"""

from __future__ import annotations

import math
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from redis.asyncio import Redis

KEY_NAMESPACE = "ratelimit:"


@dataclass(frozen=True)
class RateLimitHit:
    """Counter state after one admission attempt.

    ``reset_at`` is the epoch second at which the oldest logged request
    leaves the window. ``retry_after`` is 0 for admitted requests.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int


def _retry_after(reset_at: float, now: float) -> int:
    return max(1, math.ceil(reset_at - now))


class RateLimiter(Protocol):
    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitHit: ...

    async def cleanup(self) -> int: ...


class InMemoryRateLimiter:
    """Sliding window rate limiter.

    Thread-safe via Lock. Single-instance only.
    For multi-instance deployments use :class:`RedisRateLimiter`.
    """

    def __init__(self) -> None:
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._windows: dict[str, int] = {}
        self._lock = Lock()

    def check(self, key: str, limit: int, window_seconds: int) -> RateLimitHit:
        """Record a request against ``key`` if the window has room.

        Args:
            key: Rate limit key, e.g. "user:42:/api/projects:bearer".
            limit: Max requests per window.
            window_seconds: Window length.
        """
        now = time.time()
        cutoff = now - window_seconds

        with self._lock:
            self._windows[key] = window_seconds
            timestamps = [t for t in self._requests[key] if t > cutoff]
            self._requests[key] = timestamps

            if len(timestamps) >= limit:
                reset_at = timestamps[0] + window_seconds
                return RateLimitHit(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=_retry_after(reset_at, now),
                )

            timestamps.append(now)
            return RateLimitHit(
                allowed=True,
                limit=limit,
                remaining=limit - len(timestamps),
                reset_at=timestamps[0] + window_seconds,
                retry_after=0,
            )

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitHit:
        return self.check(key, limit, window_seconds)

    def purge_expired(self) -> int:
        """Remove all expired entries.

        Returns:
            Number of keys cleaned up.
        """
        now = time.time()
        cleaned = 0

        with self._lock:
            empty_keys = []
            for key, timestamps in self._requests.items():
                cutoff = now - self._windows.get(key, 0)
                self._requests[key] = [t for t in timestamps if t > cutoff]
                if not self._requests[key]:
                    empty_keys.append(key)
            for key in empty_keys:
                del self._requests[key]
                self._windows.pop(key, None)
                cleaned += 1

        return cleaned

    async def cleanup(self) -> int:
        return self.purge_expired()


# KEYS[1] = window key
# ARGV = now, window seconds, limit, unique member
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
    redis.call('ZADD', key, now, ARGV[4])
    count = count + 1
    allowed = 1
end

local reset = now + window
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] then
    reset = tonumber(oldest[2]) + window
end
redis.call('EXPIRE', key, math.ceil(window))
return {allowed, count, tostring(reset)}
"""


class RedisRateLimiter:
    """Sliding window log kept in a Redis sorted set per key.

    The prune, count and insert happen inside one Lua script, so concurrent
    requests for the same key across processes cannot over-admit.
    """

    def __init__(self, client: Redis) -> None:
        self._client = client
        self._script = client.register_script(SLIDING_WINDOW_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> RedisRateLimiter:
        return cls(Redis.from_url(url))

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitHit:
        now = time.time()
        allowed, count, reset = await self._script(
            keys=[KEY_NAMESPACE + key],
            args=[now, window_seconds, limit, f"{now}:{uuid.uuid4().hex}"],
        )
        reset_at = float(reset)
        admitted = bool(int(allowed))
        return RateLimitHit(
            allowed=admitted,
            limit=limit,
            remaining=max(0, limit - int(count)),
            reset_at=reset_at,
            retry_after=0 if admitted else _retry_after(reset_at, now),
        )

    async def cleanup(self) -> int:
        # Keys expire on their own after one idle window.
        return 0

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def aclose(self) -> None:
        await self._client.aclose()
