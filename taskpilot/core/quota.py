"""Per-user task quota with an atomic increment-and-compare.

A read-then-write quota check lets two concurrent requests from the same user
both pass before either increments. Both backends here do the increment and
the comparison in one step instead.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import time
from typing import Protocol

import redis.asyncio as redis


_INCR_AND_COMPARE_LUA = r"""
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local period = tonumber(ARGV[2])

local used = redis.call("INCR", key)
if used == 1 then
  redis.call("EXPIRE", key, period)
end

if used > limit then
  redis.call("DECR", key)
  local ttl = redis.call("TTL", key)
  if ttl < 0 then ttl = period end
  return {0, limit, ttl}
end

return {1, limit - used, 0}
"""


@dataclass(frozen=True)
class QuotaResult:
    allowed: bool
    remaining: int
    retry_after_s: float
    limit: int


@dataclass(frozen=True)
class TaskQuotaConfig:
    tasks_per_period: int
    period_s: int = 24 * 60 * 60
    key_prefix: str = "quota:tasks"


class TaskQuota(Protocol):
    async def acquire(self, user_id: str) -> QuotaResult: ...

    async def close(self) -> None: ...


def _validate(config: TaskQuotaConfig) -> None:
    if config.tasks_per_period <= 0 or config.period_s <= 0:
        raise ValueError("Task quota config must be positive")


class RedisTaskQuota:
    """Fixed-window task counter using Redis for shared state."""

    def __init__(self, config: TaskQuotaConfig, *, redis_url: str | None = None, client: redis.Redis | None = None) -> None:
        _validate(config)
        if client is None and redis_url is None:
            raise ValueError("RedisTaskQuota needs a redis_url or a client")
        self._config = config
        self._client = client or redis.from_url(redis_url)

    async def close(self) -> None:
        await self._client.aclose()

    async def ping(self) -> None:
        await self._client.ping()

    async def acquire(self, user_id: str) -> QuotaResult:
        key = f"{self._config.key_prefix}:{user_id}"
        allowed, remaining, retry_after = await self._client.eval(
            _INCR_AND_COMPARE_LUA,
            1,
            key,
            self._config.tasks_per_period,
            self._config.period_s,
        )
        return QuotaResult(
            allowed=bool(int(allowed)),
            remaining=int(remaining),
            retry_after_s=float(retry_after),
            limit=self._config.tasks_per_period,
        )


class InMemoryTaskQuota:
    """Same fixed-window semantics under an asyncio lock (single process)."""

    def __init__(self, config: TaskQuotaConfig, *, clock=time.monotonic) -> None:
        _validate(config)
        self._config = config
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        self._windows.clear()

    async def acquire(self, user_id: str) -> QuotaResult:
        limit = self._config.tasks_per_period
        async with self._lock:
            now = self._clock()
            started, used = self._windows.get(user_id, (now, 0))
            if now - started >= self._config.period_s:
                started, used = now, 0
            if used >= limit:
                retry_after = self._config.period_s - (now - started)
                return QuotaResult(allowed=False, remaining=0, retry_after_s=retry_after, limit=limit)
            used += 1
            self._windows[user_id] = (started, used)
            return QuotaResult(allowed=True, remaining=limit - used, retry_after_s=0.0, limit=limit)
