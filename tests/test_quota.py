from __future__ import annotations

import asyncio

import pytest

from taskpilot.core.quota import InMemoryTaskQuota, RedisTaskQuota, TaskQuotaConfig


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_in_memory_quota_counts_per_user_and_resets():
    clock = FakeMonotonic()
    quota = InMemoryTaskQuota(TaskQuotaConfig(tasks_per_period=2, period_s=60), clock=clock)

    assert (await quota.acquire("u1")).remaining == 1
    assert (await quota.acquire("u1")).remaining == 0
    blocked = await quota.acquire("u1")
    assert blocked.allowed is False
    assert blocked.limit == 2
    assert blocked.retry_after_s == 60
    assert (await quota.acquire("u2")).allowed is True

    clock.now += 60
    assert (await quota.acquire("u1")).allowed is True


@pytest.mark.asyncio
async def test_in_memory_quota_admits_exactly_the_limit_under_concurrency():
    quota = InMemoryTaskQuota(TaskQuotaConfig(tasks_per_period=3, period_s=60))
    results = await asyncio.gather(*(quota.acquire("u1") for _ in range(10)))
    assert sum(r.allowed for r in results) == 3


def test_quota_config_must_be_positive():
    with pytest.raises(ValueError):
        InMemoryTaskQuota(TaskQuotaConfig(tasks_per_period=0))
    with pytest.raises(ValueError):
        RedisTaskQuota(TaskQuotaConfig(tasks_per_period=1))


@pytest.mark.asyncio
async def test_redis_quota_runs_one_script_per_acquire():
    class DummyRedis:
        def __init__(self, replies):
            self.replies = list(replies)
            self.calls = []
            self.closed = False

        async def eval(self, script, numkeys, *args):
            self.calls.append((numkeys, args))
            return self.replies.pop(0)

        async def aclose(self):
            self.closed = True

    client = DummyRedis([[1, 4, 0], [0, 5, 1800]])
    quota = RedisTaskQuota(TaskQuotaConfig(tasks_per_period=5, period_s=3600), client=client)

    allowed = await quota.acquire("u1")
    assert allowed.allowed is True
    assert allowed.remaining == 4

    blocked = await quota.acquire("u1")
    assert blocked.allowed is False
    assert blocked.retry_after_s == 1800.0

    assert client.calls[0] == (1, ("quota:tasks:u1", 5, 3600))
    await quota.close()
    assert client.closed is True
