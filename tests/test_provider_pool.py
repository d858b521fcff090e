#!/usr/bin/env python3
"""
Provider pool health tracking.

Tests:
1. Repeated 429s back a provider off 2s, 4s, 8s and it rejoins after the window
2. 401/403 excludes a provider for the rest of the process
3. execute() falls through the priority list, each provider at most once
4. race_all() returns the first success and cancels the rest
5. All providers failing raises NoProviderAvailable
"""
import asyncio

import httpx
import pytest

from pnl_indexer.core.errors import (
    AuthError,
    NoProviderAvailable,
    QueryError,
    RateLimitError,
    TransientError,
)
from pnl_indexer.providers.pool import Provider, ProviderPool

from conftest import FakeClock


def make_pool(clock=None, names=("alchemy", "quicknode", "public"), **kwargs):
    return ProviderPool.from_urls([(n, f"https://{n}.example") for n in names], clock=clock or FakeClock(), **kwargs)


@pytest.mark.asyncio
async def test_three_rate_limits_back_off_exponentially():
    clock = FakeClock()
    pool = make_pool(clock, names=("only",))
    provider = pool.providers[0]

    backoffs = []
    for _ in range(3):
        backoffs.append(await pool.mark_rate_limited(provider, "429"))
        clock.advance(backoffs[-1])
    assert backoffs == [2, 4, 8]

    await pool.mark_rate_limited(provider, "429")
    with pytest.raises(NoProviderAvailable):
        await pool.acquire()

    clock.advance(16)
    assert await pool.acquire() == provider


@pytest.mark.asyncio
async def test_rate_limited_provider_excluded_until_backoff_elapses():
    clock = FakeClock()
    pool = make_pool(clock, names=("primary", "secondary"))
    used = []

    async def call(provider):
        used.append(provider.name)
        if provider.name == "primary":
            raise RateLimitError("Too Many Requests")
        return "ok"

    assert await pool.execute(call) == "ok"
    assert used == ["primary", "secondary"]

    # primary is backing off for 2s
    used.clear()
    assert await pool.execute(call) == "ok"
    assert used == ["secondary"]

    clock.advance(2)
    used.clear()
    await pool.execute(call)
    assert used == ["primary", "secondary"]


@pytest.mark.asyncio
async def test_backoff_is_capped():
    clock = FakeClock()
    pool = make_pool(clock, names=("only",), max_backoff=60)
    provider = pool.providers[0]
    for _ in range(10):
        backoff = await pool.mark_rate_limited(provider)
    assert backoff == 60


@pytest.mark.asyncio
async def test_success_resets_rate_limit_counter():
    clock = FakeClock()
    pool = make_pool(clock, names=("only",))
    provider = pool.providers[0]
    await pool.mark_rate_limited(provider)
    await pool.mark_rate_limited(provider)
    await pool.mark_success(provider)
    assert await pool.mark_rate_limited(provider) == 2


@pytest.mark.asyncio
async def test_auth_failure_is_permanent():
    clock = FakeClock()
    pool = make_pool(clock, names=("keyed", "public"))

    async def call(provider):
        if provider.name == "keyed":
            request = httpx.Request("POST", provider.url)
            response = httpx.Response(401, request=request)
            raise httpx.HTTPStatusError("unauthorized", request=request, response=response)
        return provider.name

    assert await pool.execute(call) == "public"
    clock.advance(10_000)
    assert [p.name for p in await pool.eligible()] == ["public"]

    snapshot = {s["name"]: s for s in pool.snapshot()}
    assert snapshot["keyed"]["auth_failed"] is True
    assert snapshot["public"]["healthy"] is True


@pytest.mark.asyncio
async def test_execute_tries_each_provider_once():
    pool = make_pool()
    attempts = []

    async def call(provider):
        attempts.append(provider.name)
        raise ConnectionError("connection reset")

    with pytest.raises(NoProviderAvailable) as excinfo:
        await pool.execute(call)

    assert attempts == ["alchemy", "quicknode", "public"]
    assert isinstance(excinfo.value.last_error, TransientError)


@pytest.mark.asyncio
async def test_timeout_counts_as_transient():
    pool = make_pool(names=("slow", "fast"), timeout=0.01)

    async def call(provider):
        if provider.name == "slow":
            await asyncio.sleep(1)
        return provider.name

    assert await pool.execute(call) == "fast"
    slow = {s["name"]: s for s in pool.snapshot()}["slow"]
    assert slow["healthy"] is False
    assert "timeout" in slow["last_error"]
    # A timeout does not exclude the provider
    assert [p.name for p in await pool.eligible()] == ["slow", "fast"]


@pytest.mark.asyncio
async def test_query_errors_do_not_back_off():
    pool = make_pool(names=("only",))

    async def call(provider):
        raise QueryError("execution reverted")

    with pytest.raises(NoProviderAvailable):
        await pool.execute(call)
    assert len(await pool.eligible()) == 1


@pytest.mark.asyncio
async def test_race_all_first_success_wins_and_cancels_rest():
    pool = make_pool(names=("slow", "fast"))
    cancelled = []

    async def call(provider):
        if provider.name == "slow":
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.append(provider.name)
                raise
            return "slow"
        await asyncio.sleep(0)
        return 12345

    assert await pool.race_all(call) == 12345
    assert cancelled == ["slow"]


@pytest.mark.asyncio
async def test_race_all_skips_failures():
    pool = make_pool(names=("broken", "ok"))

    async def call(provider):
        if provider.name == "broken":
            raise AuthError("403 forbidden")
        await asyncio.sleep(0.01)
        return provider.name

    assert await pool.race_all(call) == "ok"
    assert [p.name for p in await pool.eligible()] == ["ok"]


@pytest.mark.asyncio
async def test_race_all_with_every_provider_failing():
    pool = make_pool(names=("a", "b"))

    async def call(provider):
        raise RateLimitError("rate limit exceeded")

    with pytest.raises(NoProviderAvailable) as excinfo:
        await pool.race_all(call)
    assert isinstance(excinfo.value.last_error, RateLimitError)

    with pytest.raises(NoProviderAvailable):
        await pool.race_all(call)


def test_priority_order():
    pool = ProviderPool([Provider("b", "https://b", 2), Provider("a", "https://a", 1)])
    assert [p.name for p in pool.providers] == ["a", "b"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
