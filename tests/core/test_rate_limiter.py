# SPDX-License-Identifier: Apache-2.0
"""
Per-provider admission control.

Covers:
  • in-flight operations never exceed max_concurrent
  • queued work is admitted by priority, FIFO within a priority
  • a full queue rejects with RateLimitExceeded; admission can time out
  • an empty reservoir and min_gap_ms delay (not reject) callers
  • providers are isolated: a saturated provider never delays another
  • registry defaults, reconfiguration and disposal
"""

import asyncio

import pytest

from relay_sdk.core.config import RateLimitConfig
from relay_sdk.core.errors import RateLimitExceeded, RequestTimeout, ValidationError
from relay_sdk.core.rate_limiter import ProviderRateLimiter, RateLimiterRegistry

pytestmark = pytest.mark.asyncio


def _config(**overrides):
    base = dict(max_requests=1_000, interval_ms=60_000, min_gap_ms=0, max_concurrent=5, queue_depth=100)
    base.update(overrides)
    return RateLimitConfig(**base)


async def test_concurrency_never_exceeds_limit():
    limiter = ProviderRateLimiter("p", _config(max_concurrent=2))
    in_flight = 0
    peak = 0

    async def work():
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return "ok"

    results = await asyncio.gather(*(limiter.schedule(work) for _ in range(6)))
    assert results == ["ok"] * 6
    assert peak == 2, f"peak concurrency should be 2, saw {peak}"
    status = limiter.get_status()
    assert (status["admitted"], status["completed"], status["running"]) == (6, 6, 0)


async def test_priority_order_with_fifo_ties():
    limiter = ProviderRateLimiter("p", _config(max_concurrent=1))
    await limiter.acquire()  # hold the only slot
    order = []

    async def queued(name, priority):
        await limiter.acquire(priority=priority)
        order.append(name)
        limiter.release()

    tasks = [
        asyncio.ensure_future(queued("low", 9)),
        asyncio.ensure_future(queued("mid", 5)),
        asyncio.ensure_future(queued("high1", 0)),
        asyncio.ensure_future(queued("high2", 0)),
    ]
    await asyncio.sleep(0)
    assert limiter.get_status()["queued"] == 4

    limiter.release()
    await asyncio.gather(*tasks)
    assert order == ["high1", "high2", "mid", "low"], f"unexpected admission order {order}"


async def test_queue_overflow_rejects():
    limiter = ProviderRateLimiter("p", _config(max_concurrent=1, queue_depth=1))
    await limiter.acquire()
    waiting = asyncio.ensure_future(limiter.acquire())
    await asyncio.sleep(0)

    with pytest.raises(RateLimitExceeded) as info:
        await limiter.acquire()
    assert info.value.retryable is True
    assert limiter.get_status()["rejected"] == 1

    limiter.release()
    await waiting
    limiter.release()


async def test_admission_timeout():
    limiter = ProviderRateLimiter("p", _config(max_concurrent=1))
    await limiter.acquire()
    with pytest.raises(RequestTimeout) as info:
        await limiter.acquire(timeout_ms=20)
    assert info.value.details["timeout_ms"] == 20
    assert limiter.get_status()["queued"] == 0, "timed-out waiter must leave the queue"
    limiter.release()


async def test_empty_reservoir_delays_until_refill():
    loop = asyncio.get_running_loop()
    limiter = ProviderRateLimiter("p", _config(max_requests=2, interval_ms=100))

    async def noop():
        return None

    start = loop.time()
    for _ in range(3):
        await limiter.schedule(noop)
    elapsed = loop.time() - start
    assert elapsed >= 0.08, f"third admission should wait for the refill, took {elapsed:.3f}s"
    assert limiter.get_status()["rejected"] == 0, "an empty reservoir delays, it never rejects"


async def test_min_gap_spaces_admissions():
    loop = asyncio.get_running_loop()
    limiter = ProviderRateLimiter("p", _config(min_gap_ms=50))
    await limiter.acquire()
    start = loop.time()
    await limiter.acquire()
    assert loop.time() - start >= 0.04
    limiter.release()
    limiter.release()


async def test_invalid_priority():
    limiter = ProviderRateLimiter("p", _config())
    for bad in (-1, 10, 2.5, True):
        with pytest.raises(ValidationError):
            await limiter.acquire(priority=bad)


async def test_failed_work_releases_slot():
    limiter = ProviderRateLimiter("p", _config(max_concurrent=1))

    async def boom():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await limiter.schedule(boom)
    assert limiter.get_status()["running"] == 0


async def test_dispose_fails_waiters():
    limiter = ProviderRateLimiter("p", _config(max_concurrent=1))
    await limiter.acquire()
    waiting = asyncio.ensure_future(limiter.acquire())
    await asyncio.sleep(0)
    limiter.dispose()
    with pytest.raises(RateLimitExceeded):
        await waiting
    with pytest.raises(RateLimitExceeded):
        await limiter.acquire()


async def test_update_config_admits_waiters():
    limiter = ProviderRateLimiter("p", _config(max_concurrent=1))
    await limiter.acquire()
    waiting = asyncio.ensure_future(limiter.acquire())
    await asyncio.sleep(0)
    limiter.update_config(_config(max_concurrent=2))
    await asyncio.wait_for(waiting, 1.0)
    assert limiter.get_status()["running"] == 2


async def test_registry_defaults_and_clear():
    registry = RateLimiterRegistry(_config(max_requests=7, max_concurrent=3))
    status = registry.get_status("openai")
    assert status["running"] == 0
    assert status["available"] == 3
    assert registry.get_all_stats() == {}, "status queries must not create limiters"

    async def work():
        return 42

    assert await registry.schedule("openai", work) == 42
    assert registry.get_status("openai")["reservoir"] == 6

    registry.clear_provider("openai")
    assert registry.get_all_stats() == {}
    assert registry.get_status("openai")["reservoir"] == 7, "a cleared provider starts fresh"


async def test_providers_do_not_contend():
    registry = RateLimiterRegistry(_config(max_concurrent=1))
    await registry.limiter_for("a").acquire()  # saturate provider "a"
    blocked = asyncio.ensure_future(registry.limiter_for("a").acquire())
    await asyncio.sleep(0)
    assert not blocked.done()

    async def work():
        return "ok"

    assert await asyncio.wait_for(registry.schedule("b", work), 0.5) == "ok"
    assert registry.get_status("a")["running"] == 1, "provider b's work leaves a's slot untouched"

    registry.limiter_for("a").release()
    await asyncio.wait_for(blocked, 1.0)
    registry.limiter_for("a").release()


async def test_registry_update_config_applies_to_new_limiters():
    registry = RateLimiterRegistry(_config())
    registry.limiter_for("a")
    registry.update_config(_config(max_concurrent=1))
    assert registry.limiter_for("a").config.max_concurrent == 1
    assert registry.limiter_for("b").config.max_concurrent == 1
    await registry.drain_all()
