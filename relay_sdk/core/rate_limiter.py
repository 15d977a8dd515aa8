# relay_sdk/core/rate_limiter.py
# SPDX-License-Identifier: Apache-2.0

"""
Per-provider admission control.

Each :class:`ProviderRateLimiter` combines four independent gates:

- a *reservoir* of ``max_requests`` admissions that is reset to full every
  ``interval_ms`` (a hard periodic reset, not a smooth leak);
- a ``max_concurrent`` cap on in-flight operations;
- a ``min_gap_ms`` minimum spacing between consecutive admissions;
- a bounded wait queue of ``queue_depth`` entries.

Queued work is admitted in priority order (lower value first, FIFO within the
same priority). An empty reservoir only delays callers; the only admission
errors are queue overflow (``RateLimitExceeded``) and an optional admission
timeout (``RequestTimeout``).

All state lives on the event loop and is mutated only in synchronous sections
between awaits, so no extra locking is needed for admission. The registry map
itself is guarded by a lock because it may be read from other threads.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from relay_sdk.core.config import RateLimitConfig
from relay_sdk.core.errors import RateLimitExceeded, RequestTimeout, ValidationError

LOG = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PRIORITY = 5
MIN_PRIORITY = 0
MAX_PRIORITY = 9


def _now_ms() -> float:
    return time.monotonic() * 1000.0


class _Waiter:
    __slots__ = ("future", "abandoned")

    def __init__(self, future: "asyncio.Future[None]") -> None:
        self.future = future
        self.abandoned = False


class ProviderRateLimiter:
    """Reservoir + concurrency + spacing + bounded priority queue for one provider."""

    def __init__(self, provider_id: str, config: Optional[RateLimitConfig] = None) -> None:
        self.provider_id = provider_id
        self._config = config or RateLimitConfig()
        self._heap: List[Tuple[int, int, _Waiter]] = []
        self._seq = itertools.count()
        self._queued = 0
        self._running = 0
        self._reservoir = self._config.max_requests
        self._window_start = _now_ms()
        self._last_start: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._timer_due: Optional[float] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._disposed = False
        self._admitted = 0
        self._completed = 0
        self._rejected = 0

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    # ------------------------------------------------------------- admission

    async def schedule(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        priority: int = DEFAULT_PRIORITY,
        timeout_ms: Optional[int] = None,
    ) -> T:
        """Wait for admission, run `fn`, and free the slot whatever the outcome."""
        await self.acquire(priority=priority, timeout_ms=timeout_ms)
        try:
            return await fn()
        finally:
            self.release()

    async def acquire(self, *, priority: int = DEFAULT_PRIORITY, timeout_ms: Optional[int] = None) -> None:
        """
        Wait until this caller may start an operation.

        Raises:
            ValidationError: priority outside [0, 9].
            RateLimitExceeded: the wait queue is full (or the limiter was disposed).
            RequestTimeout: not admitted within `timeout_ms`.
        """
        if isinstance(priority, bool) or not isinstance(priority, int) or not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValidationError(f"priority must be an integer in [{MIN_PRIORITY}, {MAX_PRIORITY}]")
        if self._disposed:
            raise RateLimitExceeded(
                f"rate limiter for {self.provider_id} has been disposed",
                provider_id=self.provider_id,
                retryable=False,
            )
        if self._queued >= self._config.queue_depth:
            self._rejected += 1
            raise RateLimitExceeded(
                f"rate limiter queue for {self.provider_id} is full",
                provider_id=self.provider_id,
                details={"queue_depth": self._config.queue_depth},
            )

        self._loop = asyncio.get_running_loop()
        waiter = _Waiter(self._loop.create_future())
        heapq.heappush(self._heap, (priority, next(self._seq), waiter))
        self._queued += 1
        self._dispatch()

        try:
            if timeout_ms is None:
                await waiter.future
            else:
                await asyncio.wait_for(waiter.future, timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            self._abandon(waiter)
            raise RequestTimeout(
                f"not admitted by {self.provider_id} rate limiter within {timeout_ms}ms",
                timeout_ms=timeout_ms,
                provider_id=self.provider_id,
            ) from None
        except asyncio.CancelledError:
            self._abandon(waiter)
            raise
        LOG.debug("admitted %s (priority=%d, running=%d)", self.provider_id, priority, self._running)

    def release(self) -> None:
        """Free an admitted slot and let the next waiter in."""
        if self._running > 0:
            self._running -= 1
            self._completed += 1
        self._dispatch()

    # ------------------------------------------------------------- internals

    def _abandon(self, waiter: _Waiter) -> None:
        fut = waiter.future
        if fut.done() and not fut.cancelled() and fut.exception() is None:
            # Admission raced with timeout/cancel: the slot was granted, hand it back.
            self.release()
            return
        if not waiter.abandoned:
            waiter.abandoned = True
            self._queued -= 1
        if not fut.done():
            fut.cancel()
        self._dispatch()

    def _refill(self, now: float) -> None:
        interval = self._config.interval_ms
        elapsed = now - self._window_start
        if elapsed >= interval:
            self._window_start += (elapsed // interval) * interval
            self._reservoir = self._config.max_requests

    def _arm_timer(self, delay_ms: float) -> None:
        if self._loop is None:
            return
        due = self._loop.time() + max(delay_ms, 0.0) / 1000.0
        if self._timer is not None and self._timer_due is not None and self._timer_due <= due:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer_due = due
        self._timer = self._loop.call_at(due, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._timer_due = None
        self._dispatch()

    def _dispatch(self) -> None:
        if self._disposed:
            return
        now = _now_ms()
        self._refill(now)
        while self._heap and self._running < self._config.max_concurrent:
            waiter = self._heap[0][2]
            if waiter.abandoned or waiter.future.done():
                heapq.heappop(self._heap)
                continue
            if self._reservoir <= 0:
                self._arm_timer(self._window_start + self._config.interval_ms - now)
                return
            if self._last_start is not None:
                gap = self._last_start + self._config.min_gap_ms - now
                if gap > 0:
                    self._arm_timer(gap)
                    return
            heapq.heappop(self._heap)
            self._queued -= 1
            self._reservoir -= 1
            self._running += 1
            self._admitted += 1
            self._last_start = now
            waiter.future.set_result(None)

    # ------------------------------------------------------------ management

    def get_status(self) -> Dict[str, Any]:
        self._refill(_now_ms())
        free_slots = max(0, self._config.max_concurrent - self._running)
        return {
            "provider_id": self.provider_id,
            "running": self._running,
            "queued": self._queued,
            "reservoir": self._reservoir,
            "available": max(0, min(self._reservoir, free_slots)),
            "max_concurrent": self._config.max_concurrent,
            "queue_depth": self._config.queue_depth,
            "admitted": self._admitted,
            "completed": self._completed,
            "rejected": self._rejected,
        }

    def update_config(self, config: RateLimitConfig) -> None:
        """Apply new limits in place; a changed ``max_requests`` refills the reservoir."""
        previous, self._config = self._config, config
        if config.max_requests != previous.max_requests:
            self._reservoir = config.max_requests
        if config.interval_ms != previous.interval_ms:
            self._window_start = _now_ms()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self._timer_due = None
        if self._loop is not None and not self._loop.is_closed():
            self._dispatch()

    def dispose(self) -> None:
        """Reject every queued waiter and refuse further admissions."""
        if self._disposed:
            return
        self._disposed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        while self._heap:
            _, _, waiter = heapq.heappop(self._heap)
            if not waiter.abandoned and not waiter.future.done():
                waiter.future.set_exception(
                    RateLimitExceeded(
                        f"rate limiter for {self.provider_id} was cleared",
                        provider_id=self.provider_id,
                        retryable=False,
                    )
                )
        self._queued = 0

    async def drain(self, poll_s: float = 0.01) -> None:
        """Wait until nothing is running or queued."""
        while self._running or self._queued:
            await asyncio.sleep(poll_s)


class RateLimiterRegistry:
    """
    Concurrency-safe map from provider id to its limiter.

    Limiters are created lazily on first use with the registry's current
    configuration and can be disposed individually or all at once.
    """

    def __init__(self, config: Optional[RateLimitConfig] = None) -> None:
        self._config = config or RateLimitConfig()
        self._limiters: Dict[str, ProviderRateLimiter] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def limiter_for(self, provider_id: str) -> ProviderRateLimiter:
        with self._lock:
            limiter = self._limiters.get(provider_id)
            if limiter is None:
                limiter = ProviderRateLimiter(provider_id, self._config)
                self._limiters[provider_id] = limiter
            return limiter

    async def schedule(
        self,
        provider_id: str,
        fn: Callable[[], Awaitable[T]],
        *,
        priority: int = DEFAULT_PRIORITY,
        timeout_ms: Optional[int] = None,
    ) -> T:
        return await self.limiter_for(provider_id).schedule(fn, priority=priority, timeout_ms=timeout_ms)

    def get_status(self, provider_id: str) -> Dict[str, Any]:
        with self._lock:
            limiter = self._limiters.get(provider_id)
        if limiter is None:
            return {
                "provider_id": provider_id,
                "running": 0,
                "queued": 0,
                "reservoir": self._config.max_requests,
                "available": min(self._config.max_requests, self._config.max_concurrent),
                "max_concurrent": self._config.max_concurrent,
                "queue_depth": self._config.queue_depth,
                "admitted": 0,
                "completed": 0,
                "rejected": 0,
            }
        return limiter.get_status()

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            limiters = list(self._limiters.values())
        return {lim.provider_id: lim.get_status() for lim in limiters}

    def update_config(self, config: RateLimitConfig, provider_id: Optional[str] = None) -> None:
        """Reconfigure one provider's limiter, or every limiter and future ones."""
        with self._lock:
            if provider_id is None:
                self._config = config
                targets = list(self._limiters.values())
            else:
                limiter = self._limiters.get(provider_id)
                targets = [limiter] if limiter is not None else []
        for limiter in targets:
            limiter.update_config(config)

    def clear_provider(self, provider_id: str) -> None:
        with self._lock:
            limiter = self._limiters.pop(provider_id, None)
        if limiter is not None:
            limiter.dispose()

    def clear_all(self) -> None:
        with self._lock:
            limiters = list(self._limiters.values())
            self._limiters.clear()
        for limiter in limiters:
            limiter.dispose()

    async def drain_all(self) -> None:
        with self._lock:
            limiters = list(self._limiters.values())
        await asyncio.gather(*(lim.drain() for lim in limiters))


__all__ = [
    "DEFAULT_PRIORITY",
    "ProviderRateLimiter",
    "RateLimiterRegistry",
]
