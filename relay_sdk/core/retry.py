# relay_sdk/core/retry.py
# SPDX-License-Identifier: Apache-2.0

"""
Async retry with exponential backoff.

Every failure is first classified into the AIError taxonomy; only classified
errors flagged ``retryable`` are attempted again. After exhaustion the final
attempt's classified error propagates (never an aggregate).

Delay before retry ``n`` (0-based)::

    delay = base_delay_ms * multiplier ** n
    delay += random() * jitter_ratio * delay        # jitter <= 10% by default
    delay = max(delay, err.retry_after_ms)          # when the provider sent one

Usage:
    policy = RetryPolicy(max_retries=3, base_delay_ms=1000)
    result = await retry_async(
        lambda: client.call(...),
        policy=policy,
        classify=lambda e: classify_error(e, "openai"),
    )
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from relay_sdk.core.errors import AIError, classify_error

LOG = logging.getLogger(__name__)

__all__ = ["RetryPolicy", "RetryStats", "retry_async"]


@dataclass(frozen=True)
class RetryStats:
    """
    Statistics about a retried operation.

    Attributes:
        attempts: Number of attempts made (including the successful one)
        total_delay_ms: Time spent sleeping between attempts
        last_error: The last classified error seen before success, if any
    """
    attempts: int
    total_delay_ms: float
    last_error: Optional[AIError] = None


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration with exponential backoff.

    Attributes:
        max_retries:   Retries after the first attempt (total attempts = max_retries + 1).
        base_delay_ms: Delay before the first retry.
        multiplier:    Exponential growth factor per retry.
        jitter_ratio:  Upper bound of the random extra delay, as a fraction of the delay.
        max_delay_ms:  Optional cap applied before jitter.
    """

    max_retries: int = 3
    base_delay_ms: int = 1_000
    multiplier: float = 2.0
    jitter_ratio: float = 0.1
    max_delay_ms: Optional[int] = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_ms <= 0:
            raise ValueError("base_delay_ms must be positive")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if not 0.0 <= self.jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be within [0, 1]")
        if self.max_delay_ms is not None and self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms cannot be smaller than base_delay_ms")

    def backoff_ms(self, attempt_index: int) -> float:
        """Exponential backoff (without jitter) before retry `attempt_index`."""
        raw = self.base_delay_ms * (self.multiplier ** attempt_index)
        if self.max_delay_ms is not None:
            raw = min(raw, self.max_delay_ms)
        return float(raw)

    def delay_ms(
        self,
        attempt_index: int,
        rand: Callable[[], float] = random.random,
        retry_after_ms: Optional[int] = None,
    ) -> float:
        """
        Jittered backoff before retry `attempt_index`.

        A server-provided ``retry_after_ms`` raises the delay to at least that
        hint, still bounded by ``max_delay_ms`` when one is set.
        """
        backoff = self.backoff_ms(attempt_index)
        delay = backoff + rand() * self.jitter_ratio * backoff
        if retry_after_ms is not None:
            hint = float(retry_after_ms)
            if self.max_delay_ms is not None:
                hint = min(hint, float(self.max_delay_ms))
            delay = max(delay, hint)
        return delay


async def retry_async(
    fn: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy = RetryPolicy(),
    classify: Callable[[BaseException], AIError] = classify_error,
    on_backoff: Optional[Callable[[int, float, AIError], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    return_stats: bool = False,
) -> Any:
    """
    Execute an async operation with retries on retryable errors.

    Args:
        fn:           Zero-arg coroutine factory invoked on every attempt.
        policy:       RetryPolicy controlling attempt count and backoff.
        classify:     Maps raw exceptions into AIError.
        on_backoff:   Optional callback (attempt_no, delay_ms, error) before sleeping.
        sleep:        Awaitable sleep in seconds (injectable for tests).
        return_stats: If True, returns (result, RetryStats) instead of just result.

    Raises:
        The classified error of the final attempt, or of the first non-retryable failure.
    """
    total_delay = 0.0
    last_error: Optional[AIError] = None

    for attempt in range(policy.max_retries + 1):
        try:
            result = await fn()
        except Exception as exc:
            err = classify(exc)
            last_error = err
            if not err.retryable or attempt >= policy.max_retries:
                if err is exc:
                    raise
                raise err from exc

            delay = policy.delay_ms(attempt, retry_after_ms=err.retry_after_ms)
            total_delay += delay
            if on_backoff is not None:
                try:
                    on_backoff(attempt + 1, delay, err)
                except Exception:  # noqa: BLE001
                    # Hooks must never break the retry loop.
                    LOG.debug("on_backoff hook failed", exc_info=True)
            await sleep(delay / 1000.0)
            continue

        if return_stats:
            return result, RetryStats(attempts=attempt + 1, total_delay_ms=total_delay, last_error=last_error)
        return result

    # Unreachable: the loop either returns or raises.
    raise AssertionError("retry loop exited without result")
