# SPDX-License-Identifier: Apache-2.0
"""
Shared fixtures.

- ``fast_config``: a ServiceConfig with no admission spacing and tiny retry
  delays so pipeline tests run in milliseconds.
- ``sleeps``: an injectable async sleep that records requested delays instead
  of waiting.
- ``service``: an orchestrator with one deterministic mock provider.
"""

from __future__ import annotations

from typing import List

import pytest

from relay_sdk.core.config import CacheConfig, RateLimitConfig, ServiceConfig
from relay_sdk.mock.mock_adapter import MockAdapter
from relay_sdk.router.ai_service import AIService


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def fast_config() -> ServiceConfig:
    return ServiceConfig(
        rate_limit=RateLimitConfig(
            max_requests=1_000,
            interval_ms=60_000,
            min_gap_ms=0,
            max_concurrent=5,
            queue_depth=100,
        ),
        cache=CacheConfig(ttl_ms=60_000, max_size=100),
        timeout_ms=5_000,
        max_retries=2,
        retry_base_delay_ms=10,
    )


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def service(fast_config, sleeps) -> AIService:
    svc = AIService(config=fast_config)
    svc.create_provider(MockAdapter, sleep=sleeps)
    return svc


@pytest.fixture
def mock_adapter(service) -> MockAdapter:
    return service.get_provider("mock")
