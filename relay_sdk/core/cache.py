# relay_sdk/core/cache.py
# SPDX-License-Identifier: Apache-2.0

"""
TTL result caches shared by every adapter pipeline.

Two interchangeable implementations expose the same contract
(``get`` / ``set`` / ``has`` / ``clear`` / ``get_stats`` / ``update_config``):

- :class:`SimpleTTLCache`: dict in insertion order; evicts the oldest *inserted*
  entry once at capacity.
- :class:`LRUTTLCache`: access-ordered; evicts the least recently *used* entry.

Entries are logically expired once ``now - stored_at > ttl``. Every read
re-checks expiry; the periodic sweep (every ``min(ttl / 2, 60s)``) only reclaims
memory earlier and is never relied upon for correctness.

Characteristics:
    - Per-process only; NOT shared/distributed.
    - Values are deep-copied on the way in and out, so callers never share
      a mutable result with the cache.
    - Mutations are guarded by a re-entrant lock, so the cache is also safe to
      touch from worker threads (e.g. status endpoints).
"""

from __future__ import annotations

import asyncio
import copy
import dataclasses
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, MutableMapping, Optional

from relay_sdk.core.config import CacheConfig
from relay_sdk.core.errors import ValidationError

LOG = logging.getLogger(__name__)

MAX_SWEEP_INTERVAL_MS = 60_000


def _json_default(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=repr)
    return repr(obj)


def make_cache_key(provider_id: str, method: str, params: Mapping[str, Any]) -> str:
    """
    Deterministic key for a request: ``{provider}:{method}:{sorted-json(params)}``.

    Keys are sorted recursively, so parameter insertion order never matters.
    """
    payload = json.dumps(
        dict(params or {}),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )
    return f"{provider_id}:{method}:{payload}"


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass
class CacheEntry:
    data: Any
    stored_at_ms: float
    ttl_ms: int

    def is_expired(self, now_ms: float) -> bool:
        return now_ms - self.stored_at_ms > self.ttl_ms


class BaseTTLCache:
    """Shared TTL logic; subclasses choose the backing map and eviction order."""

    kind = "base"

    def __init__(self, config: Optional[CacheConfig] = None, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._config = config or CacheConfig()
        self._clock = clock or _monotonic_ms
        self._lock = threading.RLock()
        self._entries: MutableMapping[str, CacheEntry] = self._new_store()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._sweep_task: Optional["asyncio.Task[None]"] = None

    # ------------------------------------------------------------------ hooks

    def _new_store(self) -> MutableMapping[str, CacheEntry]:
        raise NotImplementedError

    def _touch(self, key: str) -> None:
        """Called on a successful read; LRU moves the key to the young end."""

    def _evict_one(self) -> None:
        # Both stores iterate oldest-first.
        oldest = next(iter(self._entries))
        del self._entries[oldest]
        self._evictions += 1

    # --------------------------------------------------------------- contract

    @property
    def config(self) -> CacheConfig:
        return self._config

    def get(self, provider_id: str, method: str, params: Mapping[str, Any]) -> Optional[Any]:
        if not self._config.enabled:
            return None
        key = make_cache_key(provider_id, method, params)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._misses += 1
                return None
            self._touch(key)
            self._hits += 1
            return copy.deepcopy(entry.data)

    def set(
        self,
        provider_id: str,
        method: str,
        params: Mapping[str, Any],
        data: Any,
        ttl_ms: Optional[int] = None,
    ) -> None:
        if not self._config.enabled:
            return
        ttl = self._config.ttl_ms if ttl_ms is None else int(ttl_ms)
        if ttl <= 0:
            raise ValidationError("cache ttl_ms must be > 0")
        key = make_cache_key(provider_id, method, params)
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            while self._entries and len(self._entries) >= self._config.max_size:
                self._evict_one()
            self._entries[key] = CacheEntry(data=copy.deepcopy(data), stored_at_ms=self._clock(), ttl_ms=ttl)

    def has(self, provider_id: str, method: str, params: Mapping[str, Any]) -> bool:
        if not self._config.enabled:
            return False
        key = make_cache_key(provider_id, method, params)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return False
            return True

    def delete(self, provider_id: str, method: str, params: Mapping[str, Any]) -> bool:
        key = make_cache_key(provider_id, method, params)
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def clear_provider(self, provider_id: str) -> int:
        """Drop every entry belonging to `provider_id`; returns how many were removed."""
        prefix = f"{provider_id}:"
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            doomed = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in doomed:
                del self._entries[k]
        if doomed:
            LOG.debug("cache sweep removed %d expired entries", len(doomed))
        return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "kind": self.kind,
                "size": len(self._entries),
                "max_size": self._config.max_size,
                "enabled": self._config.enabled,
                "ttl_ms": self._config.ttl_ms,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }

    def update_config(self, config: CacheConfig) -> None:
        """Apply new settings in place; shrinking ``max_size`` evicts immediately."""
        if config.kind != self.kind:
            LOG.warning("cache kind %r cannot change at runtime; keeping %r", config.kind, self.kind)
        with self._lock:
            self._config = config
            if not config.enabled:
                self._entries.clear()
            while self._entries and len(self._entries) > max(0, config.max_size):
                self._evict_one()

    # ------------------------------------------------------------ background

    def sweep_interval_ms(self) -> float:
        return min(max(self._config.ttl_ms / 2.0, 1.0), MAX_SWEEP_INTERVAL_MS)

    def start_sweeper(self) -> None:
        """Start the periodic sweep on the running loop (idempotent)."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_ms() / 1000.0)
            if self._config.enabled:
                self.sweep_expired()

    async def close(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class SimpleTTLCache(BaseTTLCache):
    """Insertion-ordered map; evicts the oldest inserted entry at capacity."""

    kind = "simple"

    def _new_store(self) -> MutableMapping[str, CacheEntry]:
        return {}


class LRUTTLCache(BaseTTLCache):
    """Access-ordered map; reads refresh recency, eviction drops the least recently used."""

    kind = "lru"

    def _new_store(self) -> MutableMapping[str, CacheEntry]:
        return OrderedDict()

    def _touch(self, key: str) -> None:
        self._entries.move_to_end(key)  # type: ignore[attr-defined]


def create_cache(config: Optional[CacheConfig] = None, **kwargs: Any) -> BaseTTLCache:
    """Build the cache implementation selected by ``config.kind``."""
    config = config or CacheConfig()
    if config.kind == "lru":
        return LRUTTLCache(config, **kwargs)
    if config.kind == "simple":
        return SimpleTTLCache(config, **kwargs)
    raise ValidationError(f"unknown cache kind: {config.kind!r}")


__all__ = [
    "CacheEntry",
    "BaseTTLCache",
    "SimpleTTLCache",
    "LRUTTLCache",
    "create_cache",
    "make_cache_key",
]
