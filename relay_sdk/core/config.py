# relay_sdk/core/config.py
# SPDX-License-Identifier: Apache-2.0

"""
Configuration surface for the orchestration runtime.

All configuration objects are frozen dataclasses; "changing" configuration means
building a new object (``merge_config`` / ``dataclasses.replace``) and pushing it
into the live components via their ``update_config`` methods, so already
constructed adapters pick it up without a restart.

Recognized options::

    rate_limit: {max_requests, interval_ms, min_gap_ms, max_concurrent, queue_depth}
    cache:      {ttl_ms, max_size, enabled, kind}
    timeout_ms, max_retries, retry_base_delay_ms
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from relay_sdk.core.errors import ValidationError

LOG = logging.getLogger(__name__)

ENV_VAR = "RELAY_ENV"
CACHE_KINDS = ("simple", "lru")


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-provider admission settings (reservoir, spacing, concurrency, queue)."""
    max_requests: int = 60
    interval_ms: int = 60_000
    min_gap_ms: int = 1_000
    max_concurrent: int = 5
    queue_depth: int = 100


@dataclass(frozen=True)
class CacheConfig:
    ttl_ms: int = 300_000
    max_size: int = 1_000
    enabled: bool = True
    kind: str = "simple"


@dataclass(frozen=True)
class ServiceConfig:
    """Runtime-wide settings shared by the pipeline of every adapter."""
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    timeout_ms: int = 30_000
    max_retries: int = 3
    retry_base_delay_ms: int = 1_000

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class ProviderConfig:
    """
    Connection settings handed to a provider adapter.

    ``timeout_ms`` overrides the service-wide timeout for this provider only.
    """
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    timeout_ms: Optional[int] = None
    default_model: Optional[str] = None

    def __repr__(self) -> str:
        masked = "***" if self.api_key else None
        return (
            f"ProviderConfig(api_key={masked!r}, base_url={self.base_url!r}, "
            f"timeout_ms={self.timeout_ms!r}, default_model={self.default_model!r})"
        )


# =============================================================================
# Presets
# =============================================================================

DEFAULT_CONFIG = ServiceConfig()

DEVELOPMENT_CONFIG = ServiceConfig(
    rate_limit=RateLimitConfig(max_requests=100, interval_ms=60_000, min_gap_ms=500),
    cache=CacheConfig(ttl_ms=60_000, max_size=500),
    timeout_ms=60_000,
    max_retries=1,
    retry_base_delay_ms=500,
)

PRODUCTION_CONFIG = ServiceConfig(
    rate_limit=RateLimitConfig(max_requests=30, interval_ms=60_000, min_gap_ms=2_000),
    cache=CacheConfig(ttl_ms=600_000, max_size=2_000),
    timeout_ms=20_000,
    max_retries=5,
    retry_base_delay_ms=2_000,
)

_PRESETS: Dict[str, ServiceConfig] = {
    "default": DEFAULT_CONFIG,
    "development": DEVELOPMENT_CONFIG,
    "production": PRODUCTION_CONFIG,
}

RATE_LIMIT_TIERS: Dict[str, RateLimitConfig] = {
    "free": RateLimitConfig(max_requests=10, interval_ms=60_000, min_gap_ms=5_000),
    "basic": RateLimitConfig(max_requests=30, interval_ms=60_000, min_gap_ms=2_000),
    "premium": RateLimitConfig(max_requests=100, interval_ms=60_000, min_gap_ms=1_000),
    "enterprise": RateLimitConfig(max_requests=1_000, interval_ms=60_000, min_gap_ms=100),
}

CACHE_PRESETS: Dict[str, CacheConfig] = {
    "development": CacheConfig(ttl_ms=60_000, max_size=100),
    "production": CacheConfig(ttl_ms=600_000, max_size=1_000),
    "testing": CacheConfig(ttl_ms=1_000, max_size=10),
    "disabled": CacheConfig(ttl_ms=0, max_size=0, enabled=False),
}


def rate_limit_for_tier(tier: str) -> RateLimitConfig:
    try:
        return RATE_LIMIT_TIERS[tier]
    except KeyError:
        raise ValidationError(f"unknown rate limit tier: {tier!r}") from None


def cache_config_for(use_case: str) -> CacheConfig:
    try:
        return CACHE_PRESETS[use_case]
    except KeyError:
        raise ValidationError(f"unknown cache preset: {use_case!r}") from None


# =============================================================================
# Validation / merge
# =============================================================================

def validate_config(config: ServiceConfig) -> None:
    """Raise ValidationError listing every invalid field of `config`."""
    problems = []
    rl, cache = config.rate_limit, config.cache
    if rl.max_requests <= 0:
        problems.append("rate_limit.max_requests must be > 0")
    if rl.interval_ms <= 0:
        problems.append("rate_limit.interval_ms must be > 0")
    if rl.min_gap_ms < 0:
        problems.append("rate_limit.min_gap_ms must be >= 0")
    if rl.max_concurrent <= 0:
        problems.append("rate_limit.max_concurrent must be > 0")
    if rl.queue_depth <= 0:
        problems.append("rate_limit.queue_depth must be > 0")
    if cache.kind not in CACHE_KINDS:
        problems.append(f"cache.kind must be one of {CACHE_KINDS}")
    if cache.enabled:
        if cache.ttl_ms <= 0:
            problems.append("cache.ttl_ms must be > 0")
        if cache.max_size <= 0:
            problems.append("cache.max_size must be > 0")
    if config.timeout_ms <= 0:
        problems.append("timeout_ms must be > 0")
    if config.max_retries < 0:
        problems.append("max_retries must be >= 0")
    if config.retry_base_delay_ms <= 0:
        problems.append("retry_base_delay_ms must be > 0")
    if problems:
        raise ValidationError("; ".join(problems), details={"problems": problems})


def _replace_section(section: Any, overrides: Any, name: str) -> Any:
    if overrides is None:
        return section
    if isinstance(overrides, type(section)):
        return overrides
    if not isinstance(overrides, Mapping):
        raise ValidationError(f"{name} overrides must be a mapping")
    known = {f.name for f in dataclasses.fields(section)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValidationError(f"unknown {name} option(s): {', '.join(unknown)}")
    return dataclasses.replace(section, **dict(overrides))


def merge_config(base: ServiceConfig, overrides: Optional[Mapping[str, Any]] = None) -> ServiceConfig:
    """
    Return `base` with `overrides` applied.

    Nested sections accept either a mapping of changed fields or a full
    RateLimitConfig / CacheConfig instance.
    """
    if not overrides:
        return base
    overrides = dict(overrides)
    rate_limit = _replace_section(base.rate_limit, overrides.pop("rate_limit", None), "rate_limit")
    cache = _replace_section(base.cache, overrides.pop("cache", None), "cache")
    top = {f.name for f in dataclasses.fields(base)} - {"rate_limit", "cache"}
    unknown = sorted(set(overrides) - top)
    if unknown:
        raise ValidationError(f"unknown config option(s): {', '.join(unknown)}")
    return dataclasses.replace(base, rate_limit=rate_limit, cache=cache, **overrides)


# =============================================================================
# Environment loading
# =============================================================================

_ENV_OVERRIDES = {
    "RELAY_RATE_LIMIT_MAX_REQUESTS": ("rate_limit", "max_requests", int),
    "RELAY_RATE_LIMIT_INTERVAL_MS": ("rate_limit", "interval_ms", int),
    "RELAY_RATE_LIMIT_MIN_GAP_MS": ("rate_limit", "min_gap_ms", int),
    "RELAY_CACHE_TTL_MS": ("cache", "ttl_ms", int),
    "RELAY_CACHE_MAX_SIZE": ("cache", "max_size", int),
    "RELAY_CACHE_ENABLED": ("cache", "enabled", "bool"),
    "RELAY_TIMEOUT_MS": (None, "timeout_ms", int),
    "RELAY_MAX_RETRIES": (None, "max_retries", int),
    "RELAY_RETRY_BASE_DELAY_MS": (None, "retry_base_delay_ms", int),
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_env_value(var: str, raw: str, kind: Any) -> Any:
    text = raw.strip()
    if kind == "bool":
        lowered = text.lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValidationError(f"{var} must be a boolean, got {raw!r}")
    try:
        return kind(text)
    except ValueError:
        raise ValidationError(f"{var} must be an integer, got {raw!r}") from None


def get_config(env: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> ServiceConfig:
    """
    Build a validated ServiceConfig from a named preset plus ``RELAY_*`` overrides.

    Args:
        env: Preset name; defaults to ``$RELAY_ENV`` or ``development``.
        environ: Mapping to read variables from (defaults to ``os.environ``).
    """
    environ = os.environ if environ is None else environ
    name = (env or environ.get(ENV_VAR) or "development").strip().lower()
    base = _PRESETS.get(name)
    if base is None:
        LOG.warning("unknown %s=%r; falling back to default configuration", ENV_VAR, name)
        base = DEFAULT_CONFIG

    overrides: Dict[str, Any] = {}
    for var, (section, key, kind) in _ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        value = _parse_env_value(var, raw, kind)
        if section is None:
            overrides[key] = value
        else:
            overrides.setdefault(section, {})[key] = value

    config = merge_config(base, overrides)
    validate_config(config)
    return config


__all__ = [
    "RateLimitConfig",
    "CacheConfig",
    "ServiceConfig",
    "ProviderConfig",
    "DEFAULT_CONFIG",
    "DEVELOPMENT_CONFIG",
    "PRODUCTION_CONFIG",
    "RATE_LIMIT_TIERS",
    "CACHE_PRESETS",
    "rate_limit_for_tier",
    "cache_config_for",
    "validate_config",
    "merge_config",
    "get_config",
]
