# relay_sdk/llm/llm_base.py
# SPDX-License-Identifier: Apache-2.0

"""
Provider adapter base and middleware pipeline.

Every provider adapter subclasses :class:`BaseAIService` and implements a small
set of ``_do_*`` backend hooks. The base class owns everything that must behave
identically across providers:

    validate input → cache lookup → rate-limited admission → retry/backoff → cache store

Adapters advertise optional operations through ``capabilities``; the public
methods refuse to call a hook the adapter does not advertise and raise
``FeatureNotSupported`` instead.

Design notes
------------
- Shared state (cache and limiter registry) is injected so that one instance of
  each can serve every adapter registered with an orchestrator.
- Configuration is read at call time, so ``update_config`` affects requests that
  start after the call without rebuilding the adapter.
- Streams hold one limiter slot for their whole lifetime and are never cached.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import math
import time
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
    runtime_checkable,
)

from relay_sdk.core.cache import BaseTTLCache, create_cache
from relay_sdk.core.config import ProviderConfig, ServiceConfig, merge_config, validate_config
from relay_sdk.core.errors import AIError, FeatureNotSupported, ValidationError, classify_error
from relay_sdk.core.rate_limiter import DEFAULT_PRIORITY, RateLimiterRegistry
from relay_sdk.core.retry import RetryPolicy, retry_async

LOG = logging.getLogger(__name__)

FINISH_REASONS = ("stop", "length", "content_filter", "function_call")
MESSAGE_ROLES = ("system", "user", "assistant")
IMAGE_SIZES = ("256x256", "512x512", "1024x1024", "1792x1024", "1024x1792")
IMAGE_QUALITIES = ("standard", "hd")
IMAGE_STYLES = ("vivid", "natural")


class Capability(str, enum.Enum):
    """Operations an adapter may support beyond the mandatory text/chat pair."""
    TEXT = "text"
    CHAT = "chat"
    EMBEDDING = "embedding"
    IMAGE = "image"
    TEXT_STREAM = "text_stream"
    CHAT_STREAM = "chat_stream"
    SUMMARIZE = "summarize"


# =============================================================================
# Metrics
# =============================================================================

@runtime_checkable
class MetricsSink(Protocol):
    """
    Metrics collection protocol.

    Implementations MUST:
        - Avoid prompt text and other PII in labels.
        - Avoid high-cardinality labels.
    """
    def observe(
        self,
        *,
        component: str,
        op: str,
        ms: float,
        ok: bool,
        code: str = "OK",
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...

    def counter(
        self,
        *,
        component: str,
        name: str,
        value: int = 1,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...


class NoopMetrics:
    """No-op metrics sink for tests or minimal deployments."""
    def observe(self, **_: Any) -> None: ...
    def counter(self, **_: Any) -> None: ...


# =============================================================================
# Result models
# =============================================================================

@dataclass
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class GenerateResult:
    """
    Completed text or chat generation.

    Attributes:
        text:
            Generated text.
        finish_reason:
            One of ``stop``, ``length``, ``content_filter``, ``function_call``.
        model:
            Concrete model that served the request.
        created_at:
            Provider timestamp (epoch seconds) or local time when absent.
        usage:
            Token accounting when the provider reports it.
    """
    text: str
    finish_reason: str
    model: str
    created_at: float
    usage: Optional[TokenUsage] = None


@dataclass
class EmbeddingResult:
    embedding: List[float]
    model: str
    usage: Optional[TokenUsage] = None


@dataclass
class ImageResult:
    url: Optional[str]
    model: str
    revised_prompt: Optional[str] = None
    b64_json: Optional[str] = None


@dataclass(frozen=True)
class StreamChunk:
    """One increment of streamed output; ``finish_reason`` is set on the last chunk only."""
    text: str
    finish_reason: Optional[str] = None


# =============================================================================
# Options
# =============================================================================

@dataclass(frozen=True)
class GenerateOptions:
    """Caller-facing generation options; every field is optional."""
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    model: Optional[str] = None
    stop_sequences: Sequence[str] = ()
    stream: bool = False

    @classmethod
    def coerce(cls, options: Union["GenerateOptions", Mapping[str, Any], None]) -> "GenerateOptions":
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        if not isinstance(options, Mapping):
            raise ValidationError("options must be GenerateOptions or a mapping")
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ValidationError(f"unknown option(s): {', '.join(unknown)}")
        return cls(**dict(options))


@dataclass(frozen=True)
class NormalizedOptions:
    """Options after defaults are filled and numeric ranges clamped."""
    max_tokens: int
    temperature: float
    top_p: float
    frequency_penalty: float
    presence_penalty: float
    model: str
    stop_sequences: Tuple[str, ...] = ()
    stream: bool = False

    def to_params(self) -> Dict[str, Any]:
        params = dataclasses.asdict(self)
        params["stop_sequences"] = list(self.stop_sequences)
        return params


def _clamp_number(name: str, value: Any, lo: float, hi: float, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise ValidationError(f"{name} must be a number")
    return min(hi, max(lo, float(value)))


def normalize_options(
    options: Union[GenerateOptions, Mapping[str, Any], None],
    *,
    default_model: str,
    default_max_tokens: int = 1000,
    max_output_tokens: int = 4096,
    stream: Optional[bool] = None,
) -> NormalizedOptions:
    """
    Fill defaults and clamp every numeric field before dispatch.

    temperature → [0, 2] (0.7), top_p → [0, 1] (1.0), penalties → [-2, 2] (0.0),
    max_tokens → [1, max_output_tokens] (default_max_tokens).
    """
    opts = GenerateOptions.coerce(options)

    if opts.max_tokens is None:
        max_tokens = default_max_tokens
    else:
        raw = opts.max_tokens
        if isinstance(raw, bool) or not isinstance(raw, (int, float)) or (
            isinstance(raw, float) and not raw.is_integer()
        ):
            raise ValidationError("max_tokens must be an integer")
        max_tokens = int(raw)
    max_tokens = min(max(1, max_tokens), max_output_tokens)

    model = opts.model if opts.model is not None else default_model
    if not isinstance(model, str) or not model.strip():
        raise ValidationError("model must be a non-empty string")

    stops = opts.stop_sequences or ()
    if isinstance(stops, str):
        stops = (stops,)
    if not all(isinstance(s, str) and s for s in stops):
        raise ValidationError("stop_sequences must be non-empty strings")

    return NormalizedOptions(
        max_tokens=max_tokens,
        temperature=_clamp_number("temperature", opts.temperature, 0.0, 2.0, 0.7),
        top_p=_clamp_number("top_p", opts.top_p, 0.0, 1.0, 1.0),
        frequency_penalty=_clamp_number("frequency_penalty", opts.frequency_penalty, -2.0, 2.0, 0.0),
        presence_penalty=_clamp_number("presence_penalty", opts.presence_penalty, -2.0, 2.0, 0.0),
        model=model,
        stop_sequences=tuple(stops),
        stream=bool(opts.stream if stream is None else stream),
    )


@dataclass(frozen=True)
class ImageOptions:
    size: str = "1024x1024"
    quality: str = "standard"
    style: str = "vivid"
    n: int = 1
    model: Optional[str] = None

    @classmethod
    def coerce(cls, options: Union["ImageOptions", Mapping[str, Any], None]) -> "ImageOptions":
        if options is None:
            opts = cls()
        elif isinstance(options, cls):
            opts = options
        elif isinstance(options, Mapping):
            known = {f.name for f in dataclasses.fields(cls)}
            unknown = sorted(set(options) - known)
            if unknown:
                raise ValidationError(f"unknown image option(s): {', '.join(unknown)}")
            opts = cls(**dict(options))
        else:
            raise ValidationError("image options must be ImageOptions or a mapping")
        if opts.size not in IMAGE_SIZES:
            raise ValidationError(f"size must be one of {IMAGE_SIZES}")
        if opts.quality not in IMAGE_QUALITIES:
            raise ValidationError(f"quality must be one of {IMAGE_QUALITIES}")
        if opts.style not in IMAGE_STYLES:
            raise ValidationError(f"style must be one of {IMAGE_STYLES}")
        if isinstance(opts.n, bool) or not isinstance(opts.n, int) or not 1 <= opts.n <= 10:
            raise ValidationError("n must be an integer in [1, 10]")
        return opts


# =============================================================================
# Input validation
# =============================================================================

def validate_input(params: Mapping[str, Any], required: Sequence[str]) -> None:
    """Raise ValidationError naming every required field that is missing or blank."""
    missing = []
    for name in required:
        value = params.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(name)
        elif isinstance(value, (list, tuple)) and not value:
            missing.append(name)
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", details={"fields": missing})


def validate_messages(messages: Any) -> List[Dict[str, str]]:
    """Check chat messages and return plain ``{role, content[, name]}`` dicts."""
    if isinstance(messages, (str, bytes)) or not isinstance(messages, Sequence) or not messages:
        raise ValidationError("messages must be a non-empty list")
    clean: List[Dict[str, str]] = []
    for i, m in enumerate(messages):
        if not isinstance(m, Mapping):
            raise ValidationError(f"messages[{i}] must be a mapping")
        role = m.get("role")
        if role not in MESSAGE_ROLES:
            raise ValidationError(f"messages[{i}].role must be one of {MESSAGE_ROLES}")
        content = m.get("content")
        if not isinstance(content, str):
            raise ValidationError(f"messages[{i}].content must be a string")
        item = {"role": role, "content": content}
        if m.get("name"):
            item["name"] = str(m["name"])
        clean.append(item)
    return clean


# =============================================================================
# Base adapter
# =============================================================================

class BaseAIService:
    """
    Base class for provider adapters.

    Subclasses set ``provider_id`` / ``display_name`` / ``capabilities`` and
    implement the ``_do_*`` hooks matching their capabilities.
    """

    provider_id: str = "base"
    display_name: str = "Base"
    capabilities: FrozenSet[Capability] = frozenset({Capability.TEXT, Capability.CHAT})
    default_model: str = "default"
    default_text_model: Optional[str] = None
    default_max_tokens: int = 1000
    max_output_tokens: int = 4096

    def __init__(
        self,
        *,
        config: Optional[ProviderConfig] = None,
        service_config: Optional[ServiceConfig] = None,
        cache: Optional[BaseTTLCache] = None,
        limiters: Optional[RateLimiterRegistry] = None,
        metrics: Optional[MetricsSink] = None,
        provider_id: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if provider_id:
            self.provider_id = provider_id
        self._config = config or ProviderConfig()
        if self._config.default_model:
            self.default_model = self._config.default_model
        self._service_config = service_config or ServiceConfig()
        self._cache = cache if cache is not None else create_cache(self._service_config.cache)
        self._limiters = limiters if limiters is not None else RateLimiterRegistry(self._service_config.rate_limit)
        self._metrics: MetricsSink = metrics or NoopMetrics()
        self._sleep = sleep
        self._usage: Dict[str, int] = {"requests": 0, "cache_hits": 0, "retries": 0, "errors": 0}

    # ------------------------------------------------------------ capability

    def supports(self, capability: Union[Capability, str]) -> bool:
        try:
            return Capability(capability) in self.capabilities
        except ValueError:
            return False

    def _require(self, capability: Capability) -> None:
        if not self.supports(capability):
            raise FeatureNotSupported(
                f"{self.display_name} does not support {capability.value}",
                feature=capability.value,
                provider_id=self.provider_id,
            )

    # ----------------------------------------------------------- config view

    @property
    def service_config(self) -> ServiceConfig:
        return self._service_config

    @property
    def provider_config(self) -> ProviderConfig:
        return self._config

    @property
    def timeout_ms(self) -> int:
        return self._config.timeout_ms or self._service_config.timeout_ms

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0

    def retry_policy(self) -> RetryPolicy:
        cfg = self._service_config
        return RetryPolicy(max_retries=cfg.max_retries, base_delay_ms=cfg.retry_base_delay_ms)

    # -------------------------------------------------------------- helpers

    def validate_input(self, params: Mapping[str, Any], required: Sequence[str]) -> None:
        validate_input(params, required)

    def prepare_options(
        self,
        options: Union[GenerateOptions, Mapping[str, Any], None],
        *,
        default_model: Optional[str] = None,
        stream: Optional[bool] = None,
    ) -> NormalizedOptions:
        return normalize_options(
            options,
            default_model=default_model or self.default_model,
            default_max_tokens=self.default_max_tokens,
            max_output_tokens=self.max_output_tokens,
            stream=stream,
        )

    def _classify(self, exc: BaseException) -> AIError:
        return classify_error(exc, self.provider_id)

    def _record(self, op: str, t0: float, ok: bool, *, code: str = "OK", **extra: Any) -> None:
        """Emit a timing metric; failures in metrics emission are swallowed."""
        try:
            self._metrics.observe(
                component=self.provider_id,
                op=op,
                ms=(time.monotonic() - t0) * 1000.0,
                ok=ok,
                code=code,
                extra=extra or None,
            )
        except Exception:  # noqa: BLE001
            pass

    def _count(self, name: str, value: int = 1) -> None:
        self._usage[name] = self._usage.get(name, 0) + value
        try:
            self._metrics.counter(component=self.provider_id, name=name, value=value)
        except Exception:  # noqa: BLE001
            pass

    # ------------------------------------------------------------- pipeline

    async def execute_with_middleware(
        self,
        method: str,
        params: Mapping[str, Any],
        operation: Callable[[], Awaitable[Any]],
        *,
        cacheable: bool = True,
        priority: int = DEFAULT_PRIORITY,
        cache_ttl_ms: Optional[int] = None,
    ) -> Any:
        """
        Run `operation` through cache → limiter → retry → cache store.

        A cache hit returns immediately without consuming limiter capacity.
        Failures are classified, logged and re-raised; they are never cached.
        """
        self._count("requests")
        if cacheable:
            cached = self._cache.get(self.provider_id, method, params)
            if cached is not None:
                self._count("cache_hits")
                LOG.debug("cache hit %s.%s", self.provider_id, method)
                return cached

        def on_backoff(attempt: int, delay_ms: float, err: AIError) -> None:
            self._count("retries")
            LOG.warning(
                "%s.%s attempt %d failed (%s); retrying in %.0fms",
                self.provider_id, method, attempt, err.code, delay_ms,
            )

        async def attempt_with_retry() -> Any:
            return await retry_async(
                operation,
                policy=self.retry_policy(),
                classify=self._classify,
                on_backoff=on_backoff,
                sleep=self._sleep,
            )

        t0 = time.monotonic()
        try:
            result = await self._limiters.schedule(self.provider_id, attempt_with_retry, priority=priority)
        except Exception as exc:
            err = self._classify(exc)
            self._count("errors")
            self._record(method, t0, False, code=err.code)
            LOG.error(
                "%s.%s failed: code=%s status=%s retryable=%s message=%s details=%s",
                self.provider_id, method, err.code, err.status, err.retryable, err.message, err.details,
            )
            if err is exc:
                raise
            raise err from exc

        self._record(method, t0, True)
        if cacheable and result is not None:
            self._cache.set(self.provider_id, method, params, result, ttl_ms=cache_ttl_ms)
        return result

    async def _gated_stream(
        self,
        method: str,
        factory: Callable[[], AsyncIterator[StreamChunk]],
        *,
        priority: int = DEFAULT_PRIORITY,
    ) -> AsyncIterator[StreamChunk]:
        """Hold one limiter slot for the stream's lifetime; translate failures to AIError."""
        self._count("requests")
        limiter = self._limiters.limiter_for(self.provider_id)
        await limiter.acquire(priority=priority)
        t0 = time.monotonic()
        agen = factory()
        ok, code = False, "CANCELLED"
        try:
            async for chunk in agen:
                yield chunk
            ok, code = True, "OK"
        except AIError as err:
            code = err.code
            raise
        except Exception as exc:
            err = self._classify(exc)
            code = err.code
            raise err from exc
        finally:
            try:
                await agen.aclose()
            finally:
                limiter.release()
                self._record(method, t0, ok, code=code)
                if not ok and code != "CANCELLED":
                    self._count("errors")

    # ------------------------------------------------------- public surface

    async def generate_text(
        self,
        prompt: str,
        options: Union[GenerateOptions, Mapping[str, Any], None] = None,
        *,
        priority: int = DEFAULT_PRIORITY,
    ) -> GenerateResult:
        self._require(Capability.TEXT)
        self.validate_input({"prompt": prompt}, ["prompt"])
        opts = self.prepare_options(options, default_model=self.default_text_model)
        params = {"prompt": prompt, **opts.to_params()}
        return await self.execute_with_middleware(
            "generate_text", params, lambda: self._do_generate_text(prompt, opts), priority=priority
        )

    async def generate_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        options: Union[GenerateOptions, Mapping[str, Any], None] = None,
        *,
        priority: int = DEFAULT_PRIORITY,
    ) -> GenerateResult:
        self._require(Capability.CHAT)
        clean = validate_messages(messages)
        opts = self.prepare_options(options)
        params = {"messages": clean, **opts.to_params()}
        return await self.execute_with_middleware(
            "generate_chat", params, lambda: self._do_generate_chat(clean, opts), priority=priority
        )

    async def generate_embedding(
        self,
        text: str,
        *,
        model: Optional[str] = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> EmbeddingResult:
        self._require(Capability.EMBEDDING)
        self.validate_input({"text": text}, ["text"])
        params = {"text": text, "model": model}
        return await self.execute_with_middleware(
            "generate_embedding", params, lambda: self._do_generate_embedding(text, model), priority=priority
        )

    async def generate_image(
        self,
        prompt: str,
        options: Union[ImageOptions, Mapping[str, Any], None] = None,
        *,
        priority: int = DEFAULT_PRIORITY,
    ) -> List[ImageResult]:
        self._require(Capability.IMAGE)
        self.validate_input({"prompt": prompt}, ["prompt"])
        opts = ImageOptions.coerce(options)
        params = {"prompt": prompt, **dataclasses.asdict(opts)}
        return await self.execute_with_middleware(
            "generate_image",
            params,
            lambda: self._do_generate_image(prompt, opts),
            cacheable=False,
            priority=priority,
        )

    def stream_text(
        self,
        prompt: str,
        options: Union[GenerateOptions, Mapping[str, Any], None] = None,
        *,
        priority: int = DEFAULT_PRIORITY,
    ) -> AsyncIterator[StreamChunk]:
        """Validate eagerly, then return a lazily-started chunk iterator."""
        self._require(Capability.TEXT_STREAM)
        self.validate_input({"prompt": prompt}, ["prompt"])
        opts = self.prepare_options(options, default_model=self.default_text_model, stream=True)
        return self._gated_stream(
            "generate_text_stream", lambda: self._do_text_stream(prompt, opts), priority=priority
        )

    def stream_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        options: Union[GenerateOptions, Mapping[str, Any], None] = None,
        *,
        priority: int = DEFAULT_PRIORITY,
    ) -> AsyncIterator[StreamChunk]:
        self._require(Capability.CHAT_STREAM)
        clean = validate_messages(messages)
        opts = self.prepare_options(options, stream=True)
        return self._gated_stream(
            "generate_chat_stream", lambda: self._do_chat_stream(clean, opts), priority=priority
        )

    async def summarize_text(self, text: str, *, max_length: int = 150) -> str:
        """Provider-native summarization (only for adapters advertising SUMMARIZE)."""
        self._require(Capability.SUMMARIZE)
        self.validate_input({"text": text}, ["text"])
        params = {"text": text, "max_length": max_length}
        return await self.execute_with_middleware(
            "summarize", params, lambda: self._do_summarize(text, max_length)
        )

    # --------------------------------------------------------- backend hooks

    async def _do_generate_text(self, prompt: str, opts: NormalizedOptions) -> GenerateResult:
        raise NotImplementedError

    async def _do_generate_chat(self, messages: List[Dict[str, str]], opts: NormalizedOptions) -> GenerateResult:
        raise NotImplementedError

    async def _do_generate_embedding(self, text: str, model: Optional[str]) -> EmbeddingResult:
        raise NotImplementedError

    async def _do_generate_image(self, prompt: str, opts: ImageOptions) -> List[ImageResult]:
        raise NotImplementedError

    def _do_text_stream(self, prompt: str, opts: NormalizedOptions) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError

    def _do_chat_stream(self, messages: List[Dict[str, str]], opts: NormalizedOptions) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError

    async def _do_summarize(self, text: str, max_length: int) -> str:
        raise NotImplementedError

    # ------------------------------------------------------------ lifecycle

    def apply_service_config(self, config: ServiceConfig, *, propagate: bool = True) -> None:
        """Swap in a validated config; optionally push it to the shared cache/limiters."""
        self._service_config = config
        if propagate:
            self._cache.update_config(config.cache)
            self._limiters.update_config(config.rate_limit)

    def update_config(self, config: Optional[ServiceConfig] = None, **overrides: Any) -> ServiceConfig:
        new = merge_config(config or self._service_config, overrides)
        validate_config(new)
        self.apply_service_config(new)
        LOG.info("%s configuration updated", self.provider_id)
        return new

    def reset(self) -> None:
        """Drop this provider's cache entries and limiter state; zero usage counters."""
        self._cache.clear_provider(self.provider_id)
        self._limiters.clear_provider(self.provider_id)
        for key in self._usage:
            self._usage[key] = 0

    def get_status(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "name": self.display_name,
            "capabilities": sorted(c.value for c in self.capabilities),
            "default_model": self.default_model,
            "rate_limit": self._limiters.get_status(self.provider_id),
            "cache": self._cache.get_stats(),
            "usage": dict(self._usage),
            "timeout_ms": self.timeout_ms,
            "max_retries": self._service_config.max_retries,
        }

    async def close(self) -> None:
        """Release backend resources (HTTP clients...). Base has nothing to close."""

    async def __aenter__(self) -> "BaseAIService":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


__all__ = [
    "FINISH_REASONS",
    "MESSAGE_ROLES",
    "Capability",
    "MetricsSink",
    "NoopMetrics",
    "TokenUsage",
    "GenerateResult",
    "EmbeddingResult",
    "ImageResult",
    "StreamChunk",
    "GenerateOptions",
    "NormalizedOptions",
    "ImageOptions",
    "normalize_options",
    "validate_input",
    "validate_messages",
    "BaseAIService",
]
