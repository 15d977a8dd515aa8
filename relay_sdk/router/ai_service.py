# relay_sdk/router/ai_service.py
# SPDX-License-Identifier: Apache-2.0

"""
AI Service orchestrator.

Purpose
-------
Single entry point for application code. The orchestrator:

- keeps a registry of provider adapters and a default provider;
- dispatches each request to the selected adapter (explicit or default);
- refuses capability gaps up front with ``FeatureNotSupported``;
- owns the shared cache, limiter registry and streaming runtime, and pushes
  configuration changes into all of them (and every adapter) at runtime;
- offers conveniences built on the primitives (``ask``, ``summarize``,
  ``optimize_context``).

There are no module-level singletons: build one ``AIService`` at process start
(``AIService.from_env()`` or explicit construction), pass it to whatever needs
it, and ``await service.close()`` on shutdown.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from relay_sdk.context.compression import ContextCompressionEngine, ConversationContext, OptimizedContext
from relay_sdk.core.cache import BaseTTLCache, create_cache
from relay_sdk.core.config import ProviderConfig, ServiceConfig, get_config, merge_config, validate_config
from relay_sdk.core.errors import AIError, ProviderNotAvailable, ValidationError
from relay_sdk.core.rate_limiter import DEFAULT_PRIORITY, RateLimiterRegistry
from relay_sdk.llm.llm_base import (
    BaseAIService,
    Capability,
    EmbeddingResult,
    GenerateOptions,
    GenerateResult,
    ImageOptions,
    ImageResult,
    MetricsSink,
    NoopMetrics,
)
from relay_sdk.llm.streaming import StreamEvent, StreamingRuntime, StreamSession

LOG = logging.getLogger(__name__)

DEFAULT_SYSTEM_MESSAGE = "You are a helpful assistant."
SUMMARY_REQUEST = "Please summarize the following text in about {max_length} characters:\n\n{text}"

Options = Union[GenerateOptions, Mapping[str, Any], None]
AdapterFactory = Callable[..., BaseAIService]


class AIService:
    """
    Provider registry + dispatcher.

    Parameters
    ----------
    config:
        Service-wide configuration; defaults to ``ServiceConfig()``.
    cache, limiters, streaming, metrics:
        Shared infrastructure; built from `config` when omitted.
    default_provider:
        Provider id used when a call does not name one. Defaults to the first
        registered adapter.
    """

    def __init__(
        self,
        *,
        config: Optional[ServiceConfig] = None,
        cache: Optional[BaseTTLCache] = None,
        limiters: Optional[RateLimiterRegistry] = None,
        streaming: Optional[StreamingRuntime] = None,
        metrics: Optional[MetricsSink] = None,
        default_provider: Optional[str] = None,
    ) -> None:
        self._config = config or ServiceConfig()
        validate_config(self._config)
        self.cache = cache if cache is not None else create_cache(self._config.cache)
        self.limiters = limiters if limiters is not None else RateLimiterRegistry(self._config.rate_limit)
        self.streaming = streaming or StreamingRuntime()
        self.metrics: MetricsSink = metrics or NoopMetrics()
        self.context_engine = ContextCompressionEngine(self)
        self._providers: Dict[str, BaseAIService] = {}
        self._default_provider: Optional[str] = default_provider
        self._closed = False

    # ------------------------------------------------------------ factories

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **kwargs: Any) -> "AIService":
        """
        Build a service from environment variables.

        Registers OpenAI when ``OPENAI_API_KEY`` is set and Anthropic when
        ``ANTHROPIC_API_KEY`` is set. ``RELAY_DEFAULT_PROVIDER`` picks the default.
        """
        from relay_sdk.llm.anthropic_adapter import AnthropicAdapter
        from relay_sdk.llm.openai_adapter import OpenAIAdapter

        environ = os.environ if environ is None else environ
        service = cls(config=get_config(environ=environ), **kwargs)
        if environ.get("OPENAI_API_KEY"):
            service.create_provider(
                OpenAIAdapter,
                ProviderConfig(
                    api_key=environ["OPENAI_API_KEY"],
                    base_url=environ.get("OPENAI_BASE_URL") or None,
                    default_model=environ.get("OPENAI_DEFAULT_MODEL") or None,
                ),
            )
        if environ.get("ANTHROPIC_API_KEY"):
            service.create_provider(
                AnthropicAdapter,
                ProviderConfig(
                    api_key=environ["ANTHROPIC_API_KEY"],
                    base_url=environ.get("ANTHROPIC_BASE_URL") or None,
                    default_model=environ.get("ANTHROPIC_DEFAULT_MODEL") or None,
                ),
            )
        if not service._providers:
            LOG.error("no AI providers configured; set OPENAI_API_KEY or ANTHROPIC_API_KEY")
        preferred = environ.get("RELAY_DEFAULT_PROVIDER")
        if preferred and preferred in service._providers:
            service.set_default_provider(preferred)
        return service

    def create_provider(self, factory: AdapterFactory, config: Optional[ProviderConfig] = None, **kwargs: Any) -> BaseAIService:
        """Construct an adapter wired to this service's shared infrastructure and register it."""
        adapter = factory(
            config=config,
            service_config=self._config,
            cache=self.cache,
            limiters=self.limiters,
            metrics=self.metrics,
            **kwargs,
        )
        self.add_provider(adapter)
        return adapter

    # ------------------------------------------------------------- registry

    def add_provider(self, adapter: BaseAIService) -> None:
        if not isinstance(adapter, BaseAIService):
            raise ValidationError("provider must be a BaseAIService instance")
        if adapter.provider_id in self._providers:
            LOG.warning("replacing provider %s", adapter.provider_id)
        self._providers[adapter.provider_id] = adapter
        if self._default_provider is None or self._default_provider not in self._providers:
            self._default_provider = adapter.provider_id
        LOG.info("registered provider %s", adapter.provider_id)

    def remove_provider(self, provider_id: str) -> BaseAIService:
        adapter = self._providers.pop(provider_id, None)
        if adapter is None:
            raise ProviderNotAvailable(f"Provider {provider_id} not available", provider_id=provider_id)
        if self._default_provider == provider_id:
            self._default_provider = next(iter(self._providers), None)
        self.cache.clear_provider(provider_id)
        self.limiters.clear_provider(provider_id)
        return adapter

    def set_default_provider(self, provider_id: str) -> None:
        self.get_provider(provider_id)
        self._default_provider = provider_id

    @property
    def default_provider(self) -> Optional[str]:
        return self._default_provider

    def get_provider(self, provider_id: Optional[str] = None) -> BaseAIService:
        pid = provider_id or self._default_provider
        adapter = self._providers.get(pid) if pid else None
        if adapter is None:
            raise ProviderNotAvailable(
                f"Provider {pid or '<default>'} not available",
                provider_id=pid,
                details={"available": list(self._providers)},
            )
        return adapter

    def available_providers(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": a.provider_id,
                "name": a.display_name,
                "capabilities": sorted(c.value for c in a.capabilities),
                "default": a.provider_id == self._default_provider,
            }
            for a in self._providers.values()
        ]

    def _capable(self, capability: Capability, provider_id: Optional[str]) -> BaseAIService:
        adapter = self.get_provider(provider_id)
        adapter._require(capability)
        return adapter

    # ------------------------------------------------------------ dispatch

    async def generate_text(
        self,
        prompt: str,
        options: Options = None,
        *,
        provider: Optional[str] = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> GenerateResult:
        adapter = self._capable(Capability.TEXT, provider)
        return await adapter.generate_text(prompt, options, priority=priority)

    async def generate_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        options: Options = None,
        *,
        provider: Optional[str] = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> GenerateResult:
        adapter = self._capable(Capability.CHAT, provider)
        return await adapter.generate_chat(messages, options, priority=priority)

    async def generate_embedding(
        self,
        text: str,
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> EmbeddingResult:
        adapter = self._capable(Capability.EMBEDDING, provider)
        return await adapter.generate_embedding(text, model=model)

    async def generate_image(
        self,
        prompt: str,
        options: Union[ImageOptions, Mapping[str, Any], None] = None,
        *,
        provider: Optional[str] = None,
    ) -> List[ImageResult]:
        adapter = self._capable(Capability.IMAGE, provider)
        return await adapter.generate_image(prompt, options)

    def open_text_stream(
        self,
        prompt: str,
        options: Options = None,
        *,
        provider: Optional[str] = None,
        on_event: Optional[Callable[[StreamEvent], Any]] = None,
    ) -> StreamSession:
        """Validate now, return a session handle; nothing is sent until iteration starts."""
        adapter = self._capable(Capability.TEXT_STREAM, provider)
        chunks = adapter.stream_text(prompt, options)
        return self.streaming.open(
            lambda: chunks, provider_id=adapter.provider_id, on_event=on_event, classify=adapter._classify
        )

    def open_chat_stream(
        self,
        messages: Sequence[Mapping[str, Any]],
        options: Options = None,
        *,
        provider: Optional[str] = None,
        on_event: Optional[Callable[[StreamEvent], Any]] = None,
    ) -> StreamSession:
        adapter = self._capable(Capability.CHAT_STREAM, provider)
        chunks = adapter.stream_chat(messages, options)
        return self.streaming.open(
            lambda: chunks, provider_id=adapter.provider_id, on_event=on_event, classify=adapter._classify
        )

    # --------------------------------------------------------- conveniences

    @staticmethod
    def _ask_messages(question: str, system_message: Optional[str]) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": system_message or DEFAULT_SYSTEM_MESSAGE},
            {"role": "user", "content": question},
        ]

    async def ask(
        self,
        question: str,
        options: Options = None,
        *,
        provider: Optional[str] = None,
        system_message: Optional[str] = None,
    ) -> str:
        """One-shot question → answer text."""
        if not isinstance(question, str) or not question.strip():
            raise ValidationError("question must be a non-empty string")
        result = await self.generate_chat(self._ask_messages(question, system_message), options, provider=provider)
        return result.text

    def ask_stream(
        self,
        question: str,
        options: Options = None,
        *,
        provider: Optional[str] = None,
        system_message: Optional[str] = None,
        on_event: Optional[Callable[[StreamEvent], Any]] = None,
    ) -> StreamSession:
        if not isinstance(question, str) or not question.strip():
            raise ValidationError("question must be a non-empty string")
        return self.open_chat_stream(
            self._ask_messages(question, system_message), options, provider=provider, on_event=on_event
        )

    async def summarize(self, text: str, *, max_length: int = 150, provider: Optional[str] = None) -> str:
        """Provider-native summarization when offered, otherwise a chat prompt."""
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("text must be a non-empty string")
        if isinstance(max_length, bool) or not isinstance(max_length, int) or max_length <= 0:
            raise ValidationError("max_length must be a positive integer")
        adapter = self.get_provider(provider)
        if adapter.supports(Capability.SUMMARIZE):
            try:
                return await adapter.summarize_text(text, max_length=max_length)
            except AIError as err:
                LOG.warning("native summarize on %s failed (%s); using chat prompt", adapter.provider_id, err.code)
        return await self.ask(
            SUMMARY_REQUEST.format(max_length=max_length, text=text), provider=adapter.provider_id
        )

    async def optimize_context(
        self,
        messages: Sequence[Mapping[str, Any]],
        max_tokens: int,
        context: Optional[ConversationContext] = None,
    ) -> OptimizedContext:
        return await self.context_engine.optimize(messages, max_tokens, context)

    # -------------------------------------------------------- configuration

    def get_config(self) -> ServiceConfig:
        return self._config

    def update_config(self, config: Optional[ServiceConfig] = None, **overrides: Any) -> ServiceConfig:
        """Validate and apply new settings to the cache, limiters and every adapter."""
        new = merge_config(config or self._config, overrides)
        validate_config(new)
        self._config = new
        self.cache.update_config(new.cache)
        self.limiters.update_config(new.rate_limit)
        for adapter in self._providers.values():
            adapter.apply_service_config(new, propagate=False)
        LOG.info("service configuration updated")
        return new

    def reset(self) -> None:
        """Clear cached results and limiter state for every provider."""
        for adapter in self._providers.values():
            adapter.reset()
        self.cache.clear()
        self.limiters.clear_all()

    def get_status(self) -> Dict[str, Any]:
        return {
            "default_provider": self._default_provider,
            "available_providers": [p["id"] for p in self.available_providers()],
            "cache_stats": self.cache.get_stats(),
            "limiter_stats": {pid: self.limiters.get_status(pid) for pid in self._providers},
            "streams_active": len(self.streaming.active_sessions()),
            "config": self._config.to_dict(),
            "initialized": bool(self._providers) and not self._closed,
        }

    # ------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        """Start background maintenance (cache sweep) on the running loop."""
        self.cache.start_sweeper()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.streaming.close()
        await self.cache.close()
        self.limiters.clear_all()
        for adapter in list(self._providers.values()):
            await adapter.close()

    async def __aenter__(self) -> "AIService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


__all__ = ["AIService", "DEFAULT_SYSTEM_MESSAGE"]
