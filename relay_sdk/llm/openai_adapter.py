# relay_sdk/llm/openai_adapter.py
# SPDX-License-Identifier: Apache-2.0
"""
OpenAI provider adapter.

Targets the official `openai` Python client (v1+ async API via `AsyncOpenAI`)
and plugs into the shared middleware pipeline through `BaseAIService`.

Goals
-----
- Map text / chat / embedding / image / streaming requests onto the
  Completions, Chat Completions, Embeddings and Images endpoints.
- Translate every client failure into the AIError taxonomy at this boundary.
- Leave retries to the pipeline: the client is built with ``max_retries=0``.

Usage
-----
    from relay_sdk.core.config import ProviderConfig
    from relay_sdk.llm.openai_adapter import OpenAIAdapter

    adapter = OpenAIAdapter(config=ProviderConfig(api_key="sk-..."))
    result = await adapter.generate_chat([{"role": "user", "content": "Hello!"}])
    print(result.text)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, FrozenSet, List, Optional

from openai import AsyncOpenAI  # type: ignore

from relay_sdk.core.errors import ValidationError
from relay_sdk.llm.llm_base import (
    BaseAIService,
    Capability,
    EmbeddingResult,
    GenerateResult,
    ImageOptions,
    ImageResult,
    NormalizedOptions,
    StreamChunk,
    TokenUsage,
)

logger = logging.getLogger(__name__)

MODEL_CACHE_TTL_MS = 3_600_000
_LISTED_MODEL_MARKERS = ("gpt", "text-", "dall-e")

_FINISH_REASON_MAP = {
    "stop": "stop",
    "length": "length",
    "content_filter": "content_filter",
    "function_call": "function_call",
    "tool_calls": "function_call",
}


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    owned_by: Optional[str] = None
    created: Optional[int] = None


class OpenAIAdapter(BaseAIService):
    """
    Adapter backed by the OpenAI API.

    Parameters
    ----------
    config:
        ``ProviderConfig`` with api_key / base_url / timeout_ms / default_model.
        Ignored for connection settings when `client` is given.
    client:
        Pre-configured `AsyncOpenAI` client (tests inject fakes here).
    text_model, embedding_model, image_model:
        Defaults for the non-chat endpoints.
    service_config, cache, limiters, metrics:
        Passed through to `BaseAIService`.
    """

    provider_id = "openai"
    display_name = "OpenAI"
    capabilities: FrozenSet[Capability] = frozenset({
        Capability.TEXT,
        Capability.CHAT,
        Capability.EMBEDDING,
        Capability.IMAGE,
        Capability.TEXT_STREAM,
        Capability.CHAT_STREAM,
    })
    default_model = "gpt-3.5-turbo"
    default_text_model = "gpt-3.5-turbo-instruct"
    max_output_tokens = 16_384

    def __init__(
        self,
        *,
        client: Optional[AsyncOpenAI] = None,
        text_model: str = "gpt-3.5-turbo-instruct",
        embedding_model: str = "text-embedding-3-small",
        image_model: str = "dall-e-3",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if client is None:
            client = AsyncOpenAI(
                api_key=self._config.api_key,
                base_url=self._config.base_url,
                timeout=self.timeout_s,
                max_retries=0,
            )
        self._client = client
        self.default_text_model = text_model
        self._embedding_model = embedding_model
        self._image_model = image_model

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _usage_from_response(resp: Any) -> Optional[TokenUsage]:
        usage = getattr(resp, "usage", None)
        if usage is None:
            return None
        prompt = int(getattr(usage, "prompt_tokens", 0) or 0)
        completion = int(getattr(usage, "completion_tokens", 0) or 0)
        total = int(getattr(usage, "total_tokens", 0) or (prompt + completion))
        return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    @staticmethod
    def _normalize_finish_reason(reason: Optional[str]) -> str:
        return _FINISH_REASON_MAP.get(reason or "stop", "stop")

    def _sampling_kwargs(self, opts: NormalizedOptions) -> Dict[str, Any]:
        return {
            "model": opts.model,
            "max_tokens": opts.max_tokens,
            "temperature": opts.temperature,
            "top_p": opts.top_p,
            "frequency_penalty": opts.frequency_penalty,
            "presence_penalty": opts.presence_penalty,
            "stop": list(opts.stop_sequences) or None,
            "timeout": self.timeout_s,
        }

    @staticmethod
    def _first_choice(resp: Any) -> Any:
        choices = getattr(resp, "choices", None) or []
        if not choices:
            raise ValidationError("No completion generated", provider_id="openai")
        return choices[0]

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    async def _do_generate_text(self, prompt: str, opts: NormalizedOptions) -> GenerateResult:
        try:
            resp = await self._client.completions.create(prompt=prompt, **self._sampling_kwargs(opts))
        except Exception as exc:  # noqa: BLE001
            raise self._classify(exc) from exc

        choice = self._first_choice(resp)
        return GenerateResult(
            text=getattr(choice, "text", "") or "",
            finish_reason=self._normalize_finish_reason(getattr(choice, "finish_reason", None)),
            model=getattr(resp, "model", None) or opts.model,
            created_at=float(getattr(resp, "created", None) or time.time()),
            usage=self._usage_from_response(resp),
        )

    async def _do_generate_chat(self, messages: List[Dict[str, str]], opts: NormalizedOptions) -> GenerateResult:
        try:
            resp = await self._client.chat.completions.create(messages=messages, **self._sampling_kwargs(opts))
        except Exception as exc:  # noqa: BLE001
            raise self._classify(exc) from exc

        choice = self._first_choice(resp)
        message = getattr(choice, "message", None)
        return GenerateResult(
            text=(getattr(message, "content", None) or "") if message is not None else "",
            finish_reason=self._normalize_finish_reason(getattr(choice, "finish_reason", None)),
            model=getattr(resp, "model", None) or opts.model,
            created_at=float(getattr(resp, "created", None) or time.time()),
            usage=self._usage_from_response(resp),
        )

    async def _do_generate_embedding(self, text: str, model: Optional[str]) -> EmbeddingResult:
        resolved = model or self._embedding_model
        try:
            resp = await self._client.embeddings.create(model=resolved, input=text, timeout=self.timeout_s)
        except Exception as exc:  # noqa: BLE001
            raise self._classify(exc) from exc

        data = getattr(resp, "data", None) or []
        if not data:
            raise ValidationError("No embedding generated", provider_id=self.provider_id)
        usage = getattr(resp, "usage", None)
        prompt_tokens = int(getattr(usage, "prompt_tokens", 0) or 0) if usage is not None else 0
        return EmbeddingResult(
            embedding=[float(x) for x in data[0].embedding],
            model=getattr(resp, "model", None) or resolved,
            usage=TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=0, total_tokens=prompt_tokens),
        )

    async def _do_generate_image(self, prompt: str, opts: ImageOptions) -> List[ImageResult]:
        model = opts.model or self._image_model
        try:
            resp = await self._client.images.generate(
                model=model,
                prompt=prompt,
                size=opts.size,
                quality=opts.quality,
                style=opts.style,
                n=opts.n,
                timeout=self.timeout_s,
            )
        except Exception as exc:  # noqa: BLE001
            raise self._classify(exc) from exc

        return [
            ImageResult(
                url=getattr(item, "url", None),
                model=model,
                revised_prompt=getattr(item, "revised_prompt", None),
                b64_json=getattr(item, "b64_json", None),
            )
            for item in (getattr(resp, "data", None) or [])
        ]

    async def _iterate_stream(self, stream: Any) -> AsyncIterator[StreamChunk]:
        try:
            async for event in stream:
                choices = getattr(event, "choices", None)
                if not choices:
                    continue
                choice = choices[0]
                delta = getattr(choice, "delta", None)
                text = (getattr(delta, "content", None) or "") if delta is not None else ""
                # Completions streams expose `choice.text` instead of a delta.
                if not text:
                    text = getattr(choice, "text", None) or ""
                reason = getattr(choice, "finish_reason", None)
                if text or reason:
                    yield StreamChunk(
                        text=text,
                        finish_reason=self._normalize_finish_reason(reason) if reason else None,
                    )
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                try:
                    result = close()
                    if asyncio.iscoroutine(result):
                        await result
                except Exception:  # noqa: BLE001
                    logger.debug("closing OpenAI stream failed", exc_info=True)

    async def _do_text_stream(self, prompt: str, opts: NormalizedOptions) -> AsyncIterator[StreamChunk]:
        try:
            stream = await self._client.completions.create(prompt=prompt, stream=True, **self._sampling_kwargs(opts))
        except Exception as exc:  # noqa: BLE001
            raise self._classify(exc) from exc
        async for chunk in self._iterate_stream(stream):
            yield chunk

    async def _do_chat_stream(self, messages: List[Dict[str, str]], opts: NormalizedOptions) -> AsyncIterator[StreamChunk]:
        try:
            stream = await self._client.chat.completions.create(
                messages=messages, stream=True, **self._sampling_kwargs(opts)
            )
        except Exception as exc:  # noqa: BLE001
            raise self._classify(exc) from exc
        async for chunk in self._iterate_stream(stream):
            yield chunk

    # ------------------------------------------------------------------
    # Model discovery
    # ------------------------------------------------------------------

    async def list_models(self) -> List[ModelDescriptor]:
        """Models visible to this key whose id looks like a GPT, text or DALL-E model."""

        async def fetch() -> List[ModelDescriptor]:
            try:
                page = await self._client.models.list()
            except Exception as exc:  # noqa: BLE001
                raise self._classify(exc) from exc
            items = getattr(page, "data", None)
            if items is None:
                items = [m async for m in page]
            return [
                ModelDescriptor(id=m.id, owned_by=getattr(m, "owned_by", None), created=getattr(m, "created", None))
                for m in items
                if any(marker in m.id for marker in _LISTED_MODEL_MARKERS)
            ]

        return await self.execute_with_middleware("list_models", {}, fetch, cache_ttl_ms=MODEL_CACHE_TTL_MS)

    async def get_model(self, model_id: str) -> ModelDescriptor:
        self.validate_input({"model_id": model_id}, ["model_id"])

        async def fetch() -> ModelDescriptor:
            try:
                m = await self._client.models.retrieve(model_id)
            except Exception as exc:  # noqa: BLE001
                raise self._classify(exc) from exc
            return ModelDescriptor(id=m.id, owned_by=getattr(m, "owned_by", None), created=getattr(m, "created", None))

        return await self.execute_with_middleware(
            "get_model", {"model_id": model_id}, fetch, cache_ttl_ms=MODEL_CACHE_TTL_MS
        )

    async def close(self) -> None:
        """Close the underlying HTTP client if it supports closing."""
        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
            if asyncio.iscoroutine(result):
                await result
        except Exception:  # noqa: BLE001
            logger.debug("closing OpenAI client failed", exc_info=True)


__all__ = ["OpenAIAdapter", "ModelDescriptor"]
