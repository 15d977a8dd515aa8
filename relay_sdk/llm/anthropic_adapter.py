# relay_sdk/llm/anthropic_adapter.py
# SPDX-License-Identifier: Apache-2.0
"""
Anthropic provider adapter.

Backed by the official `anthropic` Python client (`AsyncAnthropic`) and the
Messages API. Supports text, chat and both streaming forms; embeddings and
image generation are not offered by the API, so the orchestrator refuses them
with ``FeatureNotSupported`` before any call is attempted.

Anthropic nuances
-----------------
- ``system`` is a top-level parameter, not a message role; system messages are
  lifted out of the list and merged.
- ``max_tokens`` is mandatory on every request.
- ``temperature`` is limited to [0, 1]; frequency/presence penalties do not exist.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Dict, FrozenSet, List, Optional, Tuple

import anthropic  # type: ignore
from anthropic import AsyncAnthropic  # type: ignore

from relay_sdk.core.errors import ValidationError
from relay_sdk.llm.llm_base import (
    BaseAIService,
    Capability,
    GenerateResult,
    NormalizedOptions,
    StreamChunk,
    TokenUsage,
)

logger = logging.getLogger(__name__)

_STOP_REASON_MAP = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "pause_turn": "stop",
    "max_tokens": "length",
    "tool_use": "function_call",
    "refusal": "content_filter",
}


class AnthropicAdapter(BaseAIService):
    """
    Adapter backed by Anthropic's Messages API.

    Parameters
    ----------
    config:
        ``ProviderConfig`` with api_key / base_url / timeout_ms / default_model.
    client:
        Pre-configured `AsyncAnthropic` client (tests inject fakes here).
    service_config, cache, limiters, metrics:
        Passed through to `BaseAIService`.
    """

    provider_id = "anthropic"
    display_name = "Anthropic"
    capabilities: FrozenSet[Capability] = frozenset({
        Capability.TEXT,
        Capability.CHAT,
        Capability.TEXT_STREAM,
        Capability.CHAT_STREAM,
    })
    default_model = "claude-3-5-haiku-latest"
    max_output_tokens = 8_192

    def __init__(self, *, client: Optional[AsyncAnthropic] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if client is None:
            client = AsyncAnthropic(
                api_key=self._config.api_key,
                base_url=self._config.base_url,
                timeout=self.timeout_s,
                max_retries=0,
            )
        self._client = client
        self._version = getattr(anthropic, "__version__", "unknown")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _split_system(messages: List[Dict[str, str]]) -> Tuple[List[Dict[str, str]], Optional[str]]:
        """Fold system messages into one ``system`` string; keep user/assistant turns."""
        system_parts: List[str] = []
        turns: List[Dict[str, str]] = []
        for m in messages:
            if m["role"] == "system":
                system_parts.append(m["content"])
            else:
                turns.append({"role": m["role"], "content": m["content"]})
        if not turns:
            raise ValidationError("Anthropic requires at least one user or assistant message")
        if len(system_parts) > 1:
            logger.debug("Merged %d system messages into one for Anthropic API", len(system_parts))
        return turns, ("\n\n".join(system_parts) if system_parts else None)

    def _request_kwargs(self, messages: List[Dict[str, str]], opts: NormalizedOptions) -> Dict[str, Any]:
        turns, system_text = self._split_system(messages)
        kwargs: Dict[str, Any] = {
            "model": opts.model,
            "max_tokens": opts.max_tokens,
            "messages": turns,
            "temperature": min(opts.temperature, 1.0),
            "timeout": self.timeout_s,
        }
        # top_p only when narrowed below the neutral 1.0; newer models reject it alongside temperature.
        if opts.top_p < 1.0:
            kwargs["top_p"] = opts.top_p
        if system_text:
            kwargs["system"] = system_text
        if opts.stop_sequences:
            kwargs["stop_sequences"] = list(opts.stop_sequences)
        return kwargs

    @staticmethod
    def _usage_from_response(resp: Any) -> Optional[TokenUsage]:
        usage = getattr(resp, "usage", None)
        if usage is None:
            return None
        prompt = int(getattr(usage, "input_tokens", 0) or 0)
        completion = int(getattr(usage, "output_tokens", 0) or 0)
        return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)

    @staticmethod
    def _normalize_stop_reason(reason: Optional[str]) -> str:
        return _STOP_REASON_MAP.get(reason or "end_turn", "stop")

    @staticmethod
    def _text_from_content(resp: Any) -> str:
        parts = []
        for block in getattr(resp, "content", None) or []:
            if getattr(block, "type", None) == "text":
                parts.append(getattr(block, "text", "") or "")
        return "".join(parts)

    async def _create(self, messages: List[Dict[str, str]], opts: NormalizedOptions) -> GenerateResult:
        kwargs = self._request_kwargs(messages, opts)
        try:
            resp = await self._client.messages.create(**kwargs)
        except Exception as exc:  # noqa: BLE001
            raise self._classify(exc) from exc

        return GenerateResult(
            text=self._text_from_content(resp),
            finish_reason=self._normalize_stop_reason(getattr(resp, "stop_reason", None)),
            model=getattr(resp, "model", None) or opts.model,
            created_at=time.time(),
            usage=self._usage_from_response(resp),
        )

    async def _stream(self, messages: List[Dict[str, str]], opts: NormalizedOptions) -> AsyncIterator[StreamChunk]:
        kwargs = self._request_kwargs(messages, opts)
        try:
            async with self._client.messages.stream(**kwargs) as stream:
                async for delta_text in stream.text_stream:
                    if delta_text:
                        yield StreamChunk(text=delta_text)
                final = await stream.get_final_message()
        except Exception as exc:  # noqa: BLE001
            raise self._classify(exc) from exc

        yield StreamChunk(text="", finish_reason=self._normalize_stop_reason(getattr(final, "stop_reason", None)))

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    async def _do_generate_text(self, prompt: str, opts: NormalizedOptions) -> GenerateResult:
        return await self._create([{"role": "user", "content": prompt}], opts)

    async def _do_generate_chat(self, messages: List[Dict[str, str]], opts: NormalizedOptions) -> GenerateResult:
        return await self._create(messages, opts)

    def _do_text_stream(self, prompt: str, opts: NormalizedOptions) -> AsyncIterator[StreamChunk]:
        return self._stream([{"role": "user", "content": prompt}], opts)

    def _do_chat_stream(self, messages: List[Dict[str, str]], opts: NormalizedOptions) -> AsyncIterator[StreamChunk]:
        return self._stream(messages, opts)

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status["client_version"] = self._version
        return status

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
            logger.debug("closing Anthropic client failed", exc_info=True)


__all__ = ["AnthropicAdapter"]
