# relay_sdk/mock/mock_adapter.py
# SPDX-License-Identifier: Apache-2.0
"""
Mock provider adapter used by the CLI's ``--mock`` mode and by tests.

Plugs into the same middleware pipeline as real adapters. Output is a
deterministic function of the request, so cache and retry behavior can be
asserted exactly. Failures are injected explicitly through ``fail_next`` or
pseudo-randomly (but reproducibly) through ``failure_rate``.
"""

from __future__ import annotations

import asyncio
import hashlib
import random
import time
from typing import Any, AsyncIterator, Dict, FrozenSet, Iterable, List, Optional

from relay_sdk.core.errors import NetworkError, RateLimitExceeded
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

EMBEDDING_DIM = 8


def _stable_seed(*parts: str) -> int:
    h = hashlib.sha256("||".join(parts).encode("utf-8")).hexdigest()
    return int(h[:12], 16)


def _tokenize(s: str) -> List[str]:
    return s.split()


def _approx_usage(prompt_text: str, completion_text: str) -> TokenUsage:
    p = len(_tokenize(prompt_text))
    c = len(_tokenize(completion_text))
    return TokenUsage(prompt_tokens=p, completion_tokens=c, total_tokens=p + c)


class MockAdapter(BaseAIService):
    """
    Deterministic in-process adapter.

    Parameters
    ----------
    provider_id:
        Registry id (default ``"mock"``); tests register several under different ids.
    capabilities:
        Restrict the advertised capabilities to exercise ``FeatureNotSupported``.
    failure_rate:
        Probability of a simulated rate-limit failure per backend call, seeded
        from the request so runs are reproducible.
    stream_delay_s:
        Sleep between streamed words.
    """

    provider_id = "mock"
    display_name = "Mock"
    capabilities: FrozenSet[Capability] = frozenset(Capability)
    default_model = "mock-model"

    def __init__(
        self,
        *,
        capabilities: Optional[Iterable[Capability]] = None,
        failure_rate: float = 0.0,
        stream_delay_s: float = 0.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if capabilities is not None:
            self.capabilities = frozenset(Capability(c) for c in capabilities)
        self.failure_rate = failure_rate
        self.stream_delay_s = stream_delay_s
        self.calls: Dict[str, int] = {}
        self._failures: List[BaseException] = []
        self.closed = False

    # ------------------------------------------------------------ injection

    def fail_next(self, *errors: BaseException) -> None:
        """Queue exceptions raised, in order, by the next backend calls."""
        self._failures.extend(errors)

    def _enter(self, op: str, *seed_parts: str) -> random.Random:
        self.calls[op] = self.calls.get(op, 0) + 1
        if self._failures:
            raise self._failures.pop(0)
        rnd = random.Random(_stable_seed(op, *seed_parts, str(self.calls[op])))
        if self.failure_rate and rnd.random() < self.failure_rate:
            if "overload" in " ".join(seed_parts).lower():
                raise NetworkError("Mocked service overload", provider_id=self.provider_id)
            raise RateLimitExceeded("Mocked rate limit", provider_id=self.provider_id, retry_after_ms=1000)
        return rnd

    # ------------------------------------------------------------ rendering

    @staticmethod
    def _render(prompt: str, opts: NormalizedOptions) -> GenerateResult:
        words = _tokenize(prompt.strip() or "ok") + ["(mock)", f"[{opts.model}]"]
        finish_reason = "stop"
        if len(words) > opts.max_tokens:
            words = words[: opts.max_tokens]
            finish_reason = "length"
        text = " ".join(words)
        for stop in opts.stop_sequences:
            idx = text.find(stop)
            if idx != -1:
                text = text[:idx].rstrip()
                finish_reason = "stop"
        return GenerateResult(
            text=text,
            finish_reason=finish_reason,
            model=opts.model,
            created_at=time.time(),
            usage=_approx_usage(prompt, text),
        )

    @staticmethod
    def _last_content(messages: List[Dict[str, str]]) -> str:
        return messages[-1]["content"] if messages else ""

    async def _words(self, result: GenerateResult) -> AsyncIterator[StreamChunk]:
        words = _tokenize(result.text)
        for i, word in enumerate(words):
            if self.stream_delay_s:
                await asyncio.sleep(self.stream_delay_s)
            yield StreamChunk(text=word if i == len(words) - 1 else word + " ")
        yield StreamChunk(text="", finish_reason=result.finish_reason)

    # ------------------------------------------------------------ hooks

    async def _do_generate_text(self, prompt: str, opts: NormalizedOptions) -> GenerateResult:
        self._enter("generate_text", prompt)
        return self._render(prompt, opts)

    async def _do_generate_chat(self, messages: List[Dict[str, str]], opts: NormalizedOptions) -> GenerateResult:
        self._enter("generate_chat", repr(messages))
        return self._render(self._last_content(messages), opts)

    async def _do_generate_embedding(self, text: str, model: Optional[str]) -> EmbeddingResult:
        self._enter("generate_embedding", text)
        rnd = random.Random(_stable_seed("embedding", text))
        n = len(_tokenize(text))
        return EmbeddingResult(
            embedding=[rnd.uniform(-1.0, 1.0) for _ in range(EMBEDDING_DIM)],
            model=model or "mock-embedding",
            usage=TokenUsage(prompt_tokens=n, completion_tokens=0, total_tokens=n),
        )

    async def _do_generate_image(self, prompt: str, opts: ImageOptions) -> List[ImageResult]:
        self._enter("generate_image", prompt)
        digest = hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16]
        model = opts.model or "mock-image"
        return [
            ImageResult(url=f"https://mock.invalid/{digest}/{i}.png", model=model, revised_prompt=prompt)
            for i in range(opts.n)
        ]

    async def _do_text_stream(self, prompt: str, opts: NormalizedOptions) -> AsyncIterator[StreamChunk]:
        self._enter("text_stream", prompt)
        async for chunk in self._words(self._render(prompt, opts)):
            yield chunk

    async def _do_chat_stream(self, messages: List[Dict[str, str]], opts: NormalizedOptions) -> AsyncIterator[StreamChunk]:
        self._enter("chat_stream", repr(messages))
        async for chunk in self._words(self._render(self._last_content(messages), opts)):
            yield chunk

    async def _do_summarize(self, text: str, max_length: int) -> str:
        self._enter("summarize", text)
        summary = " ".join(text.split())
        if len(summary) <= max_length:
            return summary
        return summary[: max(1, max_length - 3)].rstrip() + "..."

    async def close(self) -> None:
        self.closed = True


__all__ = ["MockAdapter", "EMBEDDING_DIM"]
