# relay_sdk/llm/model_catalog.py
# SPDX-License-Identifier: Apache-2.0

"""
Model catalog: static model metadata, task recommendations, cost arithmetic
and side-by-side model comparisons run through an ``AIService``.

The catalog is an in-memory registry. Availability is derived from which
providers are registered with the orchestrator (``refresh_availability``);
unavailable models stay in the catalog but are hidden from queries.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Deque, Dict, FrozenSet, Iterable, List, Optional, Sequence

from relay_sdk.core.errors import AIError, ValidationError
from relay_sdk.core.tokens import DEFAULT_PRICING, ModelPricing, estimate_tokens
from relay_sdk.llm.llm_base import Capability

if TYPE_CHECKING:  # pragma: no cover
    from relay_sdk.router.ai_service import AIService

LOG = logging.getLogger(__name__)

MAX_COMPARISONS = 20
SPEEDS = ("slow", "medium", "fast")
QUALITIES = ("basic", "good", "excellent")
TASKS = ("text", "chat", "embedding", "image", "fast", "quality", "code", "analysis", "creative")

_CHAT = frozenset({Capability.TEXT, Capability.CHAT, Capability.TEXT_STREAM, Capability.CHAT_STREAM})


@dataclass
class ModelInfo:
    id: str
    name: str
    provider: str
    capabilities: FrozenSet[Capability]
    context_length: int
    pricing: Optional[ModelPricing] = None
    description: str = ""
    speed: str = "medium"
    quality: str = "good"
    reasoning: str = "good"
    available: bool = True

    def supports(self, capability: Capability) -> bool:
        return Capability(capability) in self.capabilities

    def to_dict(self) -> Dict[str, Any]:
        d = dataclasses.asdict(self)
        d["capabilities"] = sorted(c.value for c in self.capabilities)
        return d


def _model(model_id: str, name: str, provider: str, caps: Iterable[Capability], context_length: int, **kw: Any) -> ModelInfo:
    return ModelInfo(
        id=model_id,
        name=name,
        provider=provider,
        capabilities=frozenset(caps),
        context_length=context_length,
        pricing=DEFAULT_PRICING.get(model_id),
        **kw,
    )


PREDEFINED_MODELS: Sequence[ModelInfo] = (
    _model("gpt-4", "GPT-4", "openai", _CHAT, 8_192,
           description="Most capable model, best for complex reasoning tasks",
           speed="medium", quality="excellent", reasoning="excellent"),
    _model("gpt-4-turbo", "GPT-4 Turbo", "openai", _CHAT, 128_000,
           description="GPT-4 with extended context and improved efficiency",
           speed="fast", quality="excellent", reasoning="excellent"),
    _model("gpt-4o", "GPT-4o", "openai", _CHAT, 128_000,
           description="Multimodal flagship model", speed="fast", quality="excellent", reasoning="excellent"),
    _model("gpt-4o-mini", "GPT-4o mini", "openai", _CHAT, 128_000,
           description="Small, inexpensive model for everyday tasks", speed="fast", quality="good"),
    _model("gpt-3.5-turbo", "GPT-3.5 Turbo", "openai", _CHAT, 16_385,
           description="Fast and cost-effective for most conversational tasks", speed="fast", quality="good"),
    _model("text-embedding-3-small", "Text Embedding 3 Small", "openai", {Capability.EMBEDDING}, 8_191,
           description="Compact embedding model", speed="fast", quality="good", reasoning="basic"),
    _model("dall-e-3", "DALL-E 3", "openai", {Capability.IMAGE}, 0,
           description="Advanced image generation model", speed="medium", quality="excellent", reasoning="basic"),
    _model("claude-3-5-sonnet-latest", "Claude 3.5 Sonnet", "anthropic", _CHAT, 200_000,
           description="Balanced Claude model for complex work", speed="medium", quality="excellent",
           reasoning="excellent"),
    _model("claude-3-5-haiku-latest", "Claude 3.5 Haiku", "anthropic", _CHAT, 200_000,
           description="Fastest Claude model", speed="fast", quality="good"),
    _model("claude-3-opus-latest", "Claude 3 Opus", "anthropic", _CHAT, 200_000,
           description="Most capable Claude 3 model", speed="slow", quality="excellent", reasoning="excellent"),
)


@dataclass
class ComparisonResult:
    model_id: str
    response: str
    latency_ms: float
    tokens: float
    cost: float
    quality: float
    error: Optional[str] = None


@dataclass
class ModelComparison:
    prompt: str
    results: List[ComparisonResult]
    created_at: float = field(default_factory=time.time)

    def _ok(self) -> List[ComparisonResult]:
        return [r for r in self.results if r.error is None]

    @property
    def fastest(self) -> Optional[str]:
        ok = self._ok()
        return min(ok, key=lambda r: r.latency_ms).model_id if ok else None

    @property
    def cheapest(self) -> Optional[str]:
        ok = self._ok()
        return min(ok, key=lambda r: r.cost).model_id if ok else None

    @property
    def best_quality(self) -> Optional[str]:
        ok = self._ok()
        return max(ok, key=lambda r: r.quality).model_id if ok else None


def calculate_cost(pricing: Optional[ModelPricing], input_tokens: float, output_tokens: float) -> float:
    if pricing is None:
        return 0.0
    return input_tokens / 1000 * pricing.input_per_1k + output_tokens / 1000 * pricing.output_per_1k


def assess_response_quality(response: str, prompt: str) -> float:
    """
    Cheap heuristic score in [0, 10].

    Starts at 5; rewards reasonable length, sentence punctuation and overlap
    with the prompt's longer words; penalizes apology or error wording.
    """
    score = 5.0
    n = len(response)
    if 50 < n < 1000:
        score += 1
    if 100 < n < 500:
        score += 1
    if any(p in response for p in ".!?"):
        score += 1

    prompt_words = [w for w in prompt.lower().split() if len(w) > 3]
    if prompt_words:
        lowered = response.lower()
        relevant = sum(1 for w in prompt_words if w in lowered)
        score += min(2.0, relevant / len(prompt_words) * 4)

    lowered = response.lower()
    if "error" in lowered or "sorry" in lowered:
        score -= 3
    return max(0.0, min(10.0, score))


class ModelCatalog:
    """In-memory model registry seeded with ``PREDEFINED_MODELS``."""

    def __init__(self, models: Optional[Iterable[ModelInfo]] = None) -> None:
        source = PREDEFINED_MODELS if models is None else models
        self._models: Dict[str, ModelInfo] = {m.id: dataclasses.replace(m) for m in source}
        self._comparisons: Deque[ModelComparison] = deque(maxlen=MAX_COMPARISONS)

    def add(self, model: ModelInfo) -> None:
        self._models[model.id] = model

    def all(self, *, include_unavailable: bool = False) -> List[ModelInfo]:
        return [m for m in self._models.values() if include_unavailable or m.available]

    def get(self, model_id: str) -> Optional[ModelInfo]:
        return self._models.get(model_id)

    def by_provider(self, provider: str) -> List[ModelInfo]:
        return [m for m in self.all() if m.provider == provider]

    def by_capability(self, capability: Capability) -> List[ModelInfo]:
        return [m for m in self.all() if m.supports(capability)]

    def refresh_availability(self, provider_ids: Iterable[str]) -> None:
        """Mark models available exactly when their provider is registered."""
        providers = set(provider_ids)
        for m in self._models.values():
            m.available = m.provider in providers

    def recommended(self, task: str) -> Optional[ModelInfo]:
        if task not in TASKS:
            raise ValidationError(f"task must be one of {TASKS}")
        models = self.all()
        chat = [m for m in models if m.supports(Capability.CHAT)]

        def first(candidates: Iterable[ModelInfo], fallback: Sequence[ModelInfo]) -> Optional[ModelInfo]:
            return next(iter(candidates), fallback[0] if fallback else None)

        if task == "embedding":
            return first(self.by_capability(Capability.EMBEDDING), [])
        if task == "image":
            return first(self.by_capability(Capability.IMAGE), [])
        if task == "fast":
            return first((m for m in chat if m.speed == "fast"), chat)
        if task in ("quality", "chat"):
            return first((m for m in chat if m.quality == "excellent"), chat)
        if task == "code":
            return first((m for m in chat if "gpt-4" in m.id or "claude" in m.id), chat)
        if task == "analysis":
            return first((m for m in chat if m.reasoning == "excellent" and m.context_length > 8000), chat)
        text = [m for m in models if m.supports(Capability.TEXT)]
        return first((m for m in text if m.quality == "excellent"), text)

    def optimal(
        self,
        *,
        task: Optional[str] = None,
        max_cost_per_1k: Optional[float] = None,
        min_quality: Optional[str] = None,
        required: Iterable[Capability] = (),
    ) -> Optional[ModelInfo]:
        """Best model satisfying the constraints; task recommendation wins when it qualifies."""
        required = [Capability(c) for c in required]
        candidates = [m for m in self.all() if all(m.supports(c) for c in required)]
        if min_quality is not None:
            floor = QUALITIES.index(min_quality)
            candidates = [m for m in candidates if QUALITIES.index(m.quality) >= floor]
        if max_cost_per_1k is not None:
            candidates = [
                m for m in candidates
                if m.pricing is None or m.pricing.input_per_1k + m.pricing.output_per_1k <= max_cost_per_1k
            ]
        if not candidates:
            return None
        if task is not None:
            pick = self.recommended(task)
            if pick is not None and pick in candidates:
                return pick
        return sorted(
            candidates,
            key=lambda m: (-QUALITIES.index(m.quality), -SPEEDS.index(m.speed)),
        )[0]

    def calculate_cost(self, model_id: str, input_tokens: float, output_tokens: float) -> float:
        model = self.get(model_id)
        return calculate_cost(model.pricing if model else None, input_tokens, output_tokens)

    def assess_response_quality(self, response: str, prompt: str) -> float:
        return assess_response_quality(response, prompt)

    async def compare_models(
        self,
        service: "AIService",
        model_ids: Sequence[str],
        prompt: str,
        *,
        max_tokens: int = 100,
        temperature: float = 0.7,
        iterations: int = 1,
    ) -> ModelComparison:
        """
        Run `prompt` against each known model and score the answers.

        Unknown ids are skipped. A model whose request fails is recorded with
        zeroed metrics and its error message rather than aborting the run.
        """
        if iterations < 1:
            raise ValidationError("iterations must be >= 1")
        results: List[ComparisonResult] = []
        prompt_tokens = estimate_tokens(prompt)
        for model in filter(None, (self.get(mid) for mid in model_ids)):
            latencies: List[float] = []
            tokens: List[int] = []
            first_text = ""
            try:
                for i in range(iterations):
                    t0 = time.monotonic()
                    res = await service.generate_chat(
                        [{"role": "user", "content": prompt}],
                        {"model": model.id, "max_tokens": max_tokens, "temperature": temperature},
                        provider=model.provider,
                    )
                    latencies.append((time.monotonic() - t0) * 1000.0)
                    tokens.append(res.usage.total_tokens if res.usage else estimate_tokens(res.text))
                    if i == 0:
                        first_text = res.text
            except AIError as err:
                LOG.warning("comparison run for %s failed: %s", model.id, err)
                results.append(ComparisonResult(model.id, f"Error: {err.message}", 0.0, 0.0, 0.0, 0.0, error=err.code))
                continue

            avg_tokens = sum(tokens) / iterations
            results.append(
                ComparisonResult(
                    model_id=model.id,
                    response=first_text,
                    latency_ms=sum(latencies) / iterations,
                    tokens=avg_tokens,
                    cost=calculate_cost(model.pricing, prompt_tokens, avg_tokens),
                    quality=assess_response_quality(first_text, prompt),
                )
            )

        comparison = ModelComparison(prompt=prompt, results=results)
        self._comparisons.append(comparison)
        return comparison

    def comparisons(self) -> List[ModelComparison]:
        return list(self._comparisons)

    def stats(self) -> Dict[str, Any]:
        available = self.all()
        providers: Dict[str, int] = {}
        capabilities: Dict[str, int] = {c.value: 0 for c in Capability}
        for m in available:
            providers[m.provider] = providers.get(m.provider, 0) + 1
            for c in m.capabilities:
                capabilities[c.value] += 1
        return {
            "total_models": len(self._models),
            "available_models": len(available),
            "providers": providers,
            "capabilities": capabilities,
        }


__all__ = [
    "ModelInfo",
    "ModelCatalog",
    "ModelComparison",
    "ComparisonResult",
    "PREDEFINED_MODELS",
    "assess_response_quality",
    "calculate_cost",
]
