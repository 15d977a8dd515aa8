# relay_sdk/core/tokens.py
# SPDX-License-Identifier: Apache-2.0

"""
Token and cost estimation.

The estimator is intentionally provider-agnostic: it uses a characters-per-token
heuristic (4 chars ≈ 1 token) that is close enough for budgeting conversation
windows, building cache keys and comparing models. Exact accounting comes from
provider usage reports when they are available.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional

CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class ModelPricing:
    """USD price per 1K tokens for prompt (input) and completion (output)."""
    input_per_1k: float
    output_per_1k: float

    def __post_init__(self) -> None:
        if self.input_per_1k < 0 or self.output_per_1k < 0:
            raise ValueError("pricing must be non-negative")


# Published list prices; callers can pass their own table for negotiated rates.
DEFAULT_PRICING: Dict[str, ModelPricing] = {
    "gpt-4": ModelPricing(0.03, 0.06),
    "gpt-4-turbo": ModelPricing(0.01, 0.03),
    "gpt-4o": ModelPricing(0.0025, 0.01),
    "gpt-4o-mini": ModelPricing(0.00015, 0.0006),
    "gpt-3.5-turbo": ModelPricing(0.001, 0.002),
    "gpt-3.5-turbo-instruct": ModelPricing(0.0015, 0.002),
    "text-embedding-3-small": ModelPricing(0.00002, 0.0),
    "claude-3-5-sonnet-latest": ModelPricing(0.003, 0.015),
    "claude-3-5-haiku-latest": ModelPricing(0.0008, 0.004),
    "claude-3-opus-latest": ModelPricing(0.015, 0.075),
}


def estimate_tokens(text: Optional[str]) -> int:
    """Approximate token count for `text` (ceil(len / 4)); empty text is 0."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(messages: Iterable[Mapping[str, Any]]) -> int:
    """Naive token sum over the `content` of each message."""
    return sum(estimate_tokens(str(m.get("content") or "")) for m in messages)


def estimate_cost(
    input_tokens: int,
    output_tokens: int,
    pricing: ModelPricing,
) -> float:
    """Cost in USD for the given token counts."""
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("token counts must be non-negative")
    return (input_tokens / 1000.0) * pricing.input_per_1k + (
        output_tokens / 1000.0
    ) * pricing.output_per_1k


def estimate_text_cost(
    prompt: str,
    completion: str,
    model: str,
    *,
    pricing_table: Optional[Mapping[str, ModelPricing]] = None,
) -> Optional[float]:
    """
    Estimate the cost of a prompt/completion pair for `model`.

    Returns None when the model has no pricing entry.
    """
    table = DEFAULT_PRICING if pricing_table is None else pricing_table
    pricing = table.get(model)
    if pricing is None:
        return None
    return estimate_cost(estimate_tokens(prompt), estimate_tokens(completion), pricing)


__all__ = [
    "CHARS_PER_TOKEN",
    "ModelPricing",
    "DEFAULT_PRICING",
    "estimate_tokens",
    "estimate_message_tokens",
    "estimate_cost",
    "estimate_text_cost",
]
