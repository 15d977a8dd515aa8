# SPDX-License-Identifier: Apache-2.0
"""
Token and cost estimation.

Covers:
  • length/4 rounding up, empty text is zero tokens
  • message lists sum their contents
  • cost arithmetic per 1K tokens and unknown-model handling
"""

import pytest

from relay_sdk.core.tokens import (
    DEFAULT_PRICING,
    ModelPricing,
    estimate_cost,
    estimate_message_tokens,
    estimate_text_cost,
    estimate_tokens,
)


@pytest.mark.parametrize(
    "text, expected",
    [("", 0), (None, 0), ("a", 1), ("abcd", 1), ("abcde", 2), ("x" * 400, 100)],
)
def test_estimate_tokens_rounds_up(text, expected):
    assert estimate_tokens(text) == expected, f"estimate_tokens({text!r}) should be {expected}"


def test_message_tokens_sum_contents():
    messages = [
        {"role": "system", "content": "x" * 8},
        {"role": "user", "content": "y" * 5},
        {"role": "assistant", "content": ""},
    ]
    assert estimate_message_tokens(messages) == 2 + 2


def test_cost_uses_per_1k_rates():
    cost = estimate_cost(1_000, 500, ModelPricing(input_per_1k=0.03, output_per_1k=0.06))
    assert cost == pytest.approx(0.03 + 0.03)


def test_cost_rejects_negative_counts():
    with pytest.raises(ValueError):
        estimate_cost(-1, 0, DEFAULT_PRICING["gpt-4"])


def test_text_cost_for_known_model():
    # 4000 chars -> 1000 prompt tokens at gpt-4 input pricing.
    cost = estimate_text_cost("p" * 4_000, "", "gpt-4")
    assert cost == pytest.approx(0.03)


def test_text_cost_unknown_model_is_none():
    assert estimate_text_cost("hello", "world", "no-such-model") is None


def test_text_cost_custom_table():
    table = {"house": ModelPricing(1.0, 2.0)}
    assert estimate_text_cost("a" * 4_000, "b" * 4_000, "house", pricing_table=table) == pytest.approx(3.0)
