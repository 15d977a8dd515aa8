# SPDX-License-Identifier: Apache-2.0
"""
Context compression strategies.

Covers:
  • histories within budget come back unchanged with ratio 1.0
  • truncate keeps system messages plus the newest others that fit
  • selective keeps rule-approved messages by importance, ties in original order
  • summarize folds older turns into one summary message and falls back to
    truncate when the summary call fails or the summary alone overflows the budget
  • rule evaluation, importance scoring and preset templates
"""

from types import SimpleNamespace

import pytest

from relay_sdk.context.compression import (
    ContextCompressionEngine,
    ContextRule,
    ConversationContext,
    create_context_config,
    total_tokens,
)
from relay_sdk.core.errors import NetworkError, ValidationError

pytestmark = pytest.mark.asyncio


def msg(role, chars, fill="x"):
    return {"role": role, "content": fill * chars}


class FakeChat:
    def __init__(self, text="condensed", error=None):
        self.text = text
        self.error = error
        self.calls = []

    async def generate_chat(self, messages, options=None, **kwargs):
        self.calls.append((messages, options, kwargs))
        if self.error is not None:
            raise self.error
        return SimpleNamespace(text=f" {self.text} ")


async def test_within_budget_is_identity():
    messages = [msg("system", 40), msg("user", 40)]
    result = await ContextCompressionEngine().optimize(messages, 100)
    assert result.optimized_messages == messages
    assert result.summary.compression_ratio == 1.0
    assert result.summary.summarized_content == ""
    assert result.tokens_used == 20


async def test_truncate_keeps_system_and_newest():
    messages = [msg("system", 200), msg("user", 400, "a"), msg("assistant", 400, "b"), msg("user", 400, "c")]
    ctx = ConversationContext(compression_strategy="truncate")
    result = await ContextCompressionEngine().optimize(messages, 200, ctx)

    assert result.optimized_messages == [messages[0], messages[3]]
    assert result.tokens_used == 150
    assert result.summary.original_message_count == 4
    assert result.summary.compression_ratio == 0.5


async def test_truncate_with_interleaved_system_messages():
    a, b, c = msg("system", 40, "a"), msg("user", 400, "b"), msg("system", 40, "c")
    d, e = msg("assistant", 40, "d"), msg("user", 40, "e")
    ctx = ConversationContext(compression_strategy="truncate")
    result = await ContextCompressionEngine().optimize([a, b, c, d, e], 60, ctx)

    assert result.optimized_messages == [a, c, d, e], "system messages first, then retained others, each in original order"
    assert result.tokens_used == 40


async def test_none_strategy_keeps_newest_only():
    messages = [msg("system", 200), msg("user", 400), msg("assistant", 400)]
    result = await ContextCompressionEngine().optimize(messages, 150, ConversationContext(compression_strategy="none"))
    assert result.optimized_messages == [messages[2]]


async def test_selective_ties_keep_original_order():
    first, second = msg("system", 400, "a"), msg("system", 400, "b")
    question = {"role": "user", "content": "and now?"}
    result = await ContextCompressionEngine().optimize([first, second, question], 150)

    assert result.optimized_messages == [first, question], "equal scores resolve to the earlier message"
    assert result.tokens_used <= 150


async def test_selective_drops_messages_rules_reject():
    history = [{"role": "user", "content": "hi"}] + [msg("assistant", 80) for _ in range(9)]
    result = await ContextCompressionEngine().optimize(history, 150)
    assert history[0] not in result.optimized_messages
    assert result.tokens_used <= 150


async def test_summarize_replaces_older_turns():
    chat = FakeChat()
    engine = ContextCompressionEngine(chat, summary_provider="mock")
    messages = [msg("user" if i % 2 == 0 else "assistant", 40, str(i)) for i in range(6)]
    ctx = ConversationContext(window_size=2, compression_strategy="summarize")

    result = await engine.optimize(messages, 40, ctx)

    summary_message = result.optimized_messages[0]
    assert summary_message["role"] == "system"
    assert summary_message["content"] == "[Previous conversation summary: condensed]"
    assert result.optimized_messages[1:] == messages[-2:]
    assert result.summary.summarized_content == "condensed"
    assert result.tokens_used <= 40

    (sent, options, kwargs) = chat.calls[0]
    assert sent[0]["role"] == "user"
    assert "user: 0000" in sent[0]["content"], "transcript of the older turns is sent"
    assert "4444" not in sent[0]["content"], "recent turns are not summarized"
    assert options == {"max_tokens": 8, "temperature": 0.3}
    assert kwargs == {"provider": "mock"}


async def test_summarize_failure_falls_back_to_truncate():
    engine = ContextCompressionEngine(FakeChat(error=NetworkError("down")))
    messages = [msg("user", 40, str(i)) for i in range(6)]
    ctx = ConversationContext(window_size=2, compression_strategy="summarize")

    result = await engine.optimize(messages, 40, ctx)
    assert result.optimized_messages == messages[-4:]
    assert result.summary.summarized_content == ""


async def test_oversized_summary_falls_back_to_truncate():
    engine = ContextCompressionEngine(FakeChat(text="s" * 2_000))
    messages = [msg("user", 40, str(i)) for i in range(6)]
    ctx = ConversationContext(window_size=2, compression_strategy="summarize")

    result = await engine.optimize(messages, 40, ctx)
    assert result.tokens_used <= 40
    assert result.optimized_messages == messages[-4:]
    assert result.summary.summarized_content == ""


async def test_summarize_without_generator_falls_back():
    messages = [msg("user", 40, str(i)) for i in range(6)]
    ctx = ConversationContext(window_size=2, compression_strategy="summarize")
    result = await ContextCompressionEngine().optimize(messages, 40, ctx)
    assert result.optimized_messages == messages[-4:]


async def test_summarize_recent_window_over_budget_uses_selection():
    chat = FakeChat()
    messages = [msg("user", 40, str(i)) for i in range(6)]
    ctx = ConversationContext(window_size=5, compression_strategy="summarize")
    result = await ContextCompressionEngine(chat).optimize(messages, 40, ctx)
    assert chat.calls == []
    assert total_tokens(result.optimized_messages) <= 40
    assert all(m in messages[1:] for m in result.optimized_messages)


async def test_rule_evaluation():
    engine = ContextCompressionEngine()
    ctx = ConversationContext()
    short_user = {"role": "user", "content": "hi"}
    assert engine.evaluate_rules(short_user, 0, 10, ctx) == "remove"
    assert engine.evaluate_rules(short_user, 5, 10, ctx) == "summarize", "0.8 weight x 0.6 recency"
    assert engine.evaluate_rules(short_user, 6, 10, ctx) == "keep", "age 4 is recent"
    assert engine.evaluate_rules({"role": "tool", "content": "x"}, 9, 10, ctx) == "remove"


async def test_importance_score():
    score = ContextCompressionEngine.calculate_importance({"role": "user", "content": "Remember this"}, 0, 2)
    assert score == pytest.approx(0.5 + 0.15 + 13 / 200 * 0.2 + 0.1 + 0.2)
    capped = ContextCompressionEngine.calculate_importance(msg("system", 400), 9, 10)
    assert capped == 1.0


async def test_invalid_inputs():
    engine = ContextCompressionEngine()
    with pytest.raises(ValidationError):
        await engine.optimize([msg("user", 4)], 0)
    with pytest.raises(ValidationError):
        await engine.optimize([{"role": "user", "content": 42}], 10)
    with pytest.raises(ValidationError):
        ContextRule("mood", "equals", "happy", "keep")
    with pytest.raises(ValidationError):
        ContextRule("age", "less_than", "soon", "keep")
    with pytest.raises(ValidationError):
        ConversationContext(compression_strategy="zip")


async def test_templates():
    assert create_context_config("performance").compression_strategy == "truncate"
    assert create_context_config("comprehensive").window_size == 50
    assert create_context_config("balanced", window_size=4).window_size == 4
    with pytest.raises(ValidationError):
        create_context_config("tiny")
