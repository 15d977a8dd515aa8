# relay_sdk/context/compression.py
# SPDX-License-Identifier: Apache-2.0

"""
Context-window compression.

Given a message history and a token budget, decide which messages to keep
verbatim, which to fold into a summary and which to drop. Strategies:

- ``none``       most recent messages only, oldest dropped first
- ``truncate``   every system message, then the most recent others
- ``selective``  importance score + per-role priority rules, greedy by score
- ``summarize``  recent window verbatim + one generated summary of the rest

The identity case is always checked first: if the naive token sum fits the
budget the input is returned unchanged with a compression ratio of 1.0.

Token counts use the shared length/4 estimator, so results are approximate by
design and identical across providers.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from relay_sdk.core.errors import AIError, ValidationError
from relay_sdk.core.tokens import estimate_tokens

LOG = logging.getLogger(__name__)

Message = Mapping[str, Any]

STRATEGIES = ("none", "truncate", "selective", "summarize")
CONDITIONS = ("role", "age", "length", "keyword", "importance_score")
OPERATORS = ("equals", "contains", "greater_than", "less_than", "in_range")
ACTIONS = ("keep", "summarize", "remove")

DEFAULT_IMPORTANCE_KEYWORDS = ("important", "key", "remember", "note", "crucial", "critical")
ROLE_BONUS = {"system": 0.3, "user": 0.1, "assistant": 0.05}

SUMMARY_BUDGET_RATIO = 0.2
SUMMARY_TEMPERATURE = 0.3
SUMMARY_PROMPT = (
    "Please provide a concise summary of the following conversation history, "
    "focusing on key points, decisions, and context that would be important "
    "for continuing the conversation:\n\n"
)


# =============================================================================
# Configuration model
# =============================================================================

@dataclass(frozen=True)
class ContextRule:
    """``condition operator value -> action``; evaluated in order, first match wins."""
    condition: str
    operator: str
    value: Any
    action: str

    def __post_init__(self) -> None:
        if self.condition not in CONDITIONS:
            raise ValidationError(f"rule condition must be one of {CONDITIONS}")
        if self.operator not in OPERATORS:
            raise ValidationError(f"rule operator must be one of {OPERATORS}")
        if self.action not in ACTIONS:
            raise ValidationError(f"rule action must be one of {ACTIONS}")
        if self.operator == "in_range":
            if not isinstance(self.value, (list, tuple)) or len(self.value) != 2:
                raise ValidationError("in_range rules need a [low, high] value")
        elif self.operator in ("greater_than", "less_than"):
            if isinstance(self.value, bool) or not isinstance(self.value, (int, float)):
                raise ValidationError(f"{self.operator} rules need a numeric value")


@dataclass(frozen=True)
class PriorityRule:
    """Rules and fallback weight for one message role."""
    role: str
    weight: float
    rules: Tuple[ContextRule, ...] = ()

    def __post_init__(self) -> None:
        if not 0.0 <= self.weight <= 1.0:
            raise ValidationError("priority weight must be within [0, 1]")


def _default_priority_rules() -> Tuple[PriorityRule, ...]:
    return (
        PriorityRule("system", 1.0, (ContextRule("role", "equals", "system", "keep"),)),
        PriorityRule("user", 0.8, (
            ContextRule("age", "less_than", 5, "keep"),
            ContextRule("length", "greater_than", 20, "keep"),
        )),
        PriorityRule("assistant", 0.7, (
            ContextRule("age", "less_than", 3, "keep"),
            ContextRule("importance_score", "greater_than", 0.7, "keep"),
        )),
    )


@dataclass(frozen=True)
class ConversationContext:
    window_size: int = 20
    compression_strategy: str = "selective"
    priority_rules: Tuple[PriorityRule, ...] = field(default_factory=_default_priority_rules)
    importance_keywords: Tuple[str, ...] = DEFAULT_IMPORTANCE_KEYWORDS

    def __post_init__(self) -> None:
        if self.compression_strategy not in STRATEGIES:
            raise ValidationError(f"compression_strategy must be one of {STRATEGIES}")
        if isinstance(self.window_size, bool) or not isinstance(self.window_size, int) or self.window_size < 0:
            raise ValidationError("window_size must be a non-negative integer")

    def priority_for(self, role: str) -> Optional[PriorityRule]:
        for rule in self.priority_rules:
            if rule.role == role:
                return rule
        return None


_TEMPLATES: Dict[str, ConversationContext] = {
    "balanced": ConversationContext(),
    "performance": ConversationContext(
        window_size=10,
        compression_strategy="truncate",
        priority_rules=(
            PriorityRule("system", 1.0),
            PriorityRule("user", 0.9, (ContextRule("age", "less_than", 3, "keep"),)),
            PriorityRule("assistant", 0.5, (ContextRule("age", "less_than", 2, "keep"),)),
        ),
    ),
    "comprehensive": ConversationContext(
        window_size=50,
        compression_strategy="summarize",
        priority_rules=(
            PriorityRule("system", 1.0),
            PriorityRule("user", 0.8, (
                ContextRule("age", "less_than", 10, "keep"),
                ContextRule("keyword", "contains", ("important", "key", "remember"), "keep"),
            )),
            PriorityRule("assistant", 0.7, (
                ContextRule("age", "less_than", 8, "keep"),
                ContextRule("length", "greater_than", 50, "summarize"),
            )),
        ),
    ),
}


def create_context_config(template: str = "balanced", **overrides: Any) -> ConversationContext:
    """Named preset (``balanced``, ``performance``, ``comprehensive``) with optional overrides."""
    try:
        base = _TEMPLATES[template]
    except KeyError:
        raise ValidationError(f"unknown context template: {template!r}") from None
    return dataclasses.replace(base, **overrides) if overrides else base


def context_templates() -> Dict[str, ConversationContext]:
    return dict(_TEMPLATES)


# =============================================================================
# Results
# =============================================================================

@dataclass
class ContextSummary:
    original_message_count: int
    summarized_content: str
    retained_messages: int
    compression_ratio: float
    generated_at: float


@dataclass
class OptimizedContext:
    optimized_messages: List[Message]
    summary: ContextSummary
    tokens_used: int


class ChatGenerator(Protocol):
    """Anything that can run a chat completion (the orchestrator in practice)."""
    async def generate_chat(self, messages: Sequence[Message], options: Any = None, **kwargs: Any) -> Any: ...


def _message_tokens(message: Message) -> int:
    return estimate_tokens(str(message.get("content") or ""))


def total_tokens(messages: Sequence[Message]) -> int:
    return sum(_message_tokens(m) for m in messages)


# =============================================================================
# Engine
# =============================================================================

class ContextCompressionEngine:
    """
    Reduce a conversation to fit a token budget.

    Parameters
    ----------
    service:
        Chat generator used by the ``summarize`` strategy. Without one,
        summarization always falls back to ``truncate``.
    default_context:
        Configuration used when ``optimize`` receives none.
    summary_provider:
        Provider id forwarded to ``service.generate_chat`` for summaries.
    """

    def __init__(
        self,
        service: Optional[ChatGenerator] = None,
        *,
        default_context: Optional[ConversationContext] = None,
        summary_provider: Optional[str] = None,
    ) -> None:
        self._service = service
        self._default_context = default_context or ConversationContext()
        self._summary_provider = summary_provider

    async def optimize(
        self,
        messages: Sequence[Message],
        max_tokens: int,
        context: Optional[ConversationContext] = None,
    ) -> OptimizedContext:
        if isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens <= 0:
            raise ValidationError("max_tokens must be a positive integer")
        messages = self._check_messages(messages)
        ctx = context or self._default_context

        used = total_tokens(messages)
        if used <= max_tokens:
            return OptimizedContext(
                optimized_messages=list(messages),
                summary=self._summary(messages, messages, ""),
                tokens_used=used,
            )

        summary_text = ""
        strategy = ctx.compression_strategy
        if strategy == "truncate":
            optimized = self.truncate(messages, max_tokens)
        elif strategy == "selective":
            optimized = self.select(messages, max_tokens, ctx)
        elif strategy == "summarize":
            optimized, summary_text = await self.summarize(messages, max_tokens, ctx)
        else:
            optimized = self.most_recent(messages, max_tokens)

        LOG.debug(
            "compressed %d messages to %d with %s (budget %d)",
            len(messages), len(optimized), strategy, max_tokens,
        )
        return OptimizedContext(
            optimized_messages=optimized,
            summary=self._summary(messages, optimized, summary_text),
            tokens_used=total_tokens(optimized),
        )

    # ----------------------------------------------------------- strategies

    @staticmethod
    def most_recent(messages: Sequence[Message], max_tokens: int) -> List[Message]:
        """Newest messages that fit, walking backward until the first one that does not."""
        kept: List[Message] = []
        used = 0
        for message in reversed(messages):
            cost = _message_tokens(message)
            if used + cost > max_tokens:
                break
            kept.append(message)
            used += cost
        kept.reverse()
        return kept

    @staticmethod
    def truncate(messages: Sequence[Message], max_tokens: int) -> List[Message]:
        """System messages first (original order), then the newest others (original order)."""
        system: List[Message] = []
        used = 0
        for message in messages:
            if message.get("role") == "system":
                cost = _message_tokens(message)
                if used + cost <= max_tokens:
                    system.append(message)
                    used += cost
        others = [m for m in messages if m.get("role") != "system"]
        return system + ContextCompressionEngine.most_recent(others, max_tokens - used)

    def select(self, messages: Sequence[Message], max_tokens: int, context: ConversationContext) -> List[Message]:
        """Greedy by importance among ``keep`` verdicts, then back to chronological order."""
        total = len(messages)
        candidates: List[Tuple[float, int, Message]] = []
        for index, message in enumerate(messages):
            if self.evaluate_rules(message, index, total, context) != "keep":
                continue
            importance = self.calculate_importance(message, index, total, context.importance_keywords)
            candidates.append((importance, index, message))

        # Stable sort: equal scores keep their original order.
        candidates.sort(key=lambda c: -c[0])
        chosen: List[Tuple[int, Message]] = []
        used = 0
        for _, index, message in candidates:
            cost = _message_tokens(message)
            if used + cost <= max_tokens:
                chosen.append((index, message))
                used += cost
        chosen.sort(key=lambda c: c[0])
        return [m for _, m in chosen]

    async def summarize(
        self,
        messages: Sequence[Message],
        max_tokens: int,
        context: ConversationContext,
    ) -> Tuple[List[Message], str]:
        window = context.window_size
        recent = list(messages[-window:]) if window > 0 else []
        older = list(messages[: len(messages) - len(recent)])

        if not older:
            return self.select(messages, max_tokens, context), ""
        recent_tokens = total_tokens(recent)
        if recent_tokens > max_tokens:
            return self.select(recent, max_tokens, context), ""

        try:
            summary_text = await self.generate_summary(older, max_tokens)
        except AIError as err:
            LOG.warning("context summarization failed (%s); falling back to truncate", err.code)
            return self.truncate(messages, max_tokens), ""

        summary_message = {
            "role": "system",
            "content": f"[Previous conversation summary: {summary_text}]",
            "id": f"summary_{int(time.time() * 1000)}",
            "timestamp": time.time(),
        }
        budget = max_tokens - _message_tokens(summary_message)
        if budget < 0:
            LOG.warning("context summary alone exceeds %d tokens; falling back to truncate", max_tokens)
            return self.truncate(messages, max_tokens), ""
        while recent and total_tokens(recent) > budget:
            recent.pop(0)
        return [summary_message] + recent, summary_text

    async def generate_summary(self, messages: Sequence[Message], max_tokens: int) -> str:
        """One orchestrator call condensing `messages`, budgeted at ~20% of `max_tokens`."""
        if self._service is None:
            raise ValidationError("no chat generator configured for summarization")
        transcript = "\n".join(f"{m.get('role')}: {m.get('content')}" for m in messages)
        kwargs: Dict[str, Any] = {}
        if self._summary_provider:
            kwargs["provider"] = self._summary_provider
        result = await self._service.generate_chat(
            [{"role": "user", "content": SUMMARY_PROMPT + transcript}],
            {
                "max_tokens": max(1, math.floor(max_tokens * SUMMARY_BUDGET_RATIO)),
                "temperature": SUMMARY_TEMPERATURE,
            },
            **kwargs,
        )
        return str(getattr(result, "text", result) or "").strip()

    # -------------------------------------------------------------- scoring

    @staticmethod
    def calculate_importance(
        message: Message,
        position: int,
        total: int,
        keywords: Sequence[str] = DEFAULT_IMPORTANCE_KEYWORDS,
    ) -> float:
        """
        Importance in [0, 1]::

            0.5 + recency * 0.3 + min(1, len / 200) * 0.2 + role bonus + 0.2 (keyword)

        where recency is 1.0 for the newest message.
        """
        content = str(message.get("content") or "")
        recency = (position + 1) / total if total else 0.0
        score = 0.5 + recency * 0.3
        score += min(1.0, len(content) / 200.0) * 0.2
        score += ROLE_BONUS.get(str(message.get("role")), 0.0)
        lowered = content.lower()
        if any(k.lower() in lowered for k in keywords):
            score += 0.2
        return max(0.0, min(1.0, score))

    def evaluate_rules(self, message: Message, index: int, total: int, context: ConversationContext) -> str:
        """First matching rule's action; otherwise the weight × recency fallback."""
        role = str(message.get("role"))
        priority = context.priority_for(role)
        if priority is None:
            return "remove"
        for rule in priority.rules:
            actual = self._condition_value(rule.condition, message, index, total, context)
            if self._matches(actual, rule.operator, rule.value):
                return rule.action
        score = priority.weight * ((index + 1) / total)
        if score > 0.7:
            return "keep"
        if score > 0.4:
            return "summarize"
        return "remove"

    def _condition_value(
        self,
        condition: str,
        message: Message,
        index: int,
        total: int,
        context: ConversationContext,
    ) -> Any:
        content = str(message.get("content") or "")
        if condition == "role":
            return message.get("role")
        if condition == "age":
            return total - index
        if condition == "length":
            return len(content)
        if condition == "keyword":
            return content
        return self.calculate_importance(message, index, total, context.importance_keywords)

    @staticmethod
    def _matches(actual: Any, operator: str, expected: Any) -> bool:
        if operator == "equals":
            return actual == expected
        if operator == "contains":
            haystack = str(actual).lower()
            needles = expected if isinstance(expected, (list, tuple, set, frozenset)) else (expected,)
            return any(str(n).lower() in haystack for n in needles)
        if not isinstance(actual, (int, float)):
            return False
        if operator == "greater_than":
            return actual > expected
        if operator == "less_than":
            return actual < expected
        low, high = expected
        return low <= actual <= high

    # -------------------------------------------------------------- helpers

    @staticmethod
    def _check_messages(messages: Sequence[Message]) -> List[Message]:
        if isinstance(messages, (str, bytes)) or not isinstance(messages, Sequence):
            raise ValidationError("messages must be a list")
        for i, m in enumerate(messages):
            if not isinstance(m, Mapping) or "role" not in m or not isinstance(m.get("content"), str):
                raise ValidationError(f"messages[{i}] must be a mapping with role and string content")
        return list(messages)

    @staticmethod
    def _summary(original: Sequence[Message], optimized: Sequence[Message], text: str) -> ContextSummary:
        count = len(original)
        return ContextSummary(
            original_message_count=count,
            summarized_content=text,
            retained_messages=len(optimized),
            compression_ratio=(len(optimized) / count) if count else 1.0,
            generated_at=time.time(),
        )


__all__ = [
    "STRATEGIES",
    "DEFAULT_IMPORTANCE_KEYWORDS",
    "ContextRule",
    "PriorityRule",
    "ConversationContext",
    "ContextSummary",
    "OptimizedContext",
    "ChatGenerator",
    "ContextCompressionEngine",
    "create_context_config",
    "context_templates",
    "total_tokens",
]
