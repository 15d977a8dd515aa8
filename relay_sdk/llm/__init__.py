# relay_sdk/llm/__init__.py
# SPDX-License-Identifier: Apache-2.0

"""
Provider layer - public API.

Base adapter, request/result types and the streaming runtime are re-exported
here. Concrete adapters are imported from their own modules so that the
``openai`` and ``anthropic`` clients load only when used.
"""

from relay_sdk.llm.llm_base import (
    # Capabilities and metrics
    Capability,
    MetricsSink,
    NoopMetrics,

    # Result models
    TokenUsage,
    GenerateResult,
    EmbeddingResult,
    ImageResult,
    StreamChunk,

    # Options
    GenerateOptions,
    NormalizedOptions,
    ImageOptions,
    normalize_options,

    # Validation
    validate_input,
    validate_messages,

    # Base adapter
    BaseAIService,
)
from relay_sdk.llm.streaming import (
    CancellationToken,
    SSEEvent,
    StreamEvent,
    StreamingRuntime,
    StreamSession,
    StreamState,
    parse_sse_events,
)

__all__ = [
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
    "CancellationToken",
    "SSEEvent",
    "StreamEvent",
    "StreamingRuntime",
    "StreamSession",
    "StreamState",
    "parse_sse_events",
]
