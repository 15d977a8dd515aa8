# relay_sdk/__init__.py
# SPDX-License-Identifier: Apache-2.0

"""
Relay SDK - provider-agnostic AI inference orchestration.

Typical use::

    from relay_sdk import AIService

    async with AIService.from_env() as ai:
        print(await ai.ask("What is a token bucket?"))
"""

from relay_sdk.context.compression import ContextCompressionEngine, ConversationContext, create_context_config
from relay_sdk.core.config import CacheConfig, ProviderConfig, RateLimitConfig, ServiceConfig, get_config
from relay_sdk.core.errors import (
    AIError,
    AuthenticationFailed,
    ContentFiltered,
    FeatureNotSupported,
    ModelNotFound,
    NetworkError,
    ProviderNotAvailable,
    QuotaExceeded,
    RateLimitExceeded,
    RequestTimeout,
    UnknownError,
    ValidationError,
    classify_error,
)
from relay_sdk.llm.llm_base import BaseAIService, Capability, GenerateOptions, GenerateResult
from relay_sdk.llm.streaming import StreamEvent, StreamSession, StreamState
from relay_sdk.router.ai_service import AIService

__version__ = "0.1.0"

__all__ = [
    "AIService",
    "BaseAIService",
    "Capability",
    "GenerateOptions",
    "GenerateResult",
    "StreamEvent",
    "StreamSession",
    "StreamState",
    "ContextCompressionEngine",
    "ConversationContext",
    "create_context_config",
    "ServiceConfig",
    "RateLimitConfig",
    "CacheConfig",
    "ProviderConfig",
    "get_config",
    "AIError",
    "RateLimitExceeded",
    "AuthenticationFailed",
    "QuotaExceeded",
    "ContentFiltered",
    "ModelNotFound",
    "NetworkError",
    "RequestTimeout",
    "ValidationError",
    "ProviderNotAvailable",
    "FeatureNotSupported",
    "UnknownError",
    "classify_error",
    "__version__",
]
