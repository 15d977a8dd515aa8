# relay_sdk/core/errors.py
# SPDX-License-Identifier: Apache-2.0

"""
Normalized error taxonomy and provider-aware classifier.

Every failure that leaves an adapter or the middleware pipeline is an
:class:`AIError`. Raw SDK, HTTP and transport exceptions are translated at the
adapter boundary by :func:`classify_error`, which knows each provider's
conventions (the same HTTP status can mean different things per provider, e.g.
a 429 is a quota problem for OpenAI when the body says ``insufficient_quota``).

Retryability is a property of the classified error, never of the raw one:

    RateLimitExceeded, NetworkError, RequestTimeout   -> retryable
    UnknownError                                      -> retryable iff status >= 500
    everything else                                   -> not retryable
"""

from __future__ import annotations

import asyncio
import email.utils
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

LOG = logging.getLogger(__name__)


# =============================================================================
# Error taxonomy
# =============================================================================

class AIError(Exception):
    """
    Base exception for all orchestration errors.

    Attributes:
        message:
            Human-readable description (safe for logs and clients).
        code:
            Upper-snake-case machine code (``RATE_LIMIT_EXCEEDED``...).
        status:
            HTTP status associated with the failure, if any.
        provider_id:
            Provider the failure originated from, if known.
        retryable:
            Whether the retry policy may attempt the operation again.
        retry_after_ms:
            Optional backoff hint reported by the provider.
        details:
            Additional JSON-safe context (never include secrets).
    """

    default_code = "UNKNOWN_ERROR"
    default_status: Optional[int] = None
    default_retryable = False

    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        status: Optional[int] = None,
        provider_id: Optional[str] = None,
        retryable: Optional[bool] = None,
        retry_after_ms: Optional[int] = None,
        details: Optional[Mapping[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status = status if status is not None else self.default_status
        self.provider_id = provider_id
        self.retryable = self.default_retryable if retryable is None else bool(retryable)
        self.retry_after_ms = retry_after_ms
        self.details = dict(details or {})

    def __str__(self) -> str:
        base = self.message or self.__class__.__name__
        base += f" [code={self.code}]"
        if self.status is not None:
            base += f" status={self.status}"
        if self.provider_id:
            base += f" provider={self.provider_id}"
        if self.retry_after_ms is not None:
            base += f" retry_after_ms={self.retry_after_ms}"
        if self.details:
            base += f" details={self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "status": self.status,
            "provider_id": self.provider_id,
            "retryable": self.retryable,
            "retry_after_ms": self.retry_after_ms,
            "details": dict(self.details),
        }


class RateLimitExceeded(AIError):
    """Provider (or local limiter queue) refused the request; back off and retry."""
    default_code = "RATE_LIMIT_EXCEEDED"
    default_status = 429
    default_retryable = True


class AuthenticationFailed(AIError):
    """Invalid or missing credentials, or insufficient permissions."""
    default_code = "AUTHENTICATION_FAILED"
    default_status = 401


class QuotaExceeded(AIError):
    """Billing quota exhausted. Retrying will not help until the quota resets."""
    default_code = "QUOTA_EXCEEDED"
    default_status = 429


class ContentFiltered(AIError):
    """The provider's safety system rejected the input or output."""
    default_code = "CONTENT_FILTERED"
    default_status = 400


class ModelNotFound(AIError):
    """The requested model does not exist or is not available to this account."""
    default_code = "MODEL_NOT_FOUND"
    default_status = 404

    def __init__(self, message: str = "", *, model: Optional[str] = None, **kwargs: Any):
        details = dict(kwargs.pop("details", None) or {})
        if model is not None:
            details.setdefault("model", model)
        super().__init__(message or f"Model not found: {model or 'unknown'}", details=details, **kwargs)


class NetworkError(AIError):
    """Transport failure (connection reset, DNS, TLS...)."""
    default_code = "NETWORK_ERROR"
    default_retryable = True


class RequestTimeout(AIError):
    """The request did not complete within the configured timeout."""
    default_code = "TIMEOUT"
    default_status = 408
    default_retryable = True

    def __init__(self, message: str = "", *, timeout_ms: Optional[int] = None, **kwargs: Any):
        details = dict(kwargs.pop("details", None) or {})
        if timeout_ms is not None:
            details.setdefault("timeout_ms", timeout_ms)
        super().__init__(message or f"Request timed out after {timeout_ms}ms", details=details, **kwargs)


class ValidationError(AIError):
    """Caller supplied invalid input. Fails fast: never retried, never cached."""
    default_code = "VALIDATION_ERROR"
    default_status = 400

    def __init__(self, message: str = "", **kwargs: Any):
        if message and type(self) is ValidationError and not message.startswith("Validation error: "):
            message = f"Validation error: {message}"
        super().__init__(message, **kwargs)


class ProviderNotAvailable(ValidationError):
    """The requested provider id is not registered with the orchestrator."""
    default_code = "PROVIDER_NOT_AVAILABLE"


class FeatureNotSupported(AIError):
    """The provider does not implement the requested capability."""
    default_code = "FEATURE_NOT_SUPPORTED"

    def __init__(self, message: str = "", *, feature: Optional[str] = None, **kwargs: Any):
        details = dict(kwargs.pop("details", None) or {})
        if feature is not None:
            details.setdefault("feature", feature)
        super().__init__(message or f"Feature not supported: {feature}", details=details, **kwargs)


class UnknownError(AIError):
    """Unclassifiable failure; retryable only for server-side (5xx) statuses."""
    default_code = "UNKNOWN_ERROR"

    def __init__(self, message: str = "", *, status: Optional[int] = None, **kwargs: Any):
        if "retryable" not in kwargs or kwargs["retryable"] is None:
            kwargs["retryable"] = status is not None and status >= 500
        super().__init__(message or "Unknown error", status=status, **kwargs)


# =============================================================================
# Raw failure inspection
# =============================================================================

@dataclass(frozen=True)
class RawFailure:
    """Provider-neutral view of a raw exception, used by classification rules."""
    exc: BaseException
    status: Optional[int]
    error_code: Optional[str]
    error_type: Optional[str]
    param: Optional[str]
    message: str
    retry_after_ms: Optional[int]


_TIMEOUT_CLASS_NAMES = frozenset({
    "APITimeoutError",
    "TimeoutException",
    "ReadTimeout",
    "WriteTimeout",
    "ConnectTimeout",
    "PoolTimeout",
    "ServerTimeoutError",
})

_NETWORK_CLASS_NAMES = frozenset({
    "APIConnectionError",
    "ConnectError",
    "TransportError",
    "RemoteProtocolError",
    "ReadError",
    "WriteError",
    "ClientConnectorError",
    "ServerDisconnectedError",
})

_TIMEOUT_CODES = frozenset({"TIMEOUT", "ETIMEDOUT"})
_NETWORK_CODES = frozenset({"ECONNABORTED", "ENOTFOUND", "ECONNRESET", "ECONNREFUSED", "EAI_AGAIN"})


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def extract_retry_after_ms(err: Any) -> Optional[int]:
    """Best-effort extraction of ``retry-after-ms`` / ``Retry-After`` from an error's response."""
    resp = getattr(err, "response", None)
    headers = getattr(resp, "headers", None) if resp is not None else None
    if not headers:
        return None
    try:
        raw_ms = headers.get("retry-after-ms")
        if raw_ms is not None:
            return max(0, int(float(str(raw_ms).strip())))
        raw = headers.get("retry-after") or headers.get("Retry-After")
    except (AttributeError, TypeError, ValueError):
        return None
    if raw is None:
        return None
    text = str(raw).strip()
    try:
        return max(0, int(float(text) * 1000))
    except ValueError:
        pass
    # HTTP-date form
    try:
        when = email.utils.parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0, int((when.timestamp() - time.time()) * 1000))


def describe_failure(err: BaseException) -> RawFailure:
    """Pull status, embedded error object and retry hints out of a raw exception."""
    status = _int_or_none(getattr(err, "status_code", None))
    if status is None:
        status = _int_or_none(getattr(err, "status", None))
    if status is None:
        resp = getattr(err, "response", None)
        if resp is not None:
            status = _int_or_none(getattr(resp, "status_code", None))

    body = getattr(err, "body", None)
    error_obj: Mapping[str, Any] = {}
    if isinstance(body, Mapping):
        inner = body.get("error")
        error_obj = inner if isinstance(inner, Mapping) else body

    code = error_obj.get("code")
    if code is None:
        attr = getattr(err, "code", None)
        code = attr if isinstance(attr, str) else None
    etype = error_obj.get("type")
    if etype is None:
        attr = getattr(err, "type", None)
        etype = attr if isinstance(attr, str) else None
    param = error_obj.get("param")
    if param is None:
        attr = getattr(err, "param", None)
        param = attr if isinstance(attr, str) else None

    message = str(error_obj.get("message") or getattr(err, "message", None) or str(err) or type(err).__name__)
    return RawFailure(
        exc=err,
        status=status,
        error_code=str(code) if code is not None else None,
        error_type=str(etype) if etype is not None else None,
        param=str(param) if param is not None else None,
        message=message,
        retry_after_ms=extract_retry_after_ms(err),
    )


def _mro_names(err: BaseException) -> set:
    return {klass.__name__ for klass in type(err).__mro__}


def _transport_failure(raw: RawFailure, provider_id: Optional[str]) -> Optional[AIError]:
    err = raw.exc
    names = _mro_names(err)
    code = (raw.error_code or "").upper()
    # Timeout first: SDK timeout classes subclass their connection-error class.
    if names & _TIMEOUT_CLASS_NAMES or isinstance(err, asyncio.TimeoutError) or code in _TIMEOUT_CODES:
        return RequestTimeout(
            raw.message or "Request timed out",
            timeout_ms=_int_or_none(getattr(err, "timeout_ms", None)) or 30_000,
            provider_id=provider_id,
        )
    if names & _NETWORK_CLASS_NAMES or isinstance(err, ConnectionError) or code in _NETWORK_CODES:
        return NetworkError(
            raw.message or "Network error",
            provider_id=provider_id,
            details={"cause": type(err).__name__},
        )
    return None


# =============================================================================
# Provider rule sets
# =============================================================================

ErrorRule = Callable[[RawFailure, str], Optional[AIError]]


def _openai_rules(raw: RawFailure, provider_id: str) -> Optional[AIError]:
    status, code = raw.status, raw.error_code
    if status in (401, 403):
        return AuthenticationFailed(raw.message, status=status, provider_id=provider_id)
    if status == 429:
        if code in ("insufficient_quota", "quota_exceeded"):
            return QuotaExceeded(raw.message, provider_id=provider_id)
        return RateLimitExceeded(
            raw.message,
            provider_id=provider_id,
            retry_after_ms=raw.retry_after_ms,
            details={"retry_after_ms": raw.retry_after_ms},
        )
    if status == 400 and code in ("content_filter", "content_policy_violation"):
        return ContentFiltered(raw.message, provider_id=provider_id)
    if status == 404:
        return ModelNotFound(raw.message, model=raw.param or "unknown", provider_id=provider_id)
    return None


def _anthropic_rules(raw: RawFailure, provider_id: str) -> Optional[AIError]:
    status, etype = raw.status, raw.error_type
    if status in (401, 403) or etype in ("authentication_error", "permission_error"):
        return AuthenticationFailed(raw.message, status=status or 401, provider_id=provider_id)
    if etype == "billing_error":
        return QuotaExceeded(raw.message, status=status or 429, provider_id=provider_id)
    if status == 429 or etype == "rate_limit_error":
        return RateLimitExceeded(
            raw.message,
            provider_id=provider_id,
            retry_after_ms=raw.retry_after_ms,
            details={"retry_after_ms": raw.retry_after_ms},
        )
    if status == 404 or etype == "not_found_error":
        return ModelNotFound(raw.message, model=raw.param or "unknown", provider_id=provider_id)
    if status in (400, 413) or etype in ("invalid_request_error", "request_too_large"):
        return ValidationError(raw.message, status=status or 400, provider_id=provider_id)
    return None


def _huggingface_rules(raw: RawFailure, provider_id: str) -> Optional[AIError]:
    if raw.status == 401:
        return AuthenticationFailed(raw.message, provider_id=provider_id)
    if raw.status == 429:
        return RateLimitExceeded(raw.message, provider_id=provider_id, retry_after_ms=raw.retry_after_ms)
    if raw.status == 400:
        return ValidationError(raw.message, provider_id=provider_id)
    return None


def _generic_rules(raw: RawFailure, provider_id: str) -> Optional[AIError]:
    status = raw.status
    if status in (401, 403):
        return AuthenticationFailed(raw.message, status=status, provider_id=provider_id)
    if status == 404:
        return ModelNotFound(raw.message, model=raw.param or "unknown", provider_id=provider_id)
    if status == 408:
        return RequestTimeout(raw.message, provider_id=provider_id)
    if status == 429:
        return RateLimitExceeded(raw.message, provider_id=provider_id, retry_after_ms=raw.retry_after_ms)
    if status in (400, 422):
        return ValidationError(raw.message, status=status, provider_id=provider_id)
    return None


_PROVIDER_RULES: Dict[str, ErrorRule] = {
    "openai": _openai_rules,
    "anthropic": _anthropic_rules,
    "huggingface": _huggingface_rules,
}


def register_error_rules(provider_id: str, rule: ErrorRule) -> None:
    """Register (or replace) the classification rules for a provider id."""
    if not provider_id:
        raise ValueError("provider_id must be a non-empty string")
    _PROVIDER_RULES[provider_id] = rule


def classify_error(err: BaseException, provider_id: Optional[str] = None) -> AIError:
    """
    Map any exception into the closed AIError taxonomy.

    Order: already-classified → transport (timeout/network) → provider rules →
    generic status table → UnknownError (retryable iff 5xx).
    """
    if isinstance(err, AIError):
        if err.provider_id is None and provider_id is not None:
            err.provider_id = provider_id
        return err

    raw = describe_failure(err)
    pid = provider_id or "unknown"

    classified = _transport_failure(raw, provider_id)
    if classified is None:
        rule = _PROVIDER_RULES.get(pid)
        if rule is not None:
            classified = rule(raw, pid)
    if classified is None:
        classified = _generic_rules(raw, pid)
    if classified is None:
        classified = UnknownError(
            raw.message,
            status=raw.status,
            provider_id=provider_id,
            details={"cause": type(err).__name__},
        )
    if classified.provider_id is None:
        classified.provider_id = provider_id
    LOG.debug("classified %s from %s as %s", type(err).__name__, pid, classified.code)
    return classified


__all__ = [
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
    "RawFailure",
    "ErrorRule",
    "describe_failure",
    "extract_retry_after_ms",
    "register_error_rules",
    "classify_error",
]
