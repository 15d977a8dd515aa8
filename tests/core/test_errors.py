# SPDX-License-Identifier: Apache-2.0
"""
Error taxonomy and classification.

Covers:
  • provider-specific mapping of HTTP statuses and embedded error codes
  • transport failures (timeouts before connection errors) by class name and builtins
  • retryability derived from the classified error (5xx unknowns retry, 4xx do not)
  • Retry-After parsing (ms header, seconds header)
  • already-classified errors pass through unchanged
"""

import asyncio
from types import SimpleNamespace

import pytest

from relay_sdk.core.errors import (
    AIError,
    AuthenticationFailed,
    ContentFiltered,
    ModelNotFound,
    NetworkError,
    ProviderNotAvailable,
    QuotaExceeded,
    RateLimitExceeded,
    RequestTimeout,
    UnknownError,
    ValidationError,
    classify_error,
    extract_retry_after_ms,
    register_error_rules,
)


class FakeAPIError(Exception):
    """Shape-compatible with SDK status errors: status_code, body, response.headers."""

    def __init__(self, message, status_code=None, body=None, headers=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.response = SimpleNamespace(status_code=status_code, headers=headers or {})


class APIConnectionError(Exception):
    pass


class APITimeoutError(APIConnectionError):
    pass


def test_openai_quota_is_not_retryable():
    raw = FakeAPIError("quota", 429, {"error": {"code": "insufficient_quota", "message": "You exceeded your quota"}})
    err = classify_error(raw, "openai")
    assert isinstance(err, QuotaExceeded), f"expected QuotaExceeded, got {type(err).__name__}"
    assert err.retryable is False
    assert err.message == "You exceeded your quota"
    assert err.provider_id == "openai"


def test_openai_rate_limit_carries_retry_after():
    raw = FakeAPIError("slow down", 429, {"error": {"code": "rate_limit_exceeded"}}, headers={"retry-after": "2"})
    err = classify_error(raw, "openai")
    assert isinstance(err, RateLimitExceeded)
    assert err.retryable is True
    assert err.retry_after_ms == 2_000


def test_openai_content_policy():
    raw = FakeAPIError("blocked", 400, {"error": {"code": "content_policy_violation"}})
    assert isinstance(classify_error(raw, "openai"), ContentFiltered)


def test_openai_missing_model_records_param():
    raw = FakeAPIError("nope", 404, {"error": {"code": "model_not_found", "param": "gpt-9"}})
    err = classify_error(raw, "openai")
    assert isinstance(err, ModelNotFound)
    assert err.details["model"] == "gpt-9"


@pytest.mark.parametrize("status", [401, 403])
def test_auth_statuses(status):
    err = classify_error(FakeAPIError("denied", status), "openai")
    assert isinstance(err, AuthenticationFailed)
    assert err.retryable is False


def test_anthropic_billing_error_is_quota():
    raw = FakeAPIError("billing", 400, {"type": "error", "error": {"type": "billing_error", "message": "pay up"}})
    err = classify_error(raw, "anthropic")
    assert isinstance(err, QuotaExceeded), f"billing_error should map to quota, got {type(err).__name__}"


def test_anthropic_request_too_large_is_validation():
    err = classify_error(FakeAPIError("too big", 413), "anthropic")
    assert isinstance(err, ValidationError)
    assert err.status == 413


def test_timeout_class_wins_over_connection_parent():
    err = classify_error(APITimeoutError("timed out"), "openai")
    assert isinstance(err, RequestTimeout), "timeout subclasses of connection errors must classify as timeouts"
    assert err.retryable is True


def test_connection_error_class_name():
    err = classify_error(APIConnectionError("refused"), "anthropic")
    assert isinstance(err, NetworkError)
    assert err.details["cause"] == "APIConnectionError"


def test_builtin_transport_failures():
    assert isinstance(classify_error(ConnectionResetError("reset")), NetworkError)
    assert isinstance(classify_error(asyncio.TimeoutError()), RequestTimeout)


def test_node_style_error_codes():
    exc = Exception("socket hang up")
    exc.code = "ECONNRESET"
    assert isinstance(classify_error(exc, "x"), NetworkError)


@pytest.mark.parametrize("status, retryable", [(500, True), (503, True), (418, False)])
def test_unknown_retryable_iff_server_side(status, retryable):
    err = classify_error(FakeAPIError("odd", status), "openai")
    assert isinstance(err, UnknownError)
    assert err.retryable is retryable, f"status {status} retryable should be {retryable}"


def test_plain_exception_is_unknown_and_not_retryable():
    err = classify_error(ValueError("boom"), "openai")
    assert isinstance(err, UnknownError)
    assert err.retryable is False
    assert err.status is None


def test_generic_rules_for_unregistered_provider():
    assert isinstance(classify_error(FakeAPIError("x", 429), "custom"), RateLimitExceeded)
    assert isinstance(classify_error(FakeAPIError("x", 422), "custom"), ValidationError)
    assert isinstance(classify_error(FakeAPIError("x", 408), "custom"), RequestTimeout)


def test_classified_error_passes_through():
    original = RateLimitExceeded("local queue full")
    err = classify_error(original, "openai")
    assert err is original
    assert err.provider_id == "openai", "missing provider id should be filled in"


def test_registered_rules_take_precedence():
    def rules(raw, provider_id):
        if raw.status == 409:
            return QuotaExceeded("conflict means quota here", provider_id=provider_id)
        return None

    register_error_rules("house-llm", rules)
    assert isinstance(classify_error(FakeAPIError("x", 409), "house-llm"), QuotaExceeded)
    with pytest.raises(ValueError):
        register_error_rules("", rules)


def test_retry_after_ms_header_preferred():
    exc = FakeAPIError("x", 429, headers={"retry-after-ms": "250", "retry-after": "9"})
    assert extract_retry_after_ms(exc) == 250


def test_retry_after_absent():
    assert extract_retry_after_ms(ValueError("no response")) is None


def test_validation_message_prefix_and_subclass():
    err = ValidationError("prompt is required")
    assert err.message == "Validation error: prompt is required"
    missing = ProviderNotAvailable("Provider x not available")
    assert isinstance(missing, ValidationError)
    assert missing.code == "PROVIDER_NOT_AVAILABLE"
    assert missing.message == "Provider x not available", "subclasses keep their own message"


def test_error_dict_and_str():
    err = RequestTimeout(timeout_ms=1_500, provider_id="openai")
    data = err.to_dict()
    assert data["code"] == "TIMEOUT"
    assert data["status"] == 408
    assert data["details"] == {"timeout_ms": 1_500}
    assert "[code=TIMEOUT]" in str(err)
    assert isinstance(err, AIError)
