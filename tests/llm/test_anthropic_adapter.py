# SPDX-License-Identifier: Apache-2.0
"""
Anthropic adapter against an in-memory client double.

Covers:
  • system messages are lifted into the top-level ``system`` parameter
  • temperature is capped at 1.0 and stop sequences are forwarded
  • top_p is only sent when the caller narrows it below 1.0
  • stop reasons map onto the shared finish reasons
  • streamed text ends with a finish chunk taken from the final message
  • embeddings and images are refused as unsupported features
  • Anthropic error types are classified
"""

from types import SimpleNamespace

import pytest

from relay_sdk.core.errors import FeatureNotSupported, QuotaExceeded, UnknownError, ValidationError
from relay_sdk.llm.anthropic_adapter import AnthropicAdapter

pytestmark = pytest.mark.asyncio


class AnthropicStatusError(Exception):
    def __init__(self, message, status_code, error_type):
        super().__init__(message)
        self.status_code = status_code
        self.body = {"type": "error", "error": {"type": error_type, "message": message}}
        self.response = SimpleNamespace(status_code=status_code, headers={})


class FakeMessageStream:
    def __init__(self, parts, stop_reason):
        self._parts = parts
        self._stop_reason = stop_reason
        self.exited = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.exited = True
        return False

    @property
    def text_stream(self):
        async def gen():
            for part in self._parts:
                yield part
        return gen()

    async def get_final_message(self):
        return SimpleNamespace(stop_reason=self._stop_reason)


class FakeMessages:
    def __init__(self, response=None, error=None, stream=None):
        self.response = response
        self.error = error
        self._stream = stream
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response

    def stream(self, **kwargs):
        self.calls.append(kwargs)
        return self._stream


def _message(text, stop_reason="end_turn"):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text), SimpleNamespace(type="tool_use", id="t1")],
        stop_reason=stop_reason,
        model="claude-3-5-haiku-20241022",
        usage=SimpleNamespace(input_tokens=10, output_tokens=4),
    )


def _adapter(fast_config, sleeps, messages):
    return AnthropicAdapter(client=SimpleNamespace(messages=messages), service_config=fast_config, sleep=sleeps)


async def test_system_messages_are_lifted(fast_config, sleeps):
    messages = FakeMessages(_message("Bonjour", stop_reason="max_tokens"))
    adapter = _adapter(fast_config, sleeps, messages)

    result = await adapter.generate_chat(
        [
            {"role": "system", "content": "Be brief."},
            {"role": "system", "content": "Answer in French."},
            {"role": "user", "content": "Hello"},
        ],
        {"temperature": 1.8, "stop_sequences": ["\n\n"]},
    )

    sent = messages.calls[0]
    assert sent["system"] == "Be brief.\n\nAnswer in French."
    assert sent["messages"] == [{"role": "user", "content": "Hello"}]
    assert sent["temperature"] == 1.0, "Anthropic temperature is capped at 1.0"
    assert sent["stop_sequences"] == ["\n\n"]
    assert sent["model"] == "claude-3-5-haiku-latest"
    assert result.text == "Bonjour"
    assert result.finish_reason == "length"
    assert result.usage.total_tokens == 14


async def test_text_prompt_becomes_user_turn(fast_config, sleeps):
    messages = FakeMessages(_message("ok"))
    adapter = _adapter(fast_config, sleeps, messages)
    result = await adapter.generate_text("ping")
    assert messages.calls[0]["messages"] == [{"role": "user", "content": "ping"}]
    assert "system" not in messages.calls[0]
    assert result.finish_reason == "stop"


async def test_top_p_sent_only_when_narrowed(fast_config, sleeps):
    messages = FakeMessages(_message("ok"))
    adapter = _adapter(fast_config, sleeps, messages)
    await adapter.generate_text("default sampling")
    await adapter.generate_text("nucleus sampling", {"top_p": 0.9})

    assert "top_p" not in messages.calls[0], "the neutral top_p must not accompany temperature"
    assert "temperature" in messages.calls[0]
    assert messages.calls[1]["top_p"] == 0.9


async def test_only_system_messages_rejected(fast_config, sleeps):
    messages = FakeMessages(_message("unused"))
    adapter = _adapter(fast_config, sleeps, messages)
    with pytest.raises(ValidationError):
        await adapter.generate_chat([{"role": "system", "content": "alone"}])
    assert messages.calls == []


async def test_billing_error_maps_to_quota(fast_config, sleeps):
    messages = FakeMessages(error=AnthropicStatusError("credit balance too low", 400, "billing_error"))
    adapter = _adapter(fast_config, sleeps, messages)
    with pytest.raises(QuotaExceeded) as info:
        await adapter.generate_text("hi")
    assert info.value.provider_id == "anthropic"
    assert len(messages.calls) == 1


async def test_overloaded_error_is_retried(fast_config, sleeps):
    messages = FakeMessages(error=AnthropicStatusError("overloaded", 529, "overloaded_error"))
    adapter = _adapter(fast_config, sleeps, messages)
    with pytest.raises(UnknownError) as info:
        await adapter.generate_text("hi")
    assert info.value.status == 529
    assert info.value.retryable is True
    assert len(messages.calls) == fast_config.max_retries + 1


async def test_stream_text_and_finish_chunk(fast_config, sleeps):
    stream = FakeMessageStream(["Hi", "", " there"], stop_reason="stop_sequence")
    adapter = _adapter(fast_config, sleeps, FakeMessages(stream=stream))

    chunks = [c async for c in adapter.stream_text("greet me")]
    assert [c.text for c in chunks] == ["Hi", " there", ""]
    assert chunks[-1].finish_reason == "stop"
    assert stream.exited


async def test_unsupported_features(fast_config, sleeps):
    adapter = _adapter(fast_config, sleeps, FakeMessages())
    with pytest.raises(FeatureNotSupported):
        await adapter.generate_embedding("text")
    with pytest.raises(FeatureNotSupported):
        await adapter.generate_image("a cat")
    assert not adapter.supports("embedding")
    assert adapter.get_status()["client_version"]
