# SPDX-License-Identifier: Apache-2.0
"""
OpenAI adapter against an in-memory client double.

Covers:
  • request shaping (sampling parameters, stop list, timeout) for chat and completions
  • response mapping (text, finish reason, usage) for chat, embeddings and images
  • streamed deltas become chunks and the transport is closed afterwards
  • client failures are classified with the OpenAI rules
  • model listing is filtered and cached
"""

from types import SimpleNamespace

import pytest

from relay_sdk.core.config import ProviderConfig
from relay_sdk.core.errors import QuotaExceeded, UnknownError, ValidationError
from relay_sdk.llm.openai_adapter import OpenAIAdapter

pytestmark = pytest.mark.asyncio


class StatusError(Exception):
    def __init__(self, message, status_code, body=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.response = SimpleNamespace(status_code=status_code, headers={})


class FakeStream:
    def __init__(self, events):
        self._events = list(events)
        self.closed = False

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for event in self._events:
            yield event

    async def close(self):
        self.closed = True


class FakeEndpoint:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response


def _usage(p, c):
    return SimpleNamespace(prompt_tokens=p, completion_tokens=c, total_tokens=p + c)


def _chat_response(text, finish_reason="stop"):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text), finish_reason=finish_reason)],
        model="gpt-4o-mini-2024",
        created=1_700_000_000,
        usage=_usage(5, 7),
    )


def _client(**endpoints):
    chat = endpoints.get("chat", FakeEndpoint())
    completions = endpoints.get("completions", FakeEndpoint())
    embeddings = endpoints.get("embeddings", FakeEndpoint())
    images = endpoints.get("images", SimpleNamespace())
    models = endpoints.get("models", SimpleNamespace())
    return SimpleNamespace(
        chat=SimpleNamespace(completions=chat),
        completions=completions,
        embeddings=embeddings,
        images=images,
        models=models,
    )


def _adapter(fast_config, sleeps, client, **kwargs):
    return OpenAIAdapter(
        client=client,
        config=ProviderConfig(api_key="sk-test", timeout_ms=2_500),
        service_config=fast_config,
        sleep=sleeps,
        **kwargs,
    )


async def test_chat_request_and_response(fast_config, sleeps):
    chat = FakeEndpoint(_chat_response("Hello!", finish_reason="tool_calls"))
    adapter = _adapter(fast_config, sleeps, _client(chat=chat))

    result = await adapter.generate_chat(
        [{"role": "user", "content": "Hi"}],
        {"temperature": 3, "max_tokens": 50, "stop_sequences": ["END"]},
    )

    sent = chat.calls[0]
    assert sent["model"] == "gpt-3.5-turbo"
    assert sent["temperature"] == 2.0, "temperature is clamped before dispatch"
    assert sent["max_tokens"] == 50
    assert sent["stop"] == ["END"]
    assert sent["timeout"] == 2.5, "provider timeout overrides the service timeout"
    assert result.text == "Hello!"
    assert result.finish_reason == "function_call"
    assert result.model == "gpt-4o-mini-2024"
    assert result.usage.total_tokens == 12


async def test_text_uses_completions_endpoint(fast_config, sleeps):
    completions = FakeEndpoint(
        SimpleNamespace(
            choices=[SimpleNamespace(text=" world", finish_reason="length")],
            model="gpt-3.5-turbo-instruct",
            created=None,
            usage=None,
        )
    )
    adapter = _adapter(fast_config, sleeps, _client(completions=completions))
    result = await adapter.generate_text("hello")
    assert completions.calls[0]["prompt"] == "hello"
    assert completions.calls[0]["model"] == "gpt-3.5-turbo-instruct"
    assert completions.calls[0]["stop"] is None
    assert (result.text, result.finish_reason, result.usage) == (" world", "length", None)


async def test_empty_choices_is_validation_error(fast_config, sleeps):
    chat = FakeEndpoint(SimpleNamespace(choices=[], model="x", created=None, usage=None))
    adapter = _adapter(fast_config, sleeps, _client(chat=chat))
    with pytest.raises(ValidationError):
        await adapter.generate_chat([{"role": "user", "content": "Hi"}])
    assert len(chat.calls) == 1, "validation errors are not retried"


async def test_quota_error_is_classified_and_not_retried(fast_config, sleeps):
    chat = FakeEndpoint(error=StatusError("quota", 429, {"error": {"code": "insufficient_quota"}}))
    adapter = _adapter(fast_config, sleeps, _client(chat=chat))
    with pytest.raises(QuotaExceeded) as info:
        await adapter.generate_chat([{"role": "user", "content": "Hi"}])
    assert info.value.provider_id == "openai"
    assert len(chat.calls) == 1
    assert sleeps.calls == []


async def test_server_error_is_retried(fast_config, sleeps):
    chat = FakeEndpoint(error=StatusError("bad gateway", 502))
    adapter = _adapter(fast_config, sleeps, _client(chat=chat))
    with pytest.raises(UnknownError) as info:
        await adapter.generate_chat([{"role": "user", "content": "Hi"}])
    assert info.value.status == 502
    assert len(chat.calls) == fast_config.max_retries + 1


async def test_embedding(fast_config, sleeps):
    embeddings = FakeEndpoint(
        SimpleNamespace(
            data=[SimpleNamespace(embedding=[0, 0.5, 1])],
            model="text-embedding-3-small",
            usage=SimpleNamespace(prompt_tokens=3),
        )
    )
    adapter = _adapter(fast_config, sleeps, _client(embeddings=embeddings))
    result = await adapter.generate_embedding("embed me")
    assert result.embedding == [0.0, 0.5, 1.0]
    assert result.usage.prompt_tokens == 3
    assert embeddings.calls[0]["input"] == "embed me"


async def test_image_generation(fast_config, sleeps):
    calls = []

    async def generate(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(data=[SimpleNamespace(url="https://img/1.png", revised_prompt="a red cat")])

    adapter = _adapter(fast_config, sleeps, _client(images=SimpleNamespace(generate=generate)))
    images = await adapter.generate_image("a cat", {"size": "512x512", "style": "natural"})
    assert calls[0]["model"] == "dall-e-3"
    assert calls[0]["size"] == "512x512"
    assert images[0].url == "https://img/1.png"
    assert images[0].revised_prompt == "a red cat"


async def test_chat_stream_yields_deltas_and_closes(fast_config, sleeps):
    def event(content=None, finish_reason=None):
        return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content), finish_reason=finish_reason)])

    stream = FakeStream([event("Hel"), SimpleNamespace(choices=[]), event("lo"), event(None, "stop")])
    chat = FakeEndpoint(stream)
    adapter = _adapter(fast_config, sleeps, _client(chat=chat))

    chunks = [c async for c in adapter.stream_chat([{"role": "user", "content": "Hi"}])]
    assert [c.text for c in chunks] == ["Hel", "lo", ""]
    assert chunks[-1].finish_reason == "stop"
    assert chat.calls[0]["stream"] is True
    assert stream.closed, "the provider stream must be closed after iteration"


async def test_list_models_filters_and_caches(fast_config, sleeps):
    listed = []

    async def list_models():
        listed.append(1)
        return SimpleNamespace(
            data=[
                SimpleNamespace(id="gpt-4o", owned_by="openai", created=1),
                SimpleNamespace(id="whisper-1", owned_by="openai", created=2),
                SimpleNamespace(id="dall-e-3", owned_by="openai", created=3),
            ]
        )

    adapter = _adapter(fast_config, sleeps, _client(models=SimpleNamespace(list=list_models)))
    models = await adapter.list_models()
    again = await adapter.list_models()
    assert [m.id for m in models] == ["gpt-4o", "dall-e-3"]
    assert again == models
    assert len(listed) == 1, "model list is cached"


async def test_close_closes_client(fast_config, sleeps):
    closed = []

    async def close():
        closed.append(True)

    client = _client()
    client.close = close
    adapter = _adapter(fast_config, sleeps, client)
    await adapter.close()
    assert closed == [True]
