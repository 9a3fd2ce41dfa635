"""
Tests for the Claude adapter.

The SDK client is replaced with a small fake so nothing leaves the
process; we check the request we would send and how responses and
errors are translated.
"""

import asyncio
from types import SimpleNamespace

import anthropic
import httpx
import pytest

from framechat.core.errors import CompletionProviderError
from framechat.infrastructure.anthropic.client import (
    AnthropicCompletionClient,
    AnthropicConfig,
    to_anthropic_messages,
)


def text_delta(text: str):
    return SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="text_delta", text=text))


class FakeEvents:
    def __init__(self, events, error=None) -> None:
        self._events = events
        self._error = error

    async def __aiter__(self):
        for event in self._events:
            yield event
        if self._error is not None:
            raise self._error


class FakeMessages:
    def __init__(self, response=None, error=None) -> None:
        self.response = response
        self.error = error
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response


def connection_error() -> anthropic.APIConnectionError:
    return anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com"))


def make_client(messages: FakeMessages) -> AnthropicCompletionClient:
    return AnthropicCompletionClient(
        AnthropicConfig(api_key="sk-test", chat_model="chat-model", vision_model="vision-model"),
        client=SimpleNamespace(messages=messages),
    )


class TestToAnthropicMessages:
    """Translation from provider-neutral prompts."""

    def test_system_is_split_out(self):
        system, messages = to_anthropic_messages([
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
        ])

        assert system == "Be brief."
        assert messages == [{"role": "user", "content": [{"type": "text", "text": "Hi"}]}]

    def test_leading_assistant_dropped_and_same_roles_merged(self):
        _, messages = to_anthropic_messages([
            {"role": "assistant", "content": "orphan"},
            {"role": "user", "content": "one"},
            {"role": "user", "content": "two"},
            {"role": "assistant", "content": "reply"},
        ])

        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert [b["text"] for b in messages[0]["content"]] == ["one", "two"]

    def test_image_parts_become_url_sources(self):
        _, messages = to_anthropic_messages([
            {"role": "user", "content": [
                {"type": "text", "text": "What is this?"},
                {"type": "image_url", "image_url": {"url": "https://cdn/f0.jpg"}},
            ]},
        ])

        assert messages[0]["content"][1] == {
            "type": "image",
            "source": {"type": "url", "url": "https://cdn/f0.jpg"},
        }

    def test_unknown_role_rejected(self):
        with pytest.raises(ValueError, match="Invalid message role"):
            to_anthropic_messages([{"role": "tool", "content": "x"}])


class TestAnthropicConfig:
    def test_requires_api_key(self):
        with pytest.raises(ValueError, match="API key"):
            AnthropicConfig(api_key="")

    def test_rejects_out_of_range_temperature(self):
        with pytest.raises(ValueError, match="temperature"):
            AnthropicConfig(api_key="k", chat_temperature=1.5)


class TestAnthropicCompletionClient:
    def test_describe_image_sends_url_image_to_vision_model(self):
        response = SimpleNamespace(content=[SimpleNamespace(text="A red car.")])
        messages = FakeMessages(response=response)

        text = asyncio.run(make_client(messages).describe_image("https://cdn/f.jpg", "Describe.", "This frame"))

        call = messages.calls[0]
        assert text == "A red car."
        assert call["model"] == "vision-model"
        assert call["system"] == "Describe."
        assert call["messages"][0]["content"][0]["source"] == {"type": "url", "url": "https://cdn/f.jpg"}

    def test_describe_image_translates_sdk_errors(self):
        messages = FakeMessages(error=connection_error())

        with pytest.raises(CompletionProviderError):
            asyncio.run(make_client(messages).describe_image("https://cdn/f.jpg", "i", "p"))

    def test_stream_yields_text_deltas_only(self):
        events = FakeEvents([
            SimpleNamespace(type="message_start"),
            text_delta("Hel"),
            text_delta("lo"),
            SimpleNamespace(type="message_stop"),
        ])
        messages = FakeMessages(response=events)
        client = make_client(messages)

        async def run():
            stream = await client.open_stream([
                {"role": "system", "content": "sys"},
                {"role": "user", "content": "Hi"},
            ])
            return [delta async for delta in stream]

        assert asyncio.run(run()) == ["Hel", "lo"]
        assert messages.calls[0]["stream"] is True
        assert messages.calls[0]["system"] == "sys"
        assert messages.calls[0]["model"] == "chat-model"

    def test_open_failure_raises_before_streaming(self):
        messages = FakeMessages(error=connection_error())

        with pytest.raises(CompletionProviderError):
            asyncio.run(make_client(messages).open_stream([{"role": "user", "content": "Hi"}]))

    def test_mid_stream_sdk_error_is_translated(self):
        messages = FakeMessages(response=FakeEvents([text_delta("partial")], error=connection_error()))
        client = make_client(messages)

        async def run():
            stream = await client.open_stream([{"role": "user", "content": "Hi"}])
            return [delta async for delta in stream]

        with pytest.raises(CompletionProviderError, match="Stream interrupted"):
            asyncio.run(run())
