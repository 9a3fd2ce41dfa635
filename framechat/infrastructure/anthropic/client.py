"""
Anthropic Claude API client wrapper.

This module provides a thin wrapper around the Anthropic SDK that:
1. Implements our CompletionProvider protocol
2. Handles API-specific details (system prompt placement, image blocks)
3. Maps SDK errors onto CompletionProviderError
4. Enables easy mocking for tests

The core builds prompts in a provider-neutral shape (role-tagged dicts,
system messages inline, `image_url` parts). This is the one place that
knows what Claude expects instead.
"""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import anthropic
from anthropic import APIError, RateLimitError

from ...core.errors import CompletionProviderError, RateLimitExceeded


logger = logging.getLogger(__name__)


@dataclass
class AnthropicConfig:
    """
    Configuration for the Anthropic client.

    Chat and vision settings are separate: frame descriptions want short,
    factual output; answers get a little more room.
    """
    api_key: str
    chat_model: str = "claude-sonnet-4-20250514"
    vision_model: str = "claude-sonnet-4-20250514"
    chat_max_tokens: int = 500
    vision_max_tokens: int = 300
    chat_temperature: float = 0.7
    vision_temperature: float = 0.3

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ValueError("API key is required")
        if self.chat_max_tokens < 1 or self.vision_max_tokens < 1:
            raise ValueError("max_tokens must be positive")
        for temperature in (self.chat_temperature, self.vision_temperature):
            if not 0 <= temperature <= 1:
                raise ValueError("temperature must be between 0 and 1")


def _convert_part(part: dict) -> Optional[dict]:
    if part.get("type") == "text":
        return {"type": "text", "text": part["text"]} if part.get("text") else None
    if part.get("type") == "image_url":
        return {
            "type": "image",
            "source": {"type": "url", "url": part["image_url"]["url"]},
        }
    raise ValueError(f"Unsupported content part: {part.get('type')}")


def to_anthropic_messages(messages: list[dict]) -> tuple[str, list[dict]]:
    """
    Split provider-neutral messages into (system, messages) for Claude.

    Claude takes the system prompt separately, wants the conversation to
    start with a user turn, and rejects two turns in a row from the same
    role. Leading assistant turns are dropped and same-role neighbours are
    merged.
    """
    system_parts: list[str] = []
    converted: list[dict] = []

    for message in messages:
        role = message.get("role")
        content = message.get("content")

        if role == "system":
            if content:
                system_parts.append(content)
            continue
        if role not in ("user", "assistant"):
            raise ValueError(f"Invalid message role: {role}")

        if isinstance(content, str):
            blocks = [{"type": "text", "text": content}] if content.strip() else []
        else:
            blocks = [b for b in (_convert_part(p) for p in content or []) if b is not None]
        if not blocks:
            continue  # Skip empty messages

        if not converted and role == "assistant":
            continue

        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": blocks})

    return "\n\n".join(system_parts), converted


class AnthropicCompletionClient:
    """
    CompletionProvider implementation using Claude.

    This class knows about Anthropic's API format but doesn't know
    about videos or frames. It just sends prompts and images, and
    hands back text.
    """

    def __init__(self, config: AnthropicConfig, client: Optional[anthropic.AsyncAnthropic] = None) -> None:
        self._config = config
        self._client = client or anthropic.AsyncAnthropic(api_key=config.api_key)

    @property
    def model_name(self) -> str:
        return self._config.chat_model

    async def describe_image(self, image_url: str, instruction: str, prompt: str) -> str:
        """
        Ask Claude to describe one image by URL.

        The image is fetched by Anthropic, so the URL must be public.
        """
        try:
            response = await self._client.messages.create(
                model=self._config.vision_model,
                max_tokens=self._config.vision_max_tokens,
                temperature=self._config.vision_temperature,
                system=instruction,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "image", "source": {"type": "url", "url": image_url}},
                            {"type": "text", "text": prompt},
                        ],
                    }
                ],
            )
        except RateLimitError as e:
            logger.warning("Rate limit hit", extra={"error": str(e)})
            raise RateLimitExceeded("API rate limit exceeded. Please try again later.") from e
        except APIError as e:
            logger.error(
                "API error describing image",
                extra={"error": str(e), "status": getattr(e, "status_code", None)}
            )
            raise CompletionProviderError(f"API error: {e.message}") from e

        return self._extract_text_response(response)

    async def open_stream(self, messages: list[dict]) -> AsyncIterator[str]:
        """
        Start a streamed chat completion.

        The request is sent here, so connection and validation errors
        raise before any event reaches the client. The returned iterator
        yields text deltas only.
        """
        system, converted = to_anthropic_messages(messages)
        if not converted:
            raise ValueError("At least one user message is required")

        try:
            stream = await self._client.messages.create(
                model=self._config.chat_model,
                max_tokens=self._config.chat_max_tokens,
                temperature=self._config.chat_temperature,
                system=system,
                messages=converted,
                stream=True,
            )
        except RateLimitError as e:
            logger.warning("Rate limit hit during chat", extra={"error": str(e)})
            raise RateLimitExceeded("API rate limit exceeded. Please try again later.") from e
        except APIError as e:
            logger.error("API error during chat", extra={"error": str(e)})
            raise CompletionProviderError(f"API error: {e.message}") from e

        return self._text_deltas(stream)

    async def _text_deltas(self, stream) -> AsyncIterator[str]:
        try:
            async for event in stream:
                if event.type == "content_block_delta" and event.delta.type == "text_delta":
                    yield event.delta.text
        except APIError as e:
            logger.error("API error mid-stream", extra={"error": str(e)})
            raise CompletionProviderError(f"Stream interrupted: {e.message}") from e

    def _extract_text_response(self, response) -> str:
        """Extract text content from API response."""
        if not response.content:
            return ""

        # Response content is a list of blocks
        text_blocks = [
            block.text
            for block in response.content
            if hasattr(block, 'text')
        ]

        return "\n".join(text_blocks)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_anthropic_client(config: AnthropicConfig) -> AnthropicCompletionClient:
    """
    Factory function to create a configured client.

    Kept as a function so dependency wiring reads the same for every
    external service.
    """
    return AnthropicCompletionClient(config)
