"""
Streaming relay: model deltas in, Server-Sent-Events records out.

The browser expects OpenAI-style chunk envelopes, whatever provider is
behind us:

    data: {"id": "chatcmpl-<millis>", "object": "chat.completion.chunk",
           "created": <unix seconds>, "model": "...",
           "choices": [{"index": 0, "delta": {...}, "finish_reason": null}]}

A successful stream is one role chunk, zero or more content chunks, one
stop chunk, then `data: [DONE]`. The concatenated reply is stored as one
assistant message after the provider finishes.

Failures are split at the moment the stream opens. Before that, the
error propagates so the route can answer with a plain error status.
After that, headers are gone, so we emit a single error record and stop.
No partial reply is stored and no [DONE] follows the error record.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from .conversation import ChatTurn
from .interfaces import CompletionProvider, ConversationRepository
from .models import Message, MessageRole
from .timeouts import call_with_timeout

logger = logging.getLogger(__name__)


STREAM_ERROR_MESSAGE = "Error generating response"
DONE_RECORD = "data: [DONE]\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
}


def format_sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@dataclass
class ChunkEnvelope:
    """Shared envelope fields; constant for one response."""
    model: str
    id: str = field(default_factory=lambda: f"chatcmpl-{int(time.time() * 1000)}")
    created: int = field(default_factory=lambda: int(time.time()))

    def chunk(self, delta: dict, finish_reason: Optional[str] = None) -> dict:
        return {
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "delta": delta,
                    "finish_reason": finish_reason,
                }
            ],
        }

    def role_record(self) -> str:
        return format_sse(self.chunk({"role": "assistant"}))

    def content_record(self, text: str) -> str:
        return format_sse(self.chunk({"content": text}))

    def stop_record(self) -> str:
        return format_sse(self.chunk({}, finish_reason="stop"))


class ChatStream:
    """
    One open answer stream.

    Iterate events() exactly once; the assistant message is persisted
    when the provider stream completes. The provider iterator is closed
    however the loop ends, including a client disconnect.
    """

    def __init__(
        self,
        turn: ChatTurn,
        deltas: AsyncIterator[str],
        envelope: ChunkEnvelope,
        conversations: ConversationRepository,
        delta_timeout: float = 60.0,
        database_timeout: float = 30.0,
    ) -> None:
        self.turn = turn
        self._deltas = deltas
        self._envelope = envelope
        self._conversations = conversations
        self._delta_timeout = delta_timeout
        self._database_timeout = database_timeout
        self.reply: Optional[str] = None

    async def events(self) -> AsyncIterator[str]:
        parts: list[str] = []
        iterator = self._deltas.__aiter__()

        try:
            yield self._envelope.role_record()

            try:
                while True:
                    try:
                        text = await asyncio.wait_for(iterator.__anext__(), timeout=self._delta_timeout)
                    except StopAsyncIteration:
                        break
                    if not text:
                        continue
                    parts.append(text)
                    yield self._envelope.content_record(text)
            except Exception as e:
                logger.error(
                    "Chat stream failed",
                    extra={
                        "conversation_id": str(self.turn.conversation.id),
                        "received_chars": sum(len(p) for p in parts),
                        "error": str(e) or type(e).__name__,
                    },
                    exc_info=e,
                )
                yield format_sse({"error": STREAM_ERROR_MESSAGE})
                return
        finally:
            await self._close(iterator)

        self.reply = "".join(parts)
        await self._persist_reply(self.reply)

        yield self._envelope.stop_record()
        yield DONE_RECORD

    async def _close(self, iterator) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning(
                "Error closing provider stream",
                extra={"conversation_id": str(self.turn.conversation.id), "error": str(e)}
            )

    async def _persist_reply(self, reply: str) -> None:
        if not reply.strip():
            logger.warning(
                "Empty reply, nothing stored",
                extra={"conversation_id": str(self.turn.conversation.id)}
            )
            return

        try:
            await call_with_timeout(
                lambda: self._conversations.add_message(
                    Message(
                        conversation_id=self.turn.conversation.id,
                        role=MessageRole.ASSISTANT,
                        content=reply,
                    )
                ),
                timeout=self._database_timeout,
                description="store assistant reply",
            )
        except Exception as e:
            # The client already has the reply; don't break the stream over it.
            logger.error(
                "Failed to store assistant reply",
                extra={
                    "conversation_id": str(self.turn.conversation.id),
                    "error": str(e),
                },
                exc_info=e,
            )


class StreamingRelay:
    """Opens provider streams and wraps them for SSE."""

    def __init__(
        self,
        provider: CompletionProvider,
        conversations: ConversationRepository,
        model_timeout: float = 60.0,
        database_timeout: float = 30.0,
    ) -> None:
        self._provider = provider
        self._conversations = conversations
        self._model_timeout = model_timeout
        self._database_timeout = database_timeout

    async def open(self, turn: ChatTurn) -> ChatStream:
        """
        Start the completion.

        Raises CompletionProviderError or OperationTimeoutError if the
        provider can't be reached; nothing has been sent to the client yet.
        """
        deltas = await call_with_timeout(
            lambda: self._provider.open_stream(turn.prompt),
            timeout=self._model_timeout,
            description="open chat stream",
        )

        logger.info(
            "Chat stream opened",
            extra={
                "conversation_id": str(turn.conversation.id),
                "model": self._provider.model_name,
                "prompt_messages": len(turn.prompt),
            }
        )

        return ChatStream(
            turn=turn,
            deltas=deltas,
            envelope=ChunkEnvelope(model=self._provider.model_name),
            conversations=self._conversations,
            delta_timeout=self._model_timeout,
            database_timeout=self._database_timeout,
        )
