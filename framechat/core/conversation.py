"""
Conversation context building.

On every question we assemble one ordered prompt for the chat model:

    system instructions + frame context
    recent history (oldest first)
    the new question

Two strategies supply the frame context:
- TextGroundedStrategy: every stored frame description, in position order
- VisionGroundedStrategy: a handful of evenly spaced frame images

Text grounding is the default. Vision grounding is cheaper to set up (no
analyses needed) but sees only a few frames.

The user's question is persisted before any model call. If the previous
attempt failed after persisting it, the retry reuses that message rather
than storing the question twice.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from .errors import ChatNotReadyError
from .interfaces import ConversationRepository, VideoRepository
from .models import AuthenticatedUser, Conversation, FrameAnalysis, Message, MessageRole, Video
from .timeouts import call_with_timeout
from .videos import VideoLibrary

logger = logging.getLogger(__name__)


GROUNDING_INSTRUCTIONS = """When answering the user's question:
1. Use specific information from the frame descriptions to support your answers
2. Reference visual elements mentioned in the descriptions
3. If the frame descriptions don't contain information relevant to the question, explain what information is available and what might be missing
4. Keep responses concise and focused on the question"""


VISION_INSTRUCTIONS = """When answering the user's question:
1. Base your answer on what is visible in the attached frames
2. Say which frame you are referring to when it matters
3. If the frames don't show what the question asks about, say so
4. Keep responses concise and focused on the question"""


_WHITESPACE = re.compile(r"\s+")


def format_frame_descriptions(analyses: list[FrameAnalysis]) -> str:
    """
    One `Frame N: description` line per analysis, ordered by position.

    N is position + 1. Sorting here means the block is correct even if
    the store hands rows back in insertion order.
    """
    lines = []
    for analysis in sorted(analyses, key=lambda a: a.position):
        description = _WHITESPACE.sub(" ", analysis.description).strip()
        lines.append(f"Frame {analysis.position + 1}: {description}")
    return "\n".join(lines)


def select_evenly_spaced(frame_urls: list[str], limit: int) -> list[str]:
    """
    Pick up to `limit` URLs spread across the whole list.

    Always includes the first and last frame when limit >= 2.
    """
    count = len(frame_urls)
    if count <= limit:
        return list(frame_urls)
    if limit <= 0:
        return []
    if limit == 1:
        return [frame_urls[0]]

    indices = sorted({round(i * (count - 1) / (limit - 1)) for i in range(limit)})
    return [frame_urls[i] for i in indices]


def video_header(video: Video) -> str:
    header = (
        "You are a helpful assistant that answers questions about videos. "
        f'The user is asking about the video titled "{video.title}".'
    )
    if video.description:
        header += f' The video description is: "{video.description}".'
    return header


@dataclass
class ChatTurn:
    """Everything the streaming relay needs for one answer."""
    video: Video
    conversation: Conversation
    user_message: Message
    prompt: list[dict]


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class ContextStrategy(ABC):
    """Supplies the frame context for a chat prompt."""

    name: str = "base"

    @abstractmethod
    async def load_context(self, video: Video) -> list:
        """
        Fetch the frame material for a prompt.

        Raises ChatNotReadyError if there is nothing to ground an answer in.
        """
        ...

    @abstractmethod
    def build_prompt(
        self,
        video: Video,
        context: list,
        history: list[dict],
        question: str,
    ) -> list[dict]:
        ...


class TextGroundedStrategy(ContextStrategy):
    """Grounds answers in the stored frame descriptions."""

    name = "text"

    def __init__(self, videos: VideoRepository) -> None:
        self._videos = videos

    async def load_context(self, video: Video) -> list[FrameAnalysis]:
        analyses = await self._videos.list_frame_analyses(video.id)
        if not analyses:
            raise ChatNotReadyError(
                "Video frames are still being processed. Please try again in a moment."
            )
        return analyses

    def build_prompt(
        self,
        video: Video,
        context: list[FrameAnalysis],
        history: list[dict],
        question: str,
    ) -> list[dict]:
        system = (
            f"{video_header(video)}\n\n"
            "I have analyzed the key frames from this video and will provide "
            "detailed descriptions of what I can see:\n\n"
            f"{format_frame_descriptions(context)}\n\n"
            f"{GROUNDING_INSTRUCTIONS}"
        )

        return [
            {"role": "system", "content": system},
            *history,
            {"role": "user", "content": question},
        ]


class VisionGroundedStrategy(ContextStrategy):
    """Sends a few evenly spaced frames to the model with the question."""

    name = "vision"

    def __init__(self, max_frames: int = 6) -> None:
        self._max_frames = max_frames

    async def load_context(self, video: Video) -> list[str]:
        if not video.frame_urls:
            raise ChatNotReadyError(
                "Video frames are still being uploaded. Please try again in a moment."
            )
        return select_evenly_spaced(video.frame_urls, self._max_frames)

    def build_prompt(
        self,
        video: Video,
        context: list[str],
        history: list[dict],
        question: str,
    ) -> list[dict]:
        system = (
            f"{video_header(video)}\n\n"
            f"The user's latest message includes {len(context)} frames sampled "
            "evenly across the video, in order.\n\n"
            f"{VISION_INSTRUCTIONS}"
        )

        content = [{"type": "text", "text": question}]
        content.extend(
            {"type": "image_url", "image_url": {"url": url}}
            for url in context
        )

        return [
            {"role": "system", "content": system},
            *history,
            {"role": "user", "content": content},
        ]


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class ConversationContextBuilder:
    """
    Prepares a ChatTurn: conversation, stored question, and prompt.

    History is capped at `history_limit` messages. When the client sends
    its own message list, the entries before the question are used
    instead of the stored history, trimmed to the same cap.
    """

    def __init__(
        self,
        library: VideoLibrary,
        conversations: ConversationRepository,
        strategy: ContextStrategy,
        history_limit: int = 10,
        database_timeout: float = 30.0,
    ) -> None:
        self._library = library
        self._conversations = conversations
        self._strategy = strategy
        self._history_limit = history_limit
        self._database_timeout = database_timeout

    async def _db(self, operation, description: str):
        return await call_with_timeout(
            operation,
            timeout=self._database_timeout,
            description=description,
        )

    async def prepare(
        self,
        user: AuthenticatedUser,
        video_id: UUID,
        question: str,
        client_history: Optional[list[dict]] = None,
    ) -> ChatTurn:
        """
        Raises VideoNotFoundError for unknown or foreign videos,
        ChatNotReadyError when there is nothing to ground an answer in and
        OperationTimeoutError when the store doesn't answer in time.

        `client_history` is the client's message list up to, not
        including, the question.
        """
        question = question.strip()
        if not question:
            raise ValueError("Question cannot be empty")

        video = await self._library.get_owned(user, video_id)
        conversation = await self._db(
            lambda: self._conversations.get_or_create_conversation(video.id, user.id),
            "get or create conversation",
        )

        user_message = await self._store_question(conversation, question)

        context = await self._db(lambda: self._strategy.load_context(video), "load frame context")

        if client_history is not None:
            history = self._trim_client_history(client_history)
        elif self._history_limit:
            stored = await self._db(
                lambda: self._conversations.recent_messages(
                    conversation.id,
                    self._history_limit,
                    exclude_id=user_message.id,
                ),
                "load recent messages",
            )
            history = [m.to_prompt() for m in stored if m.role != MessageRole.SYSTEM]
        else:
            history = []

        prompt = self._strategy.build_prompt(video, context, history, question)

        logger.info(
            "Chat context built",
            extra={
                "video_id": str(video.id),
                "conversation_id": str(conversation.id),
                "strategy": self._strategy.name,
                "history_messages": len(history),
            }
        )

        return ChatTurn(
            video=video,
            conversation=conversation,
            user_message=user_message,
            prompt=prompt,
        )

    async def _store_question(self, conversation: Conversation, question: str) -> Message:
        """
        Persist the question, or reuse it if it is an unanswered retry.

        A retry looks like: the newest stored message is a user message
        with the same text and no assistant reply after it.
        """
        latest = await self._db(
            lambda: self._conversations.recent_messages(conversation.id, 1),
            "load latest message",
        )
        if latest:
            last = latest[-1]
            if last.role == MessageRole.USER and last.content == question:
                logger.info(
                    "Reusing unanswered question",
                    extra={"conversation_id": str(conversation.id), "message_id": str(last.id)}
                )
                return last

        return await self._db(
            lambda: self._conversations.add_message(
                Message(
                    conversation_id=conversation.id,
                    role=MessageRole.USER,
                    content=question,
                )
            ),
            "store question",
        )

    def _trim_client_history(self, client_history: list[dict]) -> list[dict]:
        if not self._history_limit:
            return []
        history = [
            {"role": m["role"], "content": m["content"]}
            for m in client_history
            if m.get("role") in ("user", "assistant") and m.get("content")
        ]
        return history[-self._history_limit:]
