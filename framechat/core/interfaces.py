"""
Protocols (interfaces) for everything the core talks to.

Using Protocols here means the pipeline doesn't know or care whether it
is writing to Snowflake or a dict, uploading to R2 or to memory, or
asking Claude or a test double. Implementations live in
`framechat.infrastructure`.

Prompt messages are plain dicts: {"role": "system" | "user" | "assistant",
"content": str | list[part]} where a part is {"type": "text", "text": ...}
or {"type": "image_url", "image_url": {"url": ...}}.
"""

from typing import AsyncIterator, Optional, Protocol
from uuid import UUID

from .frames import ExtractedFrame, VideoInfo
from .models import Conversation, FrameAnalysis, Message, Video, VideoUpdate


class VideoRepository(Protocol):
    """Persistence for videos and their frame analyses."""

    async def create_video(self, video: Video) -> Video:
        ...

    async def get_video(self, video_id: UUID) -> Optional[Video]:
        ...

    async def list_videos(self, user_id: str, include_removed: bool = False) -> list[Video]:
        """Videos owned by user_id, newest first."""
        ...

    async def update_video(self, video_id: UUID, update: VideoUpdate) -> Video:
        ...

    async def set_thumbnail_if_unset(self, video_id: UUID, thumbnail_url: str) -> bool:
        """Set the thumbnail only when none is stored. Returns True if it was written."""
        ...

    async def delete_video(self, video_id: UUID) -> None:
        """Hard delete the video and its frame analyses."""
        ...

    async def find_frame_analysis(
        self,
        video_id: UUID,
        position: int,
        frame_url: str,
    ) -> Optional[FrameAnalysis]:
        ...

    async def insert_frame_analysis(self, analysis: FrameAnalysis) -> FrameAnalysis:
        """
        Insert unless (video_id, position, frame_url) already exists.

        Returns the stored row, which is the pre-existing one on conflict.
        """
        ...

    async def list_frame_analyses(self, video_id: UUID) -> list[FrameAnalysis]:
        """All analyses for a video ordered by position ascending."""
        ...


class ConversationRepository(Protocol):
    """Persistence for conversations and their messages."""

    async def get_conversation(self, video_id: UUID, user_id: str) -> Optional[Conversation]:
        ...

    async def get_or_create_conversation(self, video_id: UUID, user_id: str) -> Conversation:
        ...

    async def add_message(self, message: Message) -> Message:
        ...

    async def recent_messages(
        self,
        conversation_id: UUID,
        limit: int,
        exclude_id: Optional[UUID] = None,
    ) -> list[Message]:
        """The last `limit` messages, returned oldest first."""
        ...

    async def list_messages(self, conversation_id: UUID) -> list[Message]:
        """Every message, oldest first."""
        ...

    async def delete_for_video(self, video_id: UUID) -> int:
        """Delete all conversations (and messages) about a video. Returns conversations deleted."""
        ...


class ObjectStorage(Protocol):
    """
    Append-mostly object storage addressed by path.

    upload_object raises ObjectExistsError when the path is taken,
    StoragePermissionError / StorageQuotaError on fatal rejections.
    """

    async def upload_object(self, path: str, data: bytes, content_type: str) -> None:
        ...

    def public_url(self, path: str) -> str:
        ...

    async def delete_prefix(self, prefix: str) -> int:
        ...


class CompletionProvider(Protocol):
    """Vision- and text-capable chat completion provider."""

    @property
    def model_name(self) -> str:
        ...

    async def describe_image(self, image_url: str, instruction: str, prompt: str) -> str:
        """Single-turn vision call. Raises CompletionProviderError on failure."""
        ...

    async def open_stream(self, messages: list[dict]) -> AsyncIterator[str]:
        """
        Start a streamed completion and return an iterator of text deltas.

        Failures while opening raise here; failures after the stream has
        started raise from the iterator.
        """
        ...


class VideoProcessor(Protocol):
    """Reads video metadata and renders stills."""

    async def get_video_info(self, video_data: bytes) -> VideoInfo:
        ...

    async def extract_frames_at_timestamps(
        self,
        video_data: bytes,
        timestamps: list[float],
        width: int,
        height: int,
        quality: int,
    ) -> list[ExtractedFrame]:
        """One frame per timestamp, in order. Raises FrameExtractionError on any failure."""
        ...
