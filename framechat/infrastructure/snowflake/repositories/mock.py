"""
In-memory repositories for local development and tests.

These stand in for Snowflake when SNOWFLAKE_MOCK_MODE is on. They keep
the same contracts as the Snowflake repositories (insert-if-absent,
thumbnail-set-once, oldest-first history) so the pipeline behaves the
same either way.

Every read returns a copy. Callers mutating a returned Video must not
change what is "stored", just like with a real database.
"""

import copy
import logging
from typing import Optional
from uuid import UUID

from ....core.errors import VideoNotFoundError
from ....core.models import Conversation, FrameAnalysis, Message, Video, VideoUpdate, utcnow

logger = logging.getLogger(__name__)


class InMemoryVideoRepository:
    def __init__(self) -> None:
        self.videos: dict[UUID, Video] = {}
        self.analyses: dict[tuple[UUID, int, str], FrameAnalysis] = {}
        self.update_calls: list[tuple[UUID, VideoUpdate]] = []
        logger.info("Initialized in-memory video repository")

    async def create_video(self, video: Video) -> Video:
        self.videos[video.id] = copy.deepcopy(video)
        return copy.deepcopy(video)

    async def get_video(self, video_id: UUID) -> Optional[Video]:
        video = self.videos.get(video_id)
        return copy.deepcopy(video) if video else None

    async def list_videos(self, user_id: str, include_removed: bool = False) -> list[Video]:
        videos = [
            v for v in self.videos.values()
            if v.user_id == user_id and (include_removed or not v.is_removed)
        ]
        videos.sort(key=lambda v: v.created_at, reverse=True)
        return copy.deepcopy(videos)

    async def update_video(self, video_id: UUID, update: VideoUpdate) -> Video:
        video = self.videos.get(video_id)
        if video is None:
            raise VideoNotFoundError(f"Video {video_id} not found")
        self.update_calls.append((video_id, copy.deepcopy(update)))
        update.apply_to(video)
        return copy.deepcopy(video)

    async def set_thumbnail_if_unset(self, video_id: UUID, thumbnail_url: str) -> bool:
        video = self.videos.get(video_id)
        if video is None or video.thumbnail_url:
            return False
        video.thumbnail_url = thumbnail_url
        return True

    async def delete_video(self, video_id: UUID) -> None:
        self.videos.pop(video_id, None)
        for key in [k for k in self.analyses if k[0] == video_id]:
            del self.analyses[key]

    async def find_frame_analysis(
        self,
        video_id: UUID,
        position: int,
        frame_url: str,
    ) -> Optional[FrameAnalysis]:
        analysis = self.analyses.get((video_id, position, frame_url))
        return copy.deepcopy(analysis) if analysis else None

    async def insert_frame_analysis(self, analysis: FrameAnalysis) -> FrameAnalysis:
        existing = self.analyses.get(analysis.key)
        if existing is not None:
            return copy.deepcopy(existing)
        self.analyses[analysis.key] = copy.deepcopy(analysis)
        return copy.deepcopy(analysis)

    async def list_frame_analyses(self, video_id: UUID) -> list[FrameAnalysis]:
        analyses = [a for a in self.analyses.values() if a.video_id == video_id]
        analyses.sort(key=lambda a: (a.position, a.created_at))
        return copy.deepcopy(analyses)


class InMemoryConversationRepository:
    def __init__(self) -> None:
        self.conversations: dict[tuple[UUID, str], Conversation] = {}
        # Insertion order stands in for sequence_number
        self.messages: list[Message] = []
        logger.info("Initialized in-memory conversation repository")

    async def get_conversation(self, video_id: UUID, user_id: str) -> Optional[Conversation]:
        conversation = self.conversations.get((video_id, user_id))
        return copy.deepcopy(conversation) if conversation else None

    async def get_or_create_conversation(self, video_id: UUID, user_id: str) -> Conversation:
        key = (video_id, user_id)
        if key not in self.conversations:
            self.conversations[key] = Conversation(video_id=video_id, user_id=user_id)
        return copy.deepcopy(self.conversations[key])

    async def add_message(self, message: Message) -> Message:
        stored = copy.deepcopy(message)
        stored.created_at = stored.created_at or utcnow()
        self.messages.append(stored)
        return copy.deepcopy(stored)

    def _for(self, conversation_id: UUID) -> list[Message]:
        return [m for m in self.messages if m.conversation_id == conversation_id]

    async def recent_messages(
        self,
        conversation_id: UUID,
        limit: int,
        exclude_id: Optional[UUID] = None,
    ) -> list[Message]:
        if limit <= 0:
            return []
        messages = [m for m in self._for(conversation_id) if m.id != exclude_id]
        return copy.deepcopy(messages[-limit:])

    async def list_messages(self, conversation_id: UUID) -> list[Message]:
        return copy.deepcopy(self._for(conversation_id))

    async def delete_for_video(self, video_id: UUID) -> int:
        doomed = {c.id for key, c in self.conversations.items() if key[0] == video_id}
        self.messages = [m for m in self.messages if m.conversation_id not in doomed]
        for key in [k for k in self.conversations if k[0] == video_id]:
            del self.conversations[key]
        return len(doomed)
