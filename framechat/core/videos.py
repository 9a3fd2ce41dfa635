"""
Ownership-checked access to videos.

Every read or write of a video from the API goes through VideoLibrary,
so "is this yours?" is answered in one place. A removed video looks the
same as a missing one.
"""

import logging
from typing import Literal, Optional
from uuid import UUID

from .errors import VideoAccessDeniedError, VideoNotFoundError
from .interfaces import ConversationRepository, ObjectStorage, VideoRepository
from .models import AuthenticatedUser, Video, VideoUpdate
from .timeouts import call_with_timeout

logger = logging.getLogger(__name__)

DeletePolicy = Literal["soft", "hard"]


class VideoLibrary:
    def __init__(
        self,
        videos: VideoRepository,
        conversations: ConversationRepository,
        storage: ObjectStorage,
        delete_policy: DeletePolicy = "soft",
        database_timeout: float = 30.0,
        storage_timeout: float = 60.0,
    ) -> None:
        self._videos = videos
        self._conversations = conversations
        self._storage = storage
        self._delete_policy = delete_policy
        self._database_timeout = database_timeout
        self._storage_timeout = storage_timeout

    async def _db(self, operation, description: str):
        return await call_with_timeout(
            operation,
            timeout=self._database_timeout,
            description=description,
        )

    async def create(self, user: AuthenticatedUser, video: Video) -> Video:
        if not video.is_owned_by(user.id):
            raise VideoAccessDeniedError("Videos can only be created for yourself")
        created = await self._db(lambda: self._videos.create_video(video), "create video")
        logger.info("Video created", extra={"video_id": str(created.id), "user_id": user.id})
        return created

    async def _load(self, user: AuthenticatedUser, video_id: UUID, deny_as_missing: bool) -> Video:
        video = await self._db(lambda: self._videos.get_video(video_id), "read video")
        if video is None or video.is_removed:
            raise VideoNotFoundError(f"Video {video_id} not found")
        if not video.is_owned_by(user.id):
            logger.warning(
                "Video access denied",
                extra={"video_id": str(video_id), "user_id": user.id}
            )
            if deny_as_missing:
                raise VideoNotFoundError(f"Video {video_id} not found")
            raise VideoAccessDeniedError(f"Video {video_id} belongs to another user")
        return video

    async def get_owned(self, user: AuthenticatedUser, video_id: UUID) -> Video:
        """
        Fetch a video the user owns.

        Raises VideoNotFoundError if it doesn't exist, was removed, or
        belongs to someone else. Reads never confirm that another user's
        video exists.
        """
        return await self._load(user, video_id, deny_as_missing=True)

    async def list_owned(self, user: AuthenticatedUser) -> list[Video]:
        return await self._db(lambda: self._videos.list_videos(user.id), "list videos")

    async def update_owned(
        self,
        user: AuthenticatedUser,
        video_id: UUID,
        update: VideoUpdate,
    ) -> Video:
        video = await self._load(user, video_id, deny_as_missing=False)
        if update.is_empty:
            return video
        return await self._db(lambda: self._videos.update_video(video_id, update), "update video")

    async def remove_owned(
        self,
        user: AuthenticatedUser,
        video_id: UUID,
        policy: Optional[DeletePolicy] = None,
    ) -> None:
        """
        Remove a video according to the configured policy.

        soft: flag as removed; rows and objects stay.
        hard: delete conversations, the video, its analyses and stored objects.
        """
        await self._load(user, video_id, deny_as_missing=False)
        policy = policy or self._delete_policy

        if policy == "soft":
            await self._db(
                lambda: self._videos.update_video(video_id, VideoUpdate(is_removed=True)),
                "soft remove video",
            )
        else:
            conversations = await self._db(
                lambda: self._conversations.delete_for_video(video_id),
                "delete conversations",
            )
            await self._db(lambda: self._videos.delete_video(video_id), "delete video")
            objects = 0
            for prefix in (f"frames/{video_id}/", f"videos/{video_id}/"):
                objects += await call_with_timeout(
                    lambda: self._storage.delete_prefix(prefix),
                    timeout=self._storage_timeout,
                    description=f"delete {prefix}",
                )
            logger.info(
                "Video objects deleted",
                extra={
                    "video_id": str(video_id),
                    "conversations": conversations,
                    "objects": objects,
                }
            )

        logger.info(
            "Video removed",
            extra={"video_id": str(video_id), "user_id": user.id, "policy": policy}
        )
