"""Conversation history endpoint."""

import logging
from datetime import datetime
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from ...core.errors import VideoNotFoundError
from ..dependencies import ConversationRepositoryDep, CurrentUser, VideoLibraryDep
from ..schemas import CamelModel

logger = logging.getLogger(__name__)

router = APIRouter()


class MessageResponse(CamelModel):
    id: UUID
    content: str
    role: str
    created_at: datetime


@router.get(
    "",
    response_model=list[MessageResponse],
    summary="List the messages of your conversation about a video",
)
async def list_messages(
    user: CurrentUser,
    library: VideoLibraryDep,
    conversations: ConversationRepositoryDep,
    video_id: Annotated[Optional[UUID], Query(alias="videoId")] = None,
) -> list[MessageResponse]:
    """Oldest first. An empty list when the user hasn't chatted yet."""
    if video_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Video ID is required",
        )

    try:
        await library.get_owned(user, video_id)
    except VideoNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Video {video_id} not found",
        )

    conversation = await conversations.get_conversation(video_id, user.id)
    if conversation is None:
        return []

    messages = await conversations.list_messages(conversation.id)
    return [
        MessageResponse(
            id=m.id,
            content=m.content,
            role=m.role.value,
            created_at=m.created_at,
        )
        for m in messages
    ]
