"""
Video API endpoints.

Two ways to get a video in:
1. POST /video/upload - send the file; the server extracts frames,
   uploads them, describes them and marks the video processed. The
   response comes back as soon as the record exists (202); the rest runs
   as a background task.
2. POST /video + PATCH /video - for clients that extract and upload
   frames themselves and only need the record kept in step.

Every operation is scoped to the calling user. Someone else's video is
404 on reads and 403 on writes.
"""

import logging
from datetime import datetime
from typing import Annotated, Optional, Union
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, File, Form, HTTPException, Query, UploadFile, status
from pydantic import Field

from ...core.errors import (
    OperationTimeoutError,
    StorageError,
    VideoAccessDeniedError,
    VideoNotFoundError,
    VideoRejectedError,
)
from ...core.frames import FrameExtractionError
from ...core.models import Video, VideoUpdate
from ..dependencies import (
    CurrentUser,
    IngestionPipelineDep,
    SettingsDep,
    VideoLibraryDep,
)
from ..schemas import CamelModel

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class VideoResponse(CamelModel):
    id: UUID
    title: str
    description: Optional[str] = None
    url: str
    thumbnail_url: Optional[str] = None
    frame_urls: list[str] = Field(default_factory=list)
    duration_seconds: Optional[float] = None
    user_id: str
    is_processed: bool
    created_at: datetime

    @classmethod
    def from_video(cls, video: Video) -> "VideoResponse":
        return cls(
            id=video.id,
            title=video.title,
            description=video.description,
            url=video.url,
            thumbnail_url=video.thumbnail_url,
            frame_urls=video.frame_urls,
            duration_seconds=video.duration_seconds,
            user_id=video.user_id,
            is_processed=video.is_processed,
            created_at=video.created_at,
        )


class CreateVideoRequest(CamelModel):
    """Fields are optional here so a missing one is a 400, not a 422."""
    title: Optional[str] = None
    url: Optional[str] = None
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    frame_urls: Optional[list[str]] = None
    duration_seconds: Optional[float] = None


class UpdateVideoRequest(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    frame_urls: Optional[list[str]] = None
    is_processed: Optional[bool] = None
    # Older clients send this instead of isProcessed
    processing_complete: Optional[bool] = None


class DeleteVideoResponse(CamelModel):
    success: bool = True


def _not_found(video_id: UUID) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Video {video_id} not found",
    )


def _forbidden() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="You do not have permission to modify this video",
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=VideoResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a video",
    description="Upload a video file. Frames are extracted, stored and described in the background.",
)
async def upload_video(
    background_tasks: BackgroundTasks,
    user: CurrentUser,
    settings: SettingsDep,
    pipeline: IngestionPipelineDep,
    file: Annotated[UploadFile, File(description="Video file (MP4, MOV or WebM)")],
    title: Annotated[str, Form(min_length=1, max_length=500)],
    description: Annotated[Optional[str], Form(max_length=5000)] = None,
) -> VideoResponse:
    """
    Start ingestion for an uploaded video.

    Rejected before anything is stored: wrong content type (415), too
    large (413), unreadable or too long (400). A storage refusal while
    uploading the source file is 502.
    """
    content_type = file.content_type or ""
    if content_type not in settings.allowed_video_types_list:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported video format: {content_type or 'unknown'}. Use MP4, MOV or WebM.",
        )

    video_data = await file.read()
    if len(video_data) > settings.max_upload_size_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Video exceeds maximum size of {settings.max_upload_size_mb}MB",
        )
    if not video_data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Uploaded file is empty",
        )

    logger.info(
        "Receiving video upload",
        extra={
            "user_id": user.id,
            "upload_filename": file.filename,
            "content_type": content_type,
            "size_bytes": len(video_data),
        }
    )

    try:
        pending = await pipeline.start(
            user=user,
            title=title.strip(),
            description=description,
            video_data=video_data,
            content_type=content_type,
        )
    except (FrameExtractionError, VideoRejectedError) as e:
        logger.warning("Video rejected", extra={"user_id": user.id, "error": str(e)})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except (StorageError, OperationTimeoutError) as e:
        logger.error("Failed to store video", extra={"user_id": user.id, "error": str(e)})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    background_tasks.add_task(pipeline.complete_in_background, pending)

    return VideoResponse.from_video(pending.video)


@router.post(
    "",
    response_model=VideoResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a video record",
)
async def create_video(
    request: CreateVideoRequest,
    user: CurrentUser,
    library: VideoLibraryDep,
) -> VideoResponse:
    if not request.title or not request.title.strip() or not request.url:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required fields",
        )

    try:
        video = Video(
            title=request.title.strip(),
            url=request.url,
            user_id=user.id,
            description=request.description,
            thumbnail_url=request.thumbnail_url,
            frame_urls=request.frame_urls or [],
            duration_seconds=request.duration_seconds,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    video = await library.create(user, video)
    return VideoResponse.from_video(video)


@router.get(
    "",
    response_model=Union[VideoResponse, list[VideoResponse]],
    summary="List your videos, or fetch one by id",
)
async def get_videos(
    user: CurrentUser,
    library: VideoLibraryDep,
    id: Annotated[Optional[UUID], Query(description="Video id")] = None,
) -> Union[VideoResponse, list[VideoResponse]]:
    if id is None:
        videos = await library.list_owned(user)
        return [VideoResponse.from_video(v) for v in videos]

    try:
        video = await library.get_owned(user, id)
    except VideoNotFoundError:
        raise _not_found(id)
    return VideoResponse.from_video(video)


@router.patch(
    "",
    response_model=VideoResponse,
    summary="Update a video",
)
async def update_video(
    request: UpdateVideoRequest,
    user: CurrentUser,
    library: VideoLibraryDep,
    id: Annotated[Optional[UUID], Query(description="Video id")] = None,
) -> VideoResponse:
    if id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Video ID is required",
        )

    is_processed = request.is_processed
    if is_processed is None:
        is_processed = request.processing_complete

    try:
        update = VideoUpdate(
            title=request.title,
            description=request.description,
            thumbnail_url=request.thumbnail_url,
            frame_urls=request.frame_urls,
            is_processed=is_processed,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        video = await library.update_owned(user, id, update)
    except VideoNotFoundError:
        raise _not_found(id)
    except VideoAccessDeniedError:
        raise _forbidden()

    logger.info(
        "Video updated",
        extra={
            "video_id": str(id),
            "frame_count": video.frame_count,
            "is_processed": video.is_processed,
        }
    )
    return VideoResponse.from_video(video)


@router.delete(
    "",
    response_model=DeleteVideoResponse,
    summary="Remove a video",
)
async def delete_video(
    user: CurrentUser,
    library: VideoLibraryDep,
    id: Annotated[Optional[UUID], Query(description="Video id")] = None,
) -> DeleteVideoResponse:
    if id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Video ID is required",
        )

    try:
        await library.remove_owned(user, id)
    except VideoNotFoundError:
        raise _not_found(id)
    except VideoAccessDeniedError:
        raise _forbidden()

    return DeleteVideoResponse()
