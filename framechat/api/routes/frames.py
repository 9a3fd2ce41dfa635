"""
Single-frame analysis endpoint.

Clients that upload frames themselves call this once per frame. It is
idempotent: a frame that already has an analysis returns the stored one
without calling the model again.
"""

import logging
from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import Field

from ...core.errors import OperationTimeoutError, VideoNotFoundError
from ...core.models import FrameAnalysis
from ..dependencies import CurrentUser, FrameDispatcherDep, VideoLibraryDep
from ..schemas import CamelModel

logger = logging.getLogger(__name__)

router = APIRouter()


class AnalyzeFrameRequest(CamelModel):
    frame_url: Annotated[str, Field(min_length=1)]
    video_id: UUID
    position: Annotated[int, Field(ge=0)]


class FrameAnalysisResponse(CamelModel):
    id: UUID
    video_id: UUID
    frame_url: str
    position: int
    description: str
    created_at: datetime
    updated_at: datetime
    created: bool = False

    @classmethod
    def from_analysis(cls, analysis: FrameAnalysis, created: bool) -> "FrameAnalysisResponse":
        return cls(
            id=analysis.id,
            video_id=analysis.video_id,
            frame_url=analysis.frame_url,
            position=analysis.position,
            description=analysis.description,
            created_at=analysis.created_at,
            updated_at=analysis.updated_at,
            created=created,
        )


@router.post(
    "",
    response_model=FrameAnalysisResponse,
    summary="Describe one frame",
    description="Runs the vision model on a frame and stores the result. Repeat calls return the stored result.",
)
async def analyze_frame(
    request: AnalyzeFrameRequest,
    user: CurrentUser,
    library: VideoLibraryDep,
    dispatcher: FrameDispatcherDep,
) -> FrameAnalysisResponse:
    try:
        video = await library.get_owned(user, request.video_id)
    except VideoNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Video {request.video_id} not found",
        )

    try:
        outcome = await dispatcher.dispatch(
            video.id,
            request.frame_url.strip(),
            request.position,
            video.title,
        )
    except OperationTimeoutError as e:
        logger.error(
            "Frame analysis could not be stored",
            extra={"video_id": str(video.id), "position": request.position, "error": str(e)}
        )
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    # A fresh dispatcher per request means the in-session skip never fires
    # here, so the outcome always carries an analysis.
    return FrameAnalysisResponse.from_analysis(outcome.analysis, outcome.created)
