"""
Frame analysis dispatch.

For every uploaded frame we ask the vision model for a description and
store it. A frame is described at most once:
- the dispatcher remembers what it already submitted in this session
- the store is checked for an existing (video, position, url) row
- the insert itself is insert-if-absent, so a race still yields one row

A model failure on one frame never stops the others. That frame gets
the ERROR_DESCRIPTION sentinel and is not retried.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from .errors import CompletionProviderError, OperationTimeoutError
from .interfaces import CompletionProvider, VideoRepository
from .models import ERROR_DESCRIPTION, FrameAnalysis
from .timeouts import call_with_timeout

logger = logging.getLogger(__name__)


FRAME_DESCRIPTION_INSTRUCTION = (
    "You are a descriptive assistant that provides detailed observations of "
    "video frames. Describe what you see in this frame from the video with "
    "specific details about objects, people, actions, text, and setting. "
    "Be concise but complete."
)


def frame_description_prompt(video_title: Optional[str]) -> str:
    if video_title:
        return f'Describe this frame from the video "{video_title}" in detail.'
    return "Describe this frame from the video in detail."


@dataclass
class DispatchOutcome:
    """What happened to one frame."""
    frame_url: str
    position: int
    analysis: Optional[FrameAnalysis] = None
    created: bool = False
    skipped: bool = False
    error: bool = False


class FrameAnalysisDispatcher:
    """
    Describes frames with a vision model and persists the results.

    One instance per upload session. The de-dup set lives on the
    instance, so two uploads never share it.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        videos: VideoRepository,
        batch_size: int = 10,
        model_timeout: float = 60.0,
        database_timeout: float = 30.0,
        retries: int = 1,
    ) -> None:
        self._provider = provider
        self._videos = videos
        self._batch_size = batch_size
        self._model_timeout = model_timeout
        self._database_timeout = database_timeout
        self._retries = retries
        self._dispatched: set[str] = set()

    def already_dispatched(self, frame_url: str) -> bool:
        return frame_url in self._dispatched

    async def dispatch(
        self,
        video_id: UUID,
        frame_url: str,
        position: int,
        video_title: Optional[str] = None,
    ) -> DispatchOutcome:
        """
        Describe and store a single frame, unless it is already handled.

        Returns the stored analysis (existing or new) in the outcome.
        """
        if frame_url in self._dispatched:
            logger.debug(
                "Frame already dispatched in this session",
                extra={"video_id": str(video_id), "position": position}
            )
            return DispatchOutcome(frame_url=frame_url, position=position, skipped=True)
        self._dispatched.add(frame_url)

        existing = await call_with_timeout(
            lambda: self._videos.find_frame_analysis(video_id, position, frame_url),
            timeout=self._database_timeout,
            description="find frame analysis",
        )
        if existing is not None:
            logger.debug(
                "Frame already analyzed",
                extra={"video_id": str(video_id), "position": position}
            )
            return DispatchOutcome(
                frame_url=frame_url,
                position=position,
                analysis=existing,
                skipped=True,
            )

        description = await self._describe(frame_url, position, video_title)
        failed = description == ERROR_DESCRIPTION

        candidate = FrameAnalysis(
            video_id=video_id,
            position=position,
            frame_url=frame_url,
            description=description,
        )
        stored = await call_with_timeout(
            lambda: self._videos.insert_frame_analysis(candidate),
            timeout=self._database_timeout,
            description="insert frame analysis",
        )

        return DispatchOutcome(
            frame_url=frame_url,
            position=position,
            analysis=stored,
            created=stored.id == candidate.id,
            error=failed,
        )

    async def _describe(self, frame_url: str, position: int, video_title: Optional[str]) -> str:
        try:
            description = await call_with_timeout(
                lambda: self._provider.describe_image(
                    frame_url,
                    FRAME_DESCRIPTION_INSTRUCTION,
                    frame_description_prompt(video_title),
                ),
                timeout=self._model_timeout,
                retries=self._retries,
                description="describe frame",
            )
        except (CompletionProviderError, OperationTimeoutError) as e:
            logger.warning(
                "Frame description failed, storing error marker",
                extra={"frame_url": frame_url, "position": position, "error": str(e)}
            )
            return ERROR_DESCRIPTION

        description = description.strip()
        if not description:
            logger.warning(
                "Model returned an empty frame description",
                extra={"frame_url": frame_url, "position": position}
            )
            return ERROR_DESCRIPTION
        return description

    async def dispatch_all(
        self,
        video_id: UUID,
        frame_urls: list[str],
        video_title: Optional[str] = None,
    ) -> list[DispatchOutcome]:
        """
        Dispatch every frame, batch by batch.

        Frames within a batch run concurrently; the next batch starts only
        when the previous one has finished.
        """
        outcomes: list[DispatchOutcome] = []

        for start in range(0, len(frame_urls), self._batch_size):
            batch = list(enumerate(frame_urls[start:start + self._batch_size], start=start))
            results = await asyncio.gather(
                *(self.dispatch(video_id, url, position, video_title) for position, url in batch)
            )
            outcomes.extend(results)

            logger.info(
                "Analysis batch finished",
                extra={
                    "video_id": str(video_id),
                    "batch_start": start,
                    "batch_size": len(batch),
                    "errors": sum(1 for o in results if o.error),
                }
            )

        return outcomes
