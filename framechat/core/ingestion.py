"""
Upload-time ingestion: store the source video and its frames, keep the
Video record's frame list in step, then hand frames to the analysis
dispatcher.

Ordering is the invariant everything else leans on. frame_urls[i] must be
the frame sampled at position i, so uploads that finish out of order
within a batch are slotted by position, and only the contiguous resolved
prefix is ever written to the database. A crash mid-upload leaves a
shorter, still-correct list rather than one with holes.

Object paths are deterministic (derived from the video id and frame
position). A retried upload hits "already exists" and we treat that as
success instead of creating a second object.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional
from uuid import UUID, uuid4

from .errors import ObjectExistsError, VideoNotFoundError, VideoRejectedError
from .frames import ExtractedFrame, FrameExtractor, VideoInfo
from .interfaces import ObjectStorage, VideoRepository
from .models import AuthenticatedUser, Video, VideoUpdate
from .timeouts import call_with_timeout

if TYPE_CHECKING:
    from .dispatcher import FrameAnalysisDispatcher

logger = logging.getLogger(__name__)


VIDEO_EXTENSIONS = {
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/webm": "webm",
}


def source_path(video_id: UUID, content_type: str) -> str:
    extension = VIDEO_EXTENSIONS.get(content_type, "bin")
    return f"videos/{video_id}/source.{extension}"


def frame_path(video_id: UUID, frame: ExtractedFrame) -> str:
    return f"frames/{video_id}/{frame.position:04d}-{frame.timestamp_label}.jpg"


# ---------------------------------------------------------------------------
# Position-indexed URL slots
# ---------------------------------------------------------------------------

class FrameUrlSlots:
    """
    Pre-sized, position-indexed holder for resolved frame URLs.

    Filled by index only, never appended to, so completion order inside a
    batch can't reorder frames.
    """

    def __init__(self, size: int) -> None:
        self._slots: list[Optional[str]] = [None] * size

    def __len__(self) -> int:
        return len(self._slots)

    def set(self, position: int, url: str) -> None:
        if not 0 <= position < len(self._slots):
            raise IndexError(f"Frame position {position} outside 0..{len(self._slots) - 1}")
        self._slots[position] = url

    @property
    def resolved_count(self) -> int:
        return sum(1 for url in self._slots if url is not None)

    def contiguous_prefix(self) -> list[str]:
        """Resolved URLs from position 0 up to the first gap."""
        prefix = []
        for url in self._slots:
            if url is None:
                break
            prefix.append(url)
        return prefix

    def earliest(self) -> Optional[tuple[int, str]]:
        """(position, url) of the lowest resolved position, if any."""
        for position, url in enumerate(self._slots):
            if url is not None:
                return position, url
        return None


# ---------------------------------------------------------------------------
# Upload Coordinator
# ---------------------------------------------------------------------------

class UploadCoordinator:
    """
    Uploads a source video and its frames, checkpointing progress.

    Frames go up in batches (concurrent inside a batch, sequential across
    batches). Any fatal storage error, or an upload that still times out
    after its retry, aborts the whole submission.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        videos: VideoRepository,
        batch_size: int = 5,
        checkpoint_every: int = 1,
        storage_timeout: float = 60.0,
        database_timeout: float = 30.0,
        retries: int = 1,
    ) -> None:
        self._storage = storage
        self._videos = videos
        self._batch_size = batch_size
        self._checkpoint_every = checkpoint_every
        self._storage_timeout = storage_timeout
        self._database_timeout = database_timeout
        self._retries = retries

    async def _put(self, path: str, data: bytes, content_type: str) -> str:
        """Upload one object and return its public URL. Existing objects count as uploaded."""
        try:
            await call_with_timeout(
                lambda: self._storage.upload_object(path, data, content_type),
                timeout=self._storage_timeout,
                retries=self._retries,
                description=f"upload {path}",
            )
        except ObjectExistsError:
            logger.info("Object already exists, reusing it", extra={"path": path})

        return self._storage.public_url(path)

    async def _db(self, operation: Callable, description: str):
        return await call_with_timeout(
            operation,
            timeout=self._database_timeout,
            description=description,
        )

    async def upload_source(self, video_id: UUID, video_data: bytes, content_type: str) -> str:
        path = source_path(video_id, content_type)
        url = await self._put(path, video_data, content_type)

        logger.info(
            "Uploaded source video",
            extra={"video_id": str(video_id), "path": path, "size_bytes": len(video_data)}
        )
        return url

    async def upload_frames(self, video_id: UUID, frames: list[ExtractedFrame]) -> list[str]:
        """
        Upload every frame and return the ordered URL list.

        The Video record's frame_urls is updated with the contiguous prefix
        every `checkpoint_every` batches and after the last batch.
        """
        slots = FrameUrlSlots(len(frames))
        batches = [
            frames[start:start + self._batch_size]
            for start in range(0, len(frames), self._batch_size)
        ]
        thumbnail_checked = False

        for batch_number, batch in enumerate(batches, start=1):
            results = await asyncio.gather(
                *(self._put(frame_path(video_id, frame), frame.image_data, "image/jpeg") for frame in batch),
                return_exceptions=True,
            )

            for frame, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.error(
                        "Frame upload failed, aborting submission",
                        extra={
                            "video_id": str(video_id),
                            "position": frame.position,
                            "batch": batch_number,
                            "error": str(result),
                        }
                    )
                    raise result
                slots.set(frame.position, result)

            if not thumbnail_checked:
                earliest = slots.earliest()
                if earliest is not None:
                    written = await self._db(
                        lambda: self._videos.set_thumbnail_if_unset(video_id, earliest[1]),
                        "set thumbnail",
                    )
                    thumbnail_checked = True
                    logger.debug(
                        "Thumbnail checked",
                        extra={"video_id": str(video_id), "position": earliest[0], "written": written}
                    )

            is_last = batch_number == len(batches)
            if is_last or batch_number % self._checkpoint_every == 0:
                await self._checkpoint(video_id, slots, batch_number)

        return slots.contiguous_prefix()

    async def _checkpoint(self, video_id: UUID, slots: FrameUrlSlots, batch_number: int) -> None:
        prefix = slots.contiguous_prefix()
        await self._db(
            lambda: self._videos.update_video(video_id, VideoUpdate(frame_urls=prefix)),
            "checkpoint frame urls",
        )

        logger.info(
            "Checkpointed frame URLs",
            extra={
                "video_id": str(video_id),
                "batch": batch_number,
                "persisted": len(prefix),
                "total": len(slots),
            }
        )

    async def finalize(self, video_id: UUID, frame_urls: list[str]) -> Video:
        """
        Verify the stored frame list and mark the video processed.

        If the stored list is shorter than what was produced (a lost
        checkpoint), issue one corrective update first.
        """
        stored = await self._db(lambda: self._videos.get_video(video_id), "read back video")
        if stored is None:
            raise VideoNotFoundError(f"Video {video_id} disappeared during processing")

        if len(stored.frame_urls) < len(frame_urls):
            logger.warning(
                "Stored frame list is short, correcting",
                extra={
                    "video_id": str(video_id),
                    "stored": len(stored.frame_urls),
                    "expected": len(frame_urls),
                }
            )
            await self._db(
                lambda: self._videos.update_video(video_id, VideoUpdate(frame_urls=frame_urls)),
                "correct frame urls",
            )

        return await self._db(
            lambda: self._videos.update_video(video_id, VideoUpdate(is_processed=True)),
            "mark processed",
        )


# ---------------------------------------------------------------------------
# Ingestion Pipeline
# ---------------------------------------------------------------------------

@dataclass
class PendingIngestion:
    """A video whose record exists but whose frames are not uploaded yet."""
    video: Video
    info: VideoInfo
    frames: list[ExtractedFrame]


class IngestionPipeline:
    """
    Server-side upload flow.

    start() runs inside the request: extract, create the record, upload
    the source and fill in its url. complete() runs afterwards (as a background task): upload
    frames, dispatch analyses, finalize.
    """

    def __init__(
        self,
        extractor: FrameExtractor,
        coordinator: UploadCoordinator,
        videos: VideoRepository,
        dispatcher_factory: Callable[[], "FrameAnalysisDispatcher"],
        max_duration_seconds: float = 600.0,
        database_timeout: float = 30.0,
    ) -> None:
        self._extractor = extractor
        self._coordinator = coordinator
        self._videos = videos
        self._dispatcher_factory = dispatcher_factory
        self._max_duration_seconds = max_duration_seconds
        self._database_timeout = database_timeout

    async def _db(self, operation: Callable, description: str):
        return await call_with_timeout(
            operation,
            timeout=self._database_timeout,
            description=description,
        )

    async def start(
        self,
        user: AuthenticatedUser,
        title: str,
        video_data: bytes,
        content_type: str,
        description: Optional[str] = None,
    ) -> PendingIngestion:
        """
        Validate and extract, then create the Video record and store the
        source file under it.

        Raises FrameExtractionError for unreadable videos and
        VideoRejectedError for videos that are too long. Nothing is
        stored when either is raised.
        """
        info = await self._extractor.probe(video_data)
        if info.duration_seconds > self._max_duration_seconds:
            raise VideoRejectedError(
                f"Video too long ({info.duration_seconds:.0f}s). "
                f"Maximum is {self._max_duration_seconds:.0f}s."
            )

        extraction = await self._extractor.extract(video_data, info=info)

        video_id = uuid4()
        video = Video(
            id=video_id,
            title=title,
            description=description,
            user_id=user.id,
            duration_seconds=info.duration_seconds,
        )
        video = await self._db(lambda: self._videos.create_video(video), "create video")

        url = await self._coordinator.upload_source(video_id, video_data, content_type)
        video = await self._db(
            lambda: self._videos.update_video(video_id, VideoUpdate(url=url)),
            "store source url",
        )

        logger.info(
            "Video created, frames pending",
            extra={
                "video_id": str(video.id),
                "user_id": user.id,
                "frame_count": extraction.frame_count,
                "duration": info.duration_seconds,
            }
        )

        return PendingIngestion(video=video, info=info, frames=extraction.frames)

    async def complete(self, pending: PendingIngestion) -> Video:
        """Upload frames, describe them, and mark the video processed."""
        video_id = pending.video.id

        frame_urls = await self._coordinator.upload_frames(video_id, pending.frames)

        dispatcher = self._dispatcher_factory()
        outcomes = await dispatcher.dispatch_all(video_id, frame_urls, pending.video.title)

        video = await self._coordinator.finalize(video_id, frame_urls)

        logger.info(
            "Video processed",
            extra={
                "video_id": str(video_id),
                "frames": len(frame_urls),
                "analyses_created": sum(1 for o in outcomes if o.created),
                "analysis_errors": sum(1 for o in outcomes if o.error),
            }
        )
        return video

    async def complete_in_background(self, pending: PendingIngestion) -> None:
        """
        Background-task entry point.

        There is no caller left to raise to, so failures are logged with
        the traceback. The video stays unprocessed with whatever prefix
        was checkpointed.
        """
        try:
            await self.complete(pending)
        except Exception:
            logger.exception(
                "Background ingestion failed",
                extra={"video_id": str(pending.video.id)}
            )
