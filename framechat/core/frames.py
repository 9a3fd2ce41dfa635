"""
Video frame sampling and extraction.

This module decides which moments of a video become frames and turns
them into an ordered list of JPEG stills:
- Sampling policies compute timestamps (pure functions, easy to test)
- FrameExtractor probes the video, applies a policy and asks a
  VideoProcessor to render every timestamp

Extraction is all-or-nothing. If metadata can't be read or any single
seek fails, the whole extraction fails with FrameExtractionError.
Partial progress is only tolerated later, during upload.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .interfaces import VideoProcessor

logger = logging.getLogger(__name__)


class FrameExtractionError(Exception):
    """Raised when frame extraction fails."""
    pass


@dataclass(frozen=True)
class VideoInfo:
    """Technical information about a video file."""
    duration_seconds: float
    width: int
    height: int
    fps: float = 0.0
    codec: str = "unknown"
    file_size_bytes: int = 0

    @property
    def resolution_display(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class ExtractedFrame:
    """
    A single frame extracted from video.

    Frozen because frames are values. `position` is the 0-based ordinal
    in the sampled sequence and becomes the index into Video.frame_urls.
    """
    position: int
    timestamp_seconds: float
    image_data: bytes

    @property
    def timestamp_formatted(self) -> str:
        """Human-readable timestamp."""
        minutes = int(self.timestamp_seconds // 60)
        seconds = self.timestamp_seconds % 60
        return f"{minutes:02d}:{seconds:05.2f}"

    @property
    def timestamp_label(self) -> str:
        """Compact label used in object paths, e.g. '62s' or '1.5s'."""
        return f"{self.timestamp_seconds:g}s"


@dataclass(frozen=True)
class ExtractionResult:
    """Everything the upload step needs from extraction."""
    info: VideoInfo
    frames: list[ExtractedFrame]

    @property
    def frame_count(self) -> int:
        return len(self.frames)


# ---------------------------------------------------------------------------
# Sampling Policies
# ---------------------------------------------------------------------------

class SamplingPolicy(ABC):
    """
    Base class for frame sampling policies.

    A policy only decides *when* to sample; rendering is someone else's job.
    """

    @abstractmethod
    def calculate_timestamps(
        self,
        duration_seconds: float,
        max_frames: int,
    ) -> list[float]:
        """
        Determine which timestamps to extract frames from.

        Returns a strictly increasing list of timestamps in seconds.
        """
        ...


class AdaptiveSamplingPolicy(SamplingPolicy):
    """
    Dense sampling early, sparser later.

    Starting at 0, sample the current time, then step forward by 1s while
    under a minute, 2s while under five minutes and 5s after that. Short
    clips get a frame per second; long ones stay bounded by max_frames.
    """

    def __init__(
        self,
        tiers: tuple[tuple[float, float], ...] = ((60.0, 1.0), (300.0, 2.0)),
        tail_step: float = 5.0,
    ) -> None:
        # tiers: (upper bound, step) pairs in increasing order of bound
        self.tiers = tiers
        self.tail_step = tail_step

    def step_after(self, current: float) -> float:
        for bound, step in self.tiers:
            if current < bound:
                return step
        return self.tail_step

    def calculate_timestamps(
        self,
        duration_seconds: float,
        max_frames: int = 300,
    ) -> list[float]:
        timestamps: list[float] = []
        current = 0.0

        while current < duration_seconds and len(timestamps) < max_frames:
            timestamps.append(current)
            current += self.step_after(current)

        return timestamps


def scaled_dimensions(width: int, height: int, max_dimension: int) -> tuple[int, int]:
    """
    Fit (width, height) inside a max_dimension square, keeping aspect ratio.

    Frames that already fit are left alone; we never upscale.
    """
    if width <= 0 or height <= 0:
        raise FrameExtractionError(f"Invalid video dimensions: {width}x{height}")

    if width <= max_dimension and height <= max_dimension:
        return width, height

    scale = min(max_dimension / width, max_dimension / height)
    return max(1, round(width * scale)), max(1, round(height * scale))


# ---------------------------------------------------------------------------
# Frame Extractor
# ---------------------------------------------------------------------------

class FrameExtractor:
    """
    Turns uploaded video bytes into an ordered list of frames.

    The processor does the heavy lifting (FFmpeg in production, a
    placeholder in mock mode); this class owns the policy, the size cap
    and the all-or-nothing guarantee.
    """

    def __init__(
        self,
        processor: "VideoProcessor",
        policy: Optional[SamplingPolicy] = None,
        max_frames: int = 300,
        max_dimension: int = 720,
        quality: int = 4,
    ) -> None:
        self._processor = processor
        self._policy = policy or AdaptiveSamplingPolicy()
        self._max_frames = max_frames
        self._max_dimension = max_dimension
        self._quality = quality

    async def probe(self, video_data: bytes) -> VideoInfo:
        """Read and sanity-check metadata. Raises FrameExtractionError."""
        try:
            info = await self._processor.get_video_info(video_data)
        except FrameExtractionError:
            raise
        except Exception as e:
            raise FrameExtractionError(f"Could not read video metadata: {e}") from e

        duration = info.duration_seconds
        if not duration or not math.isfinite(duration) or duration <= 0:
            raise FrameExtractionError(f"Could not read video duration ({duration!r})")
        if info.width <= 0 or info.height <= 0:
            raise FrameExtractionError(
                f"Could not read video dimensions ({info.width}x{info.height})"
            )

        return info

    async def extract(self, video_data: bytes, info: Optional[VideoInfo] = None) -> ExtractionResult:
        """
        Sample and render every frame.

        Returns frames whose positions are 0..n-1 in increasing timestamp
        order, or raises FrameExtractionError. Never returns a partial set.
        """
        if info is None:
            info = await self.probe(video_data)

        timestamps = self._policy.calculate_timestamps(info.duration_seconds, self._max_frames)
        if not timestamps:
            raise FrameExtractionError("Sampling policy produced no timestamps")

        width, height = scaled_dimensions(info.width, info.height, self._max_dimension)

        logger.info(
            "Extracting frames",
            extra={
                "duration": info.duration_seconds,
                "frame_count": len(timestamps),
                "output_resolution": f"{width}x{height}",
            }
        )

        try:
            frames = await self._processor.extract_frames_at_timestamps(
                video_data,
                timestamps,
                width,
                height,
                self._quality,
            )
        except FrameExtractionError:
            raise
        except Exception as e:
            raise FrameExtractionError(f"Frame rendering failed: {e}") from e

        self._verify_sequence(frames, timestamps)

        return ExtractionResult(info=info, frames=frames)

    def _verify_sequence(self, frames: list[ExtractedFrame], timestamps: list[float]) -> None:
        if len(frames) != len(timestamps):
            raise FrameExtractionError(
                f"Expected {len(timestamps)} frames, got {len(frames)}"
            )

        for expected_position, (frame, timestamp) in enumerate(zip(frames, timestamps)):
            if frame.position != expected_position:
                raise FrameExtractionError(
                    f"Frame out of order: expected position {expected_position}, got {frame.position}"
                )
            if frame.timestamp_seconds != timestamp:
                raise FrameExtractionError(
                    f"Frame {expected_position} rendered at {frame.timestamp_seconds}s, expected {timestamp}s"
                )
            if not frame.image_data:
                raise FrameExtractionError(f"Frame {expected_position} is empty")
