"""
Unit tests for frame sampling and extraction.

Sampling policies are pure functions of duration, so most of these
tests need no video at all. Extraction runs against small fake
processors to check the all-or-nothing guarantee.
"""

import asyncio

import pytest

from framechat.core.frames import (
    AdaptiveSamplingPolicy,
    ExtractedFrame,
    FrameExtractionError,
    FrameExtractor,
    VideoInfo,
    scaled_dimensions,
)
from framechat.infrastructure.video.processor import MockVideoProcessor


# ---------------------------------------------------------------------------
# Sampling Policy Tests
# ---------------------------------------------------------------------------

class TestAdaptiveSamplingPolicy:
    """Tests for the dense-early, sparse-later sampling policy."""

    def test_short_video_gets_one_frame_per_second(self):
        """A 10 second clip samples 0..9."""
        policy = AdaptiveSamplingPolicy()
        assert policy.calculate_timestamps(10.0) == [float(t) for t in range(10)]

    def test_step_widens_after_first_minute(self):
        """After 60s the step becomes 2s."""
        timestamps = AdaptiveSamplingPolicy().calculate_timestamps(90.0)

        assert timestamps[:60] == [float(t) for t in range(60)]
        assert timestamps[60:] == [float(t) for t in range(60, 90, 2)]
        assert len(timestamps) == 75

    def test_step_widens_again_after_five_minutes(self):
        timestamps = AdaptiveSamplingPolicy().calculate_timestamps(320.0)

        assert timestamps[-6:] == [296.0, 298.0, 300.0, 305.0, 310.0, 315.0]
        assert 302.0 not in timestamps

    def test_respects_max_frames(self):
        timestamps = AdaptiveSamplingPolicy().calculate_timestamps(600.0, max_frames=50)
        assert len(timestamps) == 50

    def test_timestamps_strictly_increase_and_stay_inside_video(self):
        timestamps = AdaptiveSamplingPolicy().calculate_timestamps(599.5)
        assert all(a < b for a, b in zip(timestamps, timestamps[1:]))
        assert timestamps[-1] < 599.5

    def test_sub_second_video_gets_single_frame(self):
        assert AdaptiveSamplingPolicy().calculate_timestamps(0.4) == [0.0]


class TestScaledDimensions:
    def test_large_landscape_fits_inside_limit(self):
        assert scaled_dimensions(1920, 1080, 720) == (720, 405)

    def test_portrait_scales_by_height(self):
        assert scaled_dimensions(1080, 1920, 720) == (405, 720)

    def test_small_video_is_not_upscaled(self):
        assert scaled_dimensions(640, 360, 720) == (640, 360)

    def test_invalid_dimensions_rejected(self):
        with pytest.raises(FrameExtractionError):
            scaled_dimensions(0, 720, 720)


class TestExtractedFrame:
    def test_timestamp_label_is_compact(self):
        assert ExtractedFrame(position=0, timestamp_seconds=62.0, image_data=b"x").timestamp_label == "62s"
        assert ExtractedFrame(position=0, timestamp_seconds=1.5, image_data=b"x").timestamp_label == "1.5s"

    def test_timestamp_formatted(self):
        frame = ExtractedFrame(position=0, timestamp_seconds=65.5, image_data=b"x")
        assert frame.timestamp_formatted == "01:05.50"


# ---------------------------------------------------------------------------
# Frame Extractor Tests
# ---------------------------------------------------------------------------

class ShortChangingProcessor(MockVideoProcessor):
    """Drops the last frame, as if one seek silently failed."""

    async def extract_frames_at_timestamps(self, video_data, timestamps, width, height, quality):
        frames = await super().extract_frames_at_timestamps(video_data, timestamps, width, height, quality)
        return frames[:-1]


class BrokenProbeProcessor(MockVideoProcessor):
    def __init__(self, info: VideoInfo) -> None:
        super().__init__()
        self.info = info

    async def get_video_info(self, video_data):
        return self.info


class RecordingProcessor(MockVideoProcessor):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.requested_size = None

    async def extract_frames_at_timestamps(self, video_data, timestamps, width, height, quality):
        self.requested_size = (width, height)
        return await super().extract_frames_at_timestamps(video_data, timestamps, width, height, quality)


class TestFrameExtractor:
    """Tests for the all-or-nothing extraction step."""

    def test_extracts_positions_in_timestamp_order(self):
        extractor = FrameExtractor(MockVideoProcessor(duration_seconds=5.0))

        result = asyncio.run(extractor.extract(b"video"))

        assert result.frame_count == 5
        assert [f.position for f in result.frames] == [0, 1, 2, 3, 4]
        assert [f.timestamp_seconds for f in result.frames] == [0.0, 1.0, 2.0, 3.0, 4.0]

    def test_frames_are_downscaled_before_rendering(self):
        processor = RecordingProcessor(duration_seconds=2.0, width=1920, height=1080)
        asyncio.run(FrameExtractor(processor, max_dimension=720).extract(b"video"))
        assert processor.requested_size == (720, 405)

    def test_missing_frame_fails_whole_extraction(self):
        """A partial set is never returned."""
        extractor = FrameExtractor(ShortChangingProcessor(duration_seconds=5.0))

        with pytest.raises(FrameExtractionError, match="Expected 5 frames"):
            asyncio.run(extractor.extract(b"video"))

    @pytest.mark.parametrize("duration", [0.0, float("nan"), float("inf"), -3.0])
    def test_unreadable_duration_rejected(self, duration):
        info = VideoInfo(duration_seconds=duration, width=640, height=360)
        extractor = FrameExtractor(BrokenProbeProcessor(info))

        with pytest.raises(FrameExtractionError, match="duration"):
            asyncio.run(extractor.probe(b"video"))

    def test_unreadable_dimensions_rejected(self):
        info = VideoInfo(duration_seconds=10.0, width=0, height=0)
        extractor = FrameExtractor(BrokenProbeProcessor(info))

        with pytest.raises(FrameExtractionError, match="dimensions"):
            asyncio.run(extractor.probe(b"video"))

    def test_empty_upload_is_an_extraction_error(self):
        extractor = FrameExtractor(MockVideoProcessor())
        with pytest.raises(FrameExtractionError):
            asyncio.run(extractor.extract(b""))
