"""
Video processing service using FFmpeg.

This module handles server-side video processing for ingestion:
1. Extract video metadata (duration, resolution, fps) with FFprobe
2. Render one scaled JPEG per requested timestamp with FFmpeg

Which timestamps to render is decided by the sampling policy in
core.frames; this module only does the rendering.

Rendering is strict: if any timestamp fails, the whole call fails with
FrameExtractionError. Returning fewer frames than requested would shift
every later position.
"""

import asyncio
import json
import logging
import os
import subprocess
import tempfile

from ...core.frames import ExtractedFrame, FrameExtractionError, VideoInfo

logger = logging.getLogger(__name__)


# Smallest valid baseline JPEG (1x1). Used by the mock processor.
PLACEHOLDER_JPEG = bytes.fromhex(
    "ffd8ffe000104a46494600010100000100010000ffdb00430008060607060508"
    "0707070909080a0c140d0c0b0b0c1912130f141d1a1f1e1d1a1c1c20242e2720"
    "222c231c1c2837292c30313434341f27393d38323c2e333432ffc0000b080001"
    "000101011100ffc4001f00000105010101010101000000000000000001020304"
    "05060708090a0bffc400b5100002010303020403050504040000017d01020300"
    "041105122131410613516107227114328191a1082342b1c11552d1f024336272"
    "82090a161718191a25262728292a3435363738393a434445464748494a535455"
    "565758595a636465666768696a737475767778797a838485868788898a929394"
    "95969798999aa2a3a4a5a6a7a8a9aab2b3b4b5b6b7b8b9bac2c3c4c5c6c7c8c9"
    "cad2d3d4d5d6d7d8d9dae1e2e3e4e5e6e7e8e9eaf1f2f3f4f5f6f7f8f9faffda"
    "0008010100003f00fbd328a0028a2803ffd9"
)


def _parse_fps(value: str) -> float:
    """r_frame_rate can be a fraction like "30000/1001"."""
    if "/" in value:
        num, denom = value.split("/")
        return float(num) / float(denom) if float(denom) else 0.0
    return float(value)


def parse_probe_output(probe: dict, file_size_bytes: int) -> VideoInfo:
    """Build VideoInfo from `ffprobe -print_format json` output."""
    video_stream = next(
        (s for s in probe.get("streams", []) if s.get("codec_type") == "video"),
        None,
    )
    if video_stream is None:
        raise FrameExtractionError("No video stream found")

    # prefer container duration, fall back to the stream's
    duration = float(probe.get("format", {}).get("duration", 0) or 0)
    if duration == 0:
        duration = float(video_stream.get("duration", 0) or 0)

    return VideoInfo(
        duration_seconds=duration,
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
        fps=_parse_fps(video_stream.get("r_frame_rate", "0/1")),
        codec=video_stream.get("codec_name", "unknown"),
        file_size_bytes=file_size_bytes,
    )


class FFmpegVideoProcessor:
    """
    Video processor using FFmpeg/FFprobe.

    All operations use temporary files because FFmpeg works best with
    file paths. Subprocesses run in worker threads.
    """

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        seek_timeout: float = 15.0,
    ) -> None:
        self._ffmpeg = ffmpeg_path
        self._ffprobe = ffprobe_path
        self._seek_timeout = seek_timeout

        # verify ffmpeg is available
        try:
            result = subprocess.run(
                [self._ffmpeg, "-version"],
                capture_output=True,
                text=True,
                timeout=5
            )
        except FileNotFoundError as e:
            raise RuntimeError(
                "FFmpeg not found. Install with: apt-get install ffmpeg"
            ) from e
        if result.returncode != 0:
            raise RuntimeError("FFmpeg not working properly")
        logger.info("FFmpeg video processor initialized")

    async def get_video_info(self, video_data: bytes) -> VideoInfo:
        with tempfile.NamedTemporaryFile(suffix=".video", delete=False) as tmp:
            tmp.write(video_data)
            tmp_path = tmp.name

        try:
            cmd = [
                self._ffprobe,
                "-v", "quiet",
                "-print_format", "json",
                "-show_format",
                "-show_streams",
                tmp_path
            ]

            try:
                result = await asyncio.to_thread(
                    subprocess.run,
                    cmd,
                    capture_output=True,
                    text=True,
                    timeout=30
                )
            except subprocess.TimeoutExpired as e:
                raise FrameExtractionError("FFprobe timed out reading metadata") from e

            if result.returncode != 0:
                raise FrameExtractionError(f"FFprobe failed: {result.stderr.strip()}")

            try:
                probe = json.loads(result.stdout)
            except json.JSONDecodeError as e:
                raise FrameExtractionError("FFprobe returned unreadable output") from e

            return parse_probe_output(probe, len(video_data))

        finally:
            os.unlink(tmp_path)

    async def extract_frames_at_timestamps(
        self,
        video_data: bytes,
        timestamps: list[float],
        width: int,
        height: int,
        quality: int,
    ) -> list[ExtractedFrame]:
        """
        Render one JPEG per timestamp, scaled to width x height.

        Uses FFmpeg's -ss (seek) before -i for fast seeking, one process
        per timestamp.
        """
        if not timestamps:
            return []

        with tempfile.NamedTemporaryFile(suffix=".video", delete=False) as tmp:
            tmp.write(video_data)
            video_path = tmp.name

        frames: list[ExtractedFrame] = []

        try:
            with tempfile.TemporaryDirectory() as output_dir:
                for position, ts in enumerate(timestamps):
                    output_path = os.path.join(output_dir, f"frame_{position:04d}.jpg")
                    cmd = [
                        self._ffmpeg,
                        "-ss", f"{ts:.3f}",
                        "-i", video_path,
                        "-frames:v", "1",
                        "-vf", f"scale={width}:{height}",
                        "-q:v", str(quality),
                        "-y",  # overwrite
                        output_path
                    ]

                    try:
                        result = await asyncio.to_thread(
                            subprocess.run,
                            cmd,
                            capture_output=True,
                            timeout=self._seek_timeout
                        )
                    except subprocess.TimeoutExpired as e:
                        raise FrameExtractionError(f"Seek to {ts}s timed out") from e

                    if result.returncode != 0 or not os.path.exists(output_path):
                        stderr = result.stderr.decode(errors="replace").strip()
                        raise FrameExtractionError(f"Failed to extract frame at {ts}s: {stderr}")

                    with open(output_path, "rb") as f:
                        frames.append(ExtractedFrame(
                            position=position,
                            timestamp_seconds=ts,
                            image_data=f.read(),
                        ))

            logger.info(
                "Extracted frames at timestamps",
                extra={"count": len(frames), "resolution": f"{width}x{height}"}
            )

            return frames

        finally:
            os.unlink(video_path)


class MockVideoProcessor:
    """
    Mock video processor for local development without FFmpeg.

    Returns fixed video info and placeholder frames. Useful for
    testing the API flow without actual video processing.
    """

    def __init__(
        self,
        duration_seconds: float = 30.0,
        width: int = 1280,
        height: int = 720,
    ) -> None:
        self.duration_seconds = duration_seconds
        self.width = width
        self.height = height
        logger.info("Initialized mock video processor")

    async def get_video_info(self, video_data: bytes) -> VideoInfo:
        if not video_data:
            raise FrameExtractionError("Empty video file")
        return VideoInfo(
            duration_seconds=self.duration_seconds,
            width=self.width,
            height=self.height,
            fps=30.0,
            codec="h264",
            file_size_bytes=len(video_data),
        )

    async def extract_frames_at_timestamps(
        self,
        video_data: bytes,
        timestamps: list[float],
        width: int,
        height: int,
        quality: int,
    ) -> list[ExtractedFrame]:
        return [
            ExtractedFrame(
                position=position,
                timestamp_seconds=ts,
                image_data=PLACEHOLDER_JPEG,
            )
            for position, ts in enumerate(timestamps)
        ]


def create_video_processor(
    mock_mode: bool = False,
    ffmpeg_path: str = "ffmpeg",
    ffprobe_path: str = "ffprobe",
):
    """
    Factory function for video processor.

    Args:
        mock_mode: If True, return mock processor (no FFmpeg required)

    Returns:
        FFmpegVideoProcessor or MockVideoProcessor
    """
    if mock_mode:
        return MockVideoProcessor()

    return FFmpegVideoProcessor(ffmpeg_path=ffmpeg_path, ffprobe_path=ffprobe_path)
