"""
Video processing infrastructure.

Handles server-side video processing using FFmpeg:
- Video metadata extraction
- Scaled frame rendering at specific timestamps
"""

from .processor import (
    FFmpegVideoProcessor,
    MockVideoProcessor,
    create_video_processor,
)

__all__ = [
    "FFmpegVideoProcessor",
    "MockVideoProcessor",
    "create_video_processor",
]
