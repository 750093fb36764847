"""
Video processing infrastructure.

Turns uploaded clips into evenly spaced JPEG frames with FFmpeg so the
vision model can score them.
"""

from .processor import (
    ExtractedFrame,
    VideoInfo,
    VideoProcessingError,
    VideoProcessor,
    create_video_processor,
    uniform_timestamps,
)

__all__ = [
    "ExtractedFrame",
    "VideoInfo",
    "VideoProcessingError",
    "VideoProcessor",
    "create_video_processor",
    "uniform_timestamps",
]
