"""
Video processing service using FFmpeg.

The vision model reads still images, not video, so every uploaded clip is
turned into a small set of JPEG frames spread evenly over its duration:
1. FFprobe reads the duration (and the rest of the stream metadata)
2. FFmpeg seeks to each sample point and writes one JPEG

FFmpeg handles both MP4 and WebM uploads, whatever the recording device.
"""

import asyncio
import json
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Protocol

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class VideoProcessingError(Exception):
    """Raised when FFmpeg cannot read a clip."""
    pass


@dataclass
class VideoInfo:
    """Video metadata extracted via FFprobe."""
    duration_seconds: float
    width: int
    height: int
    fps: float
    codec: str
    file_size_bytes: int


@dataclass
class ExtractedFrame:
    """A frame extracted from video with its timestamp."""
    timestamp_seconds: float
    frame_number: int
    data: bytes  # jpeg image data


def uniform_timestamps(duration_seconds: float, count: int) -> list[float]:
    """
    ``count`` timestamps centred in equal slices of the clip.

    Centring keeps the first and last sample away from the black frames
    recorders often write at the very start and end.
    """
    if duration_seconds <= 0 or count < 1:
        return []
    step = duration_seconds / count
    return [round(step * (i + 0.5), 3) for i in range(count)]


class VideoProcessor(Protocol):
    """Protocol for video processing operations."""

    async def get_video_info(self, video_data: bytes) -> VideoInfo:
        """Extract metadata from video."""
        ...

    async def extract_frames_at_timestamps(
        self,
        video_data: bytes,
        timestamps: list[float],
    ) -> list[ExtractedFrame]:
        """Extract frames at specific timestamps."""
        ...

    async def sample_frames(self, video_data: bytes, max_frames: int) -> list[bytes]:
        """Return up to ``max_frames`` JPEG frames spread across the clip."""
        ...


class FFmpegVideoProcessor:
    """
    Video processor using FFmpeg/FFprobe.

    All operations use temporary files because FFmpeg works best with
    file paths. We write the video data to a temp file, process it,
    read the output, then clean up.
    """

    def __init__(self, ffmpeg_path: str = "ffmpeg", ffprobe_path: str = "ffprobe"):
        self._ffmpeg = ffmpeg_path
        self._ffprobe = ffprobe_path

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
        """
        Extract video metadata using FFprobe.

        FFprobe outputs JSON with stream info - we parse that to get
        duration, resolution, fps, codec.
        """
        tmp_path = self._write_temp(video_data)

        try:
            cmd = [
                self._ffprobe,
                "-v", "quiet",
                "-print_format", "json",
                "-show_format",
                "-show_streams",
                tmp_path
            ]

            result = await asyncio.to_thread(
                subprocess.run,
                cmd,
                capture_output=True,
                text=True,
                timeout=30
            )

            if result.returncode != 0:
                raise VideoProcessingError(f"FFprobe failed: {result.stderr.strip()}")

            info = json.loads(result.stdout or "{}")

            video_stream = next(
                (s for s in info.get("streams", []) if s.get("codec_type") == "video"),
                None,
            )
            if not video_stream:
                raise VideoProcessingError("No video stream found")

            # fps can be a fraction like "30000/1001"
            fps_str = video_stream.get("r_frame_rate", "30/1")
            if "/" in fps_str:
                num, denom = fps_str.split("/")
                fps = float(num) / float(denom) if float(denom) else 0.0
            else:
                fps = float(fps_str)

            # webm containers usually only carry the duration on the format
            duration = float(info.get("format", {}).get("duration", 0) or 0)
            if duration == 0:
                duration = float(video_stream.get("duration", 0) or 0)

            return VideoInfo(
                duration_seconds=duration,
                width=int(video_stream.get("width", 0)),
                height=int(video_stream.get("height", 0)),
                fps=fps,
                codec=video_stream.get("codec_name", "unknown"),
                file_size_bytes=len(video_data),
            )

        finally:
            os.unlink(tmp_path)

    async def extract_frames_at_timestamps(
        self,
        video_data: bytes,
        timestamps: list[float],
    ) -> list[ExtractedFrame]:
        """
        Extract one JPEG per timestamp.

        Uses FFmpeg's -ss (seek) option before -i for fast seeking.
        Timestamps FFmpeg cannot decode are skipped with a warning.
        """
        if not timestamps:
            return []

        video_path = self._write_temp(video_data)
        frames: list[ExtractedFrame] = []

        try:
            with tempfile.TemporaryDirectory() as output_dir:
                for i, ts in enumerate(timestamps):
                    output_path = os.path.join(output_dir, f"frame_{i:04d}.jpg")

                    cmd = [
                        self._ffmpeg,
                        "-ss", str(ts),
                        "-i", video_path,
                        "-frames:v", "1",
                        "-q:v", "3",
                        # keep payloads small; the model does not need full HD
                        "-vf", "scale='min(1280,iw)':-2",
                        "-y",
                        output_path
                    ]

                    result = await asyncio.to_thread(
                        subprocess.run,
                        cmd,
                        capture_output=True,
                        timeout=15
                    )

                    if result.returncode == 0 and os.path.exists(output_path):
                        with open(output_path, "rb") as f:
                            frames.append(ExtractedFrame(
                                timestamp_seconds=ts,
                                frame_number=i,
                                data=f.read(),
                            ))
                    else:
                        logger.warning(
                            "Failed to extract frame",
                            extra={
                                "timestamp": ts,
                                "stderr": result.stderr.decode(errors="replace")[-300:],
                            },
                        )

            logger.info(
                "Extracted frames at timestamps",
                extra={"count": len(frames), "requested": len(timestamps)}
            )
            return frames

        finally:
            os.unlink(video_path)

    async def sample_frames(self, video_data: bytes, max_frames: int) -> list[bytes]:
        info = await self.get_video_info(video_data)
        timestamps = uniform_timestamps(info.duration_seconds, max_frames)
        if not timestamps:
            # no usable duration in the container, grab the opening frame
            timestamps = [0.0]

        logger.info(
            "Sampling frames",
            extra={
                "duration": info.duration_seconds,
                "frame_count": len(timestamps),
                "codec": info.codec,
            },
        )

        frames = await self.extract_frames_at_timestamps(video_data, timestamps)
        return [frame.data for frame in frames]

    @staticmethod
    def _write_temp(video_data: bytes) -> str:
        with tempfile.NamedTemporaryFile(suffix=".video", delete=False) as tmp:
            tmp.write(video_data)
            return tmp.name


class MockVideoProcessor:
    """
    Mock video processor for local development without FFmpeg.

    Returns fixed video info and small grey placeholder frames.
    """

    def __init__(self, duration_seconds: float = 12.0):
        self._duration = duration_seconds
        logger.info("Initialized mock video processor")

    async def get_video_info(self, video_data: bytes) -> VideoInfo:
        return VideoInfo(
            duration_seconds=self._duration,
            width=1280,
            height=720,
            fps=30.0,
            codec="h264",
            file_size_bytes=len(video_data),
        )

    async def extract_frames_at_timestamps(
        self,
        video_data: bytes,
        timestamps: list[float],
    ) -> list[ExtractedFrame]:
        placeholder = self._placeholder_jpeg()
        return [
            ExtractedFrame(timestamp_seconds=ts, frame_number=i, data=placeholder)
            for i, ts in enumerate(timestamps)
        ]

    async def sample_frames(self, video_data: bytes, max_frames: int) -> list[bytes]:
        if not video_data:
            return []
        timestamps = uniform_timestamps(self._duration, max_frames)
        frames = await self.extract_frames_at_timestamps(video_data, timestamps)
        return [frame.data for frame in frames]

    @staticmethod
    def _placeholder_jpeg() -> bytes:
        image = np.full((72, 128, 3), 128, dtype=np.uint8)
        ok, encoded = cv2.imencode(".jpg", image)
        if not ok:
            raise VideoProcessingError("Could not encode placeholder frame")
        return encoded.tobytes()


def create_video_processor(mock_mode: bool = False) -> VideoProcessor:
    """
    Factory function for video processor.

    Args:
        mock_mode: If True, return mock processor (no FFmpeg required)
    """
    if mock_mode:
        return MockVideoProcessor()

    return FFmpegVideoProcessor()
