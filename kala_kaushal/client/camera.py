"""
OpenCV camera and encoder backends for the capture controller.

OpenCV reads video only; when audio is requested a warning is logged and the
clip is recorded without sound.
"""

import logging
import os
import tempfile
from typing import Any, Optional

import cv2

from .capture import (
    CONTAINER_MIME_TYPES,
    DeviceUnavailable,
    MediaStream,
    RecordingUnsupported,
    StreamConstraints,
)

logger = logging.getLogger(__name__)

FOURCC_BY_CONTAINER = {
    "mp4": "mp4v",
    "webm": "VP80",
}


class OpenCVStream:
    """A live cv2.VideoCapture."""

    def __init__(self, capture: "cv2.VideoCapture", fallback_fps: float) -> None:
        self._capture = capture
        self.width = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH) or 1280)
        self.height = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT) or 720)
        self.fps = float(capture.get(cv2.CAP_PROP_FPS) or fallback_fps)

    def read_frame(self) -> Optional[Any]:
        ok, frame = self._capture.read()
        return frame if ok else None

    def stop(self) -> None:
        self._capture.release()


class OpenCVCamera:
    """MediaDevice backed by a local camera index."""

    def __init__(self, index: int = 0) -> None:
        self._index = index

    def open(self, constraints: StreamConstraints) -> OpenCVStream:
        capture = cv2.VideoCapture(self._index)
        if not capture.isOpened():
            capture.release()
            raise DeviceUnavailable(f"Camera {self._index} is not available")

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
        capture.set(cv2.CAP_PROP_FPS, constraints.fps)

        if constraints.audio:
            logger.warning("Audio capture is not supported by the OpenCV backend, recording video only")

        # some drivers report opened but never deliver a frame when access is denied
        ok, _ = capture.read()
        if not ok:
            capture.release()
            raise DeviceUnavailable(f"Camera {self._index} did not deliver a frame")

        return OpenCVStream(capture, fallback_fps=constraints.fps)


class OpenCVClipEncoder:
    """
    Writes frames with cv2.VideoWriter into a temporary file.

    The file is read back into memory by ``finish()`` and always removed.
    """

    def __init__(self, width: int, height: int, fps: float, container: str = "mp4") -> None:
        if container not in FOURCC_BY_CONTAINER:
            raise RecordingUnsupported(f"Unsupported container: {container}")

        self.mime_type = CONTAINER_MIME_TYPES[container]
        fd, self._path = tempfile.mkstemp(suffix=f".{container}")
        os.close(fd)

        fourcc = cv2.VideoWriter_fourcc(*FOURCC_BY_CONTAINER[container])
        self._writer = cv2.VideoWriter(self._path, fourcc, fps, (width, height))
        self._size = (width, height)

        if not self._writer.isOpened():
            self._writer.release()
            os.unlink(self._path)
            raise RecordingUnsupported(f"OpenCV cannot encode {container} on this system")

    def write(self, frame: Any) -> None:
        height, width = frame.shape[:2]
        if (width, height) != self._size:
            frame = cv2.resize(frame, self._size)
        self._writer.write(frame)

    def finish(self) -> bytes:
        self._writer.release()
        try:
            with open(self._path, "rb") as f:
                return f.read()
        finally:
            os.unlink(self._path)

    def discard(self) -> None:
        self._writer.release()
        if os.path.exists(self._path):
            os.unlink(self._path)


def opencv_encoder_factory(stream: MediaStream, container: str) -> OpenCVClipEncoder:
    return OpenCVClipEncoder(stream.width, stream.height, stream.fps, container)
