"""
Capture controller: camera -> countdown -> bounded recording -> clip.

The controller owns one media stream at a time and never records past the
configured cap: when the elapsed time reaches ``max_duration_seconds`` the
clip is finalized on the spot, whether or not anyone called ``stop()``.

Camera and encoder are reached through small protocols so the timing logic
can be tested with fakes; ``camera.py`` provides the OpenCV implementations.
Blocking reads and writes run in worker threads.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

logger = logging.getLogger(__name__)

CONTAINER_MIME_TYPES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class CaptureError(Exception):
    """Base class for capture failures."""
    pass


class DeviceUnavailable(CaptureError):
    """No camera, or access to it was denied."""
    pass


class DeviceLost(CaptureError):
    """The camera stopped delivering frames mid-recording."""
    pass


class RecordingUnsupported(CaptureError):
    """The encoder for the requested container could not be initialised."""
    pass


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StreamConstraints:
    """What we ask the camera for. Devices may deliver less."""
    width: int = 1280
    height: int = 720
    fps: float = 30.0
    audio: bool = True


@dataclass(frozen=True)
class RecordedClip:
    """One finished recording, held in memory until it is uploaded."""
    data: bytes
    mime_type: str
    duration_seconds: float
    frame_count: int
    # True when the duration cap ended the recording
    auto_stopped: bool = False

    @property
    def extension(self) -> str:
        return "webm" if self.mime_type == "video/webm" else "mp4"

    @property
    def filename(self) -> str:
        return f"assessment.{self.extension}"

    @property
    def size_bytes(self) -> int:
        return len(self.data)


# ---------------------------------------------------------------------------
# Protocols (interfaces)
# ---------------------------------------------------------------------------

class MediaStream(Protocol):
    width: int
    height: int
    fps: float

    def read_frame(self) -> Optional[Any]:
        """Next frame, or None when the device has gone away."""
        ...

    def stop(self) -> None:
        """Release the underlying tracks."""
        ...


class MediaDevice(Protocol):
    def open(self, constraints: StreamConstraints) -> MediaStream:
        """Open a stream or raise DeviceUnavailable."""
        ...


class ClipEncoder(Protocol):
    mime_type: str

    def write(self, frame: Any) -> None:
        ...

    def finish(self) -> bytes:
        """Finalize the container and return its bytes."""
        ...

    def discard(self) -> None:
        """Drop everything written so far."""
        ...


EncoderFactory = Callable[[MediaStream, str], ClipEncoder]
TickCallback = Callable[[int], None]


class CaptureState(str, Enum):
    IDLE = "idle"
    READY = "ready"
    COUNTDOWN = "countdown"
    RECORDING = "recording"
    RECORDED = "recorded"
    RELEASED = "released"


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class CaptureController:
    """
    Drives one camera through countdown and recording.

    Usage:
        async with CaptureController(camera, encoder_factory) as capture:
            await capture.start_countdown(3)
            clip = await capture.record(max_duration_seconds=30)
    """

    def __init__(
        self,
        device: MediaDevice,
        encoder_factory: EncoderFactory,
        constraints: StreamConstraints = StreamConstraints(),
        container: str = "mp4",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if container not in CONTAINER_MIME_TYPES:
            raise ValueError(f"Unsupported container: {container}")
        self._device = device
        self._encoder_factory = encoder_factory
        self._constraints = constraints
        self._container = container
        self._clock = clock
        self._sleep = sleep

        self._state = CaptureState.IDLE
        self._stream: Optional[MediaStream] = None
        self._encoder: Optional[ClipEncoder] = None
        self._clip: Optional[RecordedClip] = None
        self._stop_requested = False
        self._recording_done: Optional[asyncio.Event] = None

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def clip(self) -> Optional[RecordedClip]:
        return self._clip

    async def __aenter__(self) -> "CaptureController":
        await self.acquire_device()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()

    async def acquire_device(self) -> None:
        """Open the camera. Raises DeviceUnavailable on denial or absence."""
        if self._state == CaptureState.RELEASED:
            raise CaptureError("Capture controller has been released")
        if self._stream is not None:
            return

        self._stream = await asyncio.to_thread(self._device.open, self._constraints)
        self._state = CaptureState.READY

        logger.info(
            "Camera acquired",
            extra={
                "width": self._stream.width,
                "height": self._stream.height,
                "fps": self._stream.fps,
            },
        )

    async def start_countdown(
        self,
        seconds: int = 3,
        on_tick: Optional[TickCallback] = None,
    ) -> None:
        """Tick once per second from ``seconds`` down to 1, then return."""
        self._require(CaptureState.READY)
        self._state = CaptureState.COUNTDOWN
        try:
            for remaining in range(seconds, 0, -1):
                if on_tick:
                    on_tick(remaining)
                await self._sleep(1.0)
        finally:
            if self._state == CaptureState.COUNTDOWN:
                self._state = CaptureState.READY

    async def record(
        self,
        max_duration_seconds: float,
        on_tick: Optional[TickCallback] = None,
    ) -> RecordedClip:
        """
        Record until ``stop()`` or until the cap, whichever comes first.

        ``on_tick`` receives the elapsed whole seconds once per second.
        """
        if max_duration_seconds <= 0:
            raise ValueError("max_duration_seconds must be positive")
        self._require(CaptureState.READY)

        stream = self._stream
        try:
            encoder = self._encoder_factory(stream, self._container)
        except RecordingUnsupported:
            raise
        except Exception as e:
            raise RecordingUnsupported(f"Could not start {self._container} encoder: {e}") from e

        self._encoder = encoder
        self._clip = None
        self._stop_requested = False
        self._recording_done = asyncio.Event()
        self._state = CaptureState.RECORDING

        started = self._clock()
        next_tick = 1
        frame_count = 0
        auto_stopped = False

        try:
            while not self._stop_requested:
                elapsed = self._clock() - started
                if elapsed >= max_duration_seconds:
                    auto_stopped = True
                    break

                frame = await asyncio.to_thread(stream.read_frame)
                self._check_not_released()
                if frame is None:
                    raise DeviceLost("Camera stopped delivering frames")

                await asyncio.to_thread(encoder.write, frame)
                frame_count += 1

                elapsed = self._clock() - started
                while next_tick <= elapsed and next_tick <= max_duration_seconds:
                    if on_tick:
                        on_tick(next_tick)
                    next_tick += 1

            self._check_not_released()
            duration = min(self._clock() - started, max_duration_seconds)
            data = await asyncio.to_thread(encoder.finish)
            self._check_not_released()

        except BaseException as e:
            encoder.discard()
            self._encoder = None
            if isinstance(e, DeviceLost):
                logger.warning("Camera lost during recording, partial clip discarded")
                self._drop_stream()
            elif self._state == CaptureState.RECORDING:
                self._state = CaptureState.READY
            raise

        finally:
            self._recording_done.set()

        self._encoder = None
        self._clip = RecordedClip(
            data=data,
            mime_type=encoder.mime_type,
            duration_seconds=round(duration, 3),
            frame_count=frame_count,
            auto_stopped=auto_stopped,
        )
        self._state = CaptureState.RECORDED

        logger.info(
            "Recording finished",
            extra={
                "duration_seconds": self._clip.duration_seconds,
                "frame_count": frame_count,
                "size_bytes": self._clip.size_bytes,
                "auto_stopped": auto_stopped,
            },
        )
        return self._clip

    async def stop(self) -> RecordedClip:
        """
        Finish the recording and return the clip.

        Idempotent: once a clip exists, every call returns that same clip.
        """
        if self._clip is not None:
            return self._clip
        if self._state != CaptureState.RECORDING or self._recording_done is None:
            raise CaptureError(f"Nothing to stop in state {self._state.value}")

        self._stop_requested = True
        await self._recording_done.wait()
        if self._clip is None:
            raise CaptureError("Recording ended without a clip")
        return self._clip

    def retake(self) -> None:
        """Discard the current clip and get ready to record again."""
        if self._state == CaptureState.RECORDING:
            raise CaptureError("Cannot retake while recording")
        self._clip = None
        if self._stream is not None and self._state != CaptureState.RELEASED:
            self._state = CaptureState.READY

    def release(self) -> None:
        """Stop every acquired track. Safe to call from any state."""
        if self._state == CaptureState.RELEASED:
            return
        if self._state == CaptureState.RECORDING:
            self._stop_requested = True
        self._state = CaptureState.RELEASED
        self._drop_stream()
        self._clip = None
        logger.debug("Capture controller released")

    def _drop_stream(self) -> None:
        if self._stream is not None:
            try:
                self._stream.stop()
            finally:
                self._stream = None
        if self._state != CaptureState.RELEASED:
            self._state = CaptureState.IDLE

    def _check_not_released(self) -> None:
        if self._state != CaptureState.RECORDING:
            raise CaptureError("Recording interrupted by release")

    def _require(self, expected: CaptureState) -> None:
        if self._state != expected:
            raise CaptureError(
                f"Expected capture state {expected.value}, got {self._state.value}"
            )
