"""
Recording session: the athlete-facing workflow around one test.

    setup -> countdown -> recording -> recorded -> uploading -> processing
          -> completed | failed

``error`` is entered when the camera fails. ``retake()`` goes back to
``setup`` from recorded, failed or error. A clip that hits the duration cap
is uploaded straight away when ``auto_upload`` is on. ``abort_upload()``
cancels a transfer and returns to ``recorded``. If contact is lost while
waiting for the result the session stays in ``processing`` and
``refresh()`` asks again.
"""

import logging
from enum import Enum
from typing import Callable, Optional
from uuid import UUID

import httpx

from ..core.assessment.models import AssessmentStatus
from .api import ApiError, AssessmentApiClient, AssessmentView
from .capture import CaptureController, CaptureError, RecordedClip, TickCallback
from .polling import AssessmentPoller, PollingTimeout
from .upload import OutcomeKind, ProgressCallback, UploadCoordinator, UploadOutcome, UploadTransfer

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    SETUP = "setup"
    COUNTDOWN = "countdown"
    RECORDING = "recording"
    RECORDED = "recorded"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"


class SessionError(Exception):
    """Raised when an action is not allowed in the current session state."""
    pass


class RecordingSession:
    """
    Ties capture, upload and polling together for one test type.

    The assessment is created on first submit. After a failed analysis,
    a retake starts over with a fresh assessment since a failed one is
    terminal.
    """

    def __init__(
        self,
        capture: CaptureController,
        uploader: UploadCoordinator,
        poller: AssessmentPoller,
        api: AssessmentApiClient,
        test_type_id: UUID,
        assessment_id: Optional[UUID] = None,
        max_duration_seconds: float = 30,
        countdown_seconds: int = 3,
        auto_upload: bool = True,
        result_timeout_seconds: Optional[float] = None,
        on_state: Optional[Callable[["SessionState"], None]] = None,
        on_countdown: Optional[TickCallback] = None,
        on_elapsed: Optional[TickCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self._capture = capture
        self._uploader = uploader
        self._poller = poller
        self._api = api
        self.test_type_id = test_type_id
        self.assessment_id = assessment_id
        self._max_duration = max_duration_seconds
        self._countdown = countdown_seconds
        self.auto_upload = auto_upload
        self._result_timeout = result_timeout_seconds
        self._on_state = on_state
        self._on_countdown = on_countdown
        self._on_elapsed = on_elapsed
        self._on_progress = on_progress

        self._state = SessionState.SETUP
        self.clip: Optional[RecordedClip] = None
        self.result: Optional[AssessmentView] = None
        self.last_outcome: Optional[UploadOutcome] = None
        self.error: Optional[str] = None
        self._transfer: Optional[UploadTransfer] = None

    @property
    def state(self) -> SessionState:
        return self._state

    async def __aenter__(self) -> "RecordingSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- capture -------------------------------------------------------------

    async def record(self) -> RecordedClip:
        """Countdown, then record until stop() or the duration cap."""
        self._require(SessionState.SETUP)

        try:
            await self._capture.acquire_device()
            self._set_state(SessionState.COUNTDOWN)
            await self._capture.start_countdown(self._countdown, on_tick=self._on_countdown)
            self._set_state(SessionState.RECORDING)
            clip = await self._capture.record(self._max_duration, on_tick=self._on_elapsed)
        except CaptureError as e:
            self.error = str(e)
            self._set_state(SessionState.ERROR)
            raise

        self.clip = clip
        self._set_state(SessionState.RECORDED)

        if clip.auto_stopped and self.auto_upload:
            logger.info("Duration cap reached, uploading automatically")
            await self.submit()

        return clip

    async def stop(self) -> RecordedClip:
        return await self._capture.stop()

    def retake(self) -> None:
        if self._state not in (SessionState.RECORDED, SessionState.FAILED, SessionState.ERROR):
            raise SessionError(f"Cannot retake from {self._state.value}")

        if self._state == SessionState.FAILED:
            self.assessment_id = None
        self._capture.retake()
        self.clip = None
        self.result = None
        self.error = None
        self._set_state(SessionState.SETUP)

    def close(self) -> None:
        if self._transfer is not None:
            self._transfer.abort()
        self._capture.release()
        self.clip = None

    # -- upload & result -----------------------------------------------------

    async def submit(self) -> Optional[AssessmentView]:
        """
        Upload the recorded clip and wait for the result.

        Returns the terminal assessment, or None when no result is known yet:
        either the upload did not go through (the session is back in
        ``recorded`` and may submit again) or contact was lost while waiting
        (the session is in ``processing`` and ``refresh()`` asks again).
        """
        self._require(SessionState.RECORDED)
        clip = self.clip

        if self.assessment_id is None:
            try:
                created = await self._api.create_assessment(
                    self.test_type_id,
                    duration=int(round(clip.duration_seconds)),
                    metadata={"frameCount": clip.frame_count, "mimeType": clip.mime_type},
                )
            except (ApiError, httpx.TransportError) as e:
                logger.warning("Could not create assessment", extra={"error": str(e)})
                self.error = f"Could not create assessment: {e}"
                return None
            self.assessment_id = created.id

        self.error = None
        self._set_state(SessionState.UPLOADING)
        self._transfer = await self._uploader.upload(clip, self.assessment_id, on_progress=self._on_progress)
        try:
            outcome = await self._transfer.wait()
        finally:
            self._transfer = None
        self.last_outcome = outcome

        if outcome.kind == OutcomeKind.SUCCESS:
            return await self._await_result()

        if outcome.kind == OutcomeKind.NETWORK_ERROR and outcome.body_sent:
            # the server may well have the clip; ask it instead of guessing
            logger.info("Upload connection dropped after the body was sent, polling for outcome")
            return await self._await_result()

        if outcome.kind == OutcomeKind.SERVER_ERROR and outcome.response and outcome.response.get("reason"):
            # the analysis ran and failed; the assessment is terminal
            return await self._await_result()

        if outcome.kind == OutcomeKind.ABORTED:
            self.error = "Upload cancelled"
        else:
            self.error = outcome.message
        self._set_state(SessionState.RECORDED)
        return None

    def abort_upload(self) -> bool:
        """Cancel the transfer in flight. Returns False when there is none."""
        if self._state != SessionState.UPLOADING or self._transfer is None:
            return False
        logger.info("Upload cancelled", extra={"assessment_id": str(self.assessment_id)})
        self._transfer.abort()
        return True

    async def refresh(self) -> Optional[AssessmentView]:
        """Ask for the result again after contact was lost in ``processing``."""
        self._require(SessionState.PROCESSING)
        return await self._await_result()

    async def _await_result(self) -> Optional[AssessmentView]:
        self._set_state(SessionState.PROCESSING)
        try:
            view = await self._poller.wait_for_result(self.assessment_id, timeout_seconds=self._result_timeout)
        except PollingTimeout as e:
            self.error = f"Still {e.last_seen.status.value}, no result yet"
            return None
        except (ApiError, httpx.TransportError) as e:
            logger.warning(
                "Lost contact while waiting for the result",
                extra={"assessment_id": str(self.assessment_id), "error": str(e)},
            )
            self.error = f"Lost contact while waiting for the result: {e}"
            return None

        if view.status == AssessmentStatus.PENDING:
            # the upload never reached the server
            self.error = self.last_outcome.message if self.last_outcome else "Upload did not reach the server"
            self._set_state(SessionState.RECORDED)
            return None

        self.error = None
        self.result = view
        if view.status == AssessmentStatus.COMPLETED:
            self._set_state(SessionState.COMPLETED)
            self.clip = None
        else:
            self.error = (view.ai_analysis_results or {}).get("error", "Analysis failed")
            self._set_state(SessionState.FAILED)
        return view

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        logger.debug("Session state", extra={"from": self._state.value, "to": state.value})
        self._state = state
        if self._on_state:
            self._on_state(state)

    def _require(self, expected: SessionState) -> None:
        if self._state != expected:
            raise SessionError(f"Expected session state {expected.value}, got {self._state.value}")
