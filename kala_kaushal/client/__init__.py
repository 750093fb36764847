"""
Athlete-side client: camera capture, upload and result polling.
"""

from .api import ApiError, AssessmentApiClient, AssessmentView, TestTypeView, build_http_client
from .capture import (
    CaptureController,
    CaptureError,
    CaptureState,
    DeviceLost,
    DeviceUnavailable,
    RecordedClip,
    RecordingUnsupported,
    StreamConstraints,
)
from .polling import AssessmentPoller, PollingTimeout
from .session import RecordingSession, SessionError, SessionState
from .upload import OutcomeKind, UploadCoordinator, UploadOutcome, UploadTransfer

__all__ = [
    "ApiError",
    "AssessmentApiClient",
    "AssessmentView",
    "TestTypeView",
    "build_http_client",
    "CaptureController",
    "CaptureError",
    "CaptureState",
    "DeviceLost",
    "DeviceUnavailable",
    "RecordedClip",
    "RecordingUnsupported",
    "StreamConstraints",
    "AssessmentPoller",
    "PollingTimeout",
    "RecordingSession",
    "SessionError",
    "SessionState",
    "OutcomeKind",
    "UploadCoordinator",
    "UploadOutcome",
    "UploadTransfer",
]
