"""
Assessment endpoints.

These endpoints cover the server half of the assessment lifecycle:
- POST /                         create a pending assessment for the caller
- GET  /{id}                     read an assessment and its metrics (polled)
- GET  /{id}/video               download the stored clip
- POST /{id}/upload-video        ingest a clip and run the analysis

The upload request stays open until the analysis has reached a terminal
state, so the response already carries the result. Clients that lose the
connection can learn the outcome by polling GET /{id}.
"""

import logging
import mimetypes
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, File, HTTPException, Response, UploadFile, status
from pydantic import BaseModel, Field

from ...core.assessment.ingestion import (
    UploadRejected,
    build_storage_key,
    check_content_type,
    check_owner,
    check_pending,
    check_size,
)
from ...core.assessment.models import Assessment
from ...core.assessment.orchestrator import FailureReason
from ...infrastructure.storage.client import StorageError
from ..dependencies import (
    IdentityDep,
    OrchestratorDep,
    RepositoryDep,
    SettingsDep,
    VideoStorageDep,
)

logger = logging.getLogger(__name__)

router = APIRouter()

READ_CHUNK_BYTES = 1024 * 1024


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------

class CreateAssessmentRequest(BaseModel):
    """Body for creating an assessment; accepts snake_case or camelCase keys."""
    test_type_id: UUID = Field(alias="testTypeId")
    duration: Optional[int] = Field(default=None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _not_found(assessment_id: UUID) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"message": "Assessment not found", "assessmentId": str(assessment_id)},
    )


def _rejected(e: UploadRejected) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail={"message": e.message})


async def read_limited(upload: UploadFile, max_bytes: int) -> bytes:
    """Read the upload, stopping as soon as it exceeds ``max_bytes``."""
    chunks = []
    total = 0
    while True:
        chunk = await upload.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        total += len(chunk)
        check_size(total, max_bytes)
        chunks.append(chunk)
    return b"".join(chunks)


FAILURE_STATUS = {
    FailureReason.INTEGRITY_FAILED: status.HTTP_400_BAD_REQUEST,
    FailureReason.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create an assessment",
    description="Create a pending assessment of one test type for the calling athlete.",
)
async def create_assessment(
    body: CreateAssessmentRequest,
    identity: IdentityDep,
    repository: RepositoryDep,
) -> dict[str, Any]:
    athlete = repository.get_athlete_by_user(identity.user_id)
    if athlete is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"message": "Athlete profile not found"},
        )

    test_type = repository.get_test_type(body.test_type_id)
    if test_type is None or not test_type.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"message": "Test type not found"},
        )

    assessment = repository.create_assessment(Assessment(
        athlete_id=athlete.id,
        test_type_id=test_type.id,
        duration=body.duration,
        metadata=body.metadata,
    ))

    return assessment.to_dict()


@router.get(
    "/{assessment_id}",
    summary="Get an assessment",
    description="Current status, analysis results and metrics. Clients poll this while processing.",
)
async def get_assessment(
    assessment_id: UUID,
    identity: IdentityDep,
    repository: RepositoryDep,
) -> dict[str, Any]:
    assessment = repository.get_assessment(assessment_id)
    if assessment is None:
        raise _not_found(assessment_id)

    metrics = repository.list_metrics(assessment_id)
    return {
        **assessment.to_dict(),
        "metrics": [m.to_dict() for m in metrics],
    }


@router.get(
    "/{assessment_id}/video",
    summary="Download the uploaded clip",
    response_class=Response,
    responses={404: {"description": "Assessment or clip not found"}},
)
async def get_video(
    assessment_id: UUID,
    identity: IdentityDep,
    repository: RepositoryDep,
    storage: VideoStorageDep,
) -> Response:
    assessment = repository.get_assessment(assessment_id)
    if assessment is None:
        raise _not_found(assessment_id)
    if not assessment.video_url:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"message": "No video uploaded yet"},
        )

    try:
        video_data = await storage.load_video(assessment.video_url)
    except StorageError as e:
        logger.error(
            "Stored clip missing",
            extra={"assessment_id": str(assessment_id), "storage_path": assessment.video_url, "error": str(e)},
        )
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"message": "Video not found"},
        )

    media_type = mimetypes.guess_type(assessment.video_url)[0] or "application/octet-stream"
    return Response(content=video_data, media_type=media_type)


@router.post(
    "/{assessment_id}/upload-video",
    summary="Upload and analyze a video",
    description="""
    Upload the recorded clip for a pending assessment (multipart field `video`).

    The clip is stored, the assessment moves to `processing`, and the AI
    analysis runs before the response is sent. Only one upload per
    assessment is accepted; later ones get 409.
    """,
    responses={
        400: {"description": "Missing/invalid video or failed integrity check"},
        403: {"description": "Assessment belongs to another athlete"},
        404: {"description": "Assessment not found"},
        409: {"description": "Assessment is not pending"},
        413: {"description": "Video too large"},
        500: {"description": "Analysis failed"},
        504: {"description": "Analysis timed out"},
    },
)
async def upload_video(
    assessment_id: UUID,
    identity: IdentityDep,
    repository: RepositoryDep,
    storage: VideoStorageDep,
    orchestrator: OrchestratorDep,
    settings: SettingsDep,
    video: Optional[UploadFile] = File(default=None),
) -> dict[str, Any]:
    assessment = repository.get_assessment(assessment_id)
    if assessment is None:
        raise _not_found(assessment_id)

    athlete = repository.get_athlete_by_user(identity.user_id)

    try:
        check_owner(assessment, athlete.id if athlete else None)
        if video is None:
            raise UploadRejected(status.HTTP_400_BAD_REQUEST, "No video file provided")
        check_content_type(video.content_type)
        check_pending(assessment)
        video_data = await read_limited(video, settings.max_upload_size_bytes)
        check_size(len(video_data), settings.max_upload_size_bytes)
    except UploadRejected as e:
        logger.info(
            "Upload rejected",
            extra={
                "assessment_id": str(assessment_id),
                "status_code": e.status_code,
                "reason": e.message,
            },
        )
        raise _rejected(e)

    storage_key = build_storage_key(assessment.id, video.filename)
    await storage.save_video(storage_key, video_data, video.content_type)

    if not repository.claim_for_processing(assessment.id, storage_key):
        # another upload claimed the assessment between our check and now
        logger.warning(
            "Lost processing claim, stored clip is unreferenced",
            extra={"assessment_id": str(assessment_id), "storage_path": storage_key},
        )
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": "Assessment is already being processed"},
        )

    logger.info(
        "Video accepted for analysis",
        extra={
            "assessment_id": str(assessment_id),
            "size_bytes": len(video_data),
            "content_type": video.content_type,
        },
    )

    claimed = repository.get_assessment(assessment.id) or assessment
    outcome = await orchestrator.run(claimed, video_data)
    current = repository.get_assessment(assessment.id) or claimed

    if outcome.succeeded:
        return {
            "message": "Video analyzed successfully",
            "assessment": current.to_dict(),
            "analysisResult": outcome.result.to_dict(),
        }

    failure = outcome.failure
    if failure.reason == FailureReason.INTEGRITY_FAILED:
        detail = {
            "message": "Video validation failed",
            "error": failure.error,
            "reason": failure.reason.value,
            "issues": failure.issues,
        }
    else:
        detail = {
            "message": "Video analysis failed",
            "error": failure.details or failure.error,
            "reason": failure.reason.value,
        }

    raise HTTPException(
        status_code=FAILURE_STATUS.get(failure.reason, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=detail,
    )
