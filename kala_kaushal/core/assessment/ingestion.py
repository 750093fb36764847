"""
Validation rules for incoming assessment videos.

Everything here is a plain function of its inputs so the route can apply the
rules in order and stop at the first rejection. A rejection never changes the
assessment's status.
"""

import random
import re
import time
from typing import Optional
from uuid import UUID

from .models import Assessment, AssessmentStatus


MAX_FILENAME_LENGTH = 100
DEFAULT_FILENAME = "video"
STORAGE_PREFIX = "assessments"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9.-]")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")


class UploadRejected(Exception):
    """An upload that fails validation; carries the HTTP status to answer with."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def sanitize_filename(filename: Optional[str]) -> str:
    """
    Reduce a client-supplied filename to a safe storage component.

    Keeps ASCII letters, digits, dots and hyphens; everything else becomes an
    underscore. Path separators are replaced too, so no traversal segment can
    survive.
    """
    cleaned = _UNSAFE_CHARS.sub("_", filename or "")
    cleaned = _REPEATED_UNDERSCORES.sub("_", cleaned)
    cleaned = cleaned.lstrip(".")
    cleaned = cleaned[:MAX_FILENAME_LENGTH]
    return cleaned or DEFAULT_FILENAME


def build_storage_name(
    filename: Optional[str],
    now_ms: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> str:
    """<epoch-millis>-<random 9 digits>-<sanitized filename>"""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = (rng or random).randint(0, 999_999_999)
    return f"{now_ms}-{suffix:09d}-{sanitize_filename(filename)}"


def build_storage_key(assessment_id: UUID, filename: Optional[str]) -> str:
    return f"{STORAGE_PREFIX}/{assessment_id}/{build_storage_name(filename)}"


def check_content_type(content_type: Optional[str]) -> None:
    if not content_type or not content_type.lower().startswith("video/"):
        raise UploadRejected(400, "Only video files are allowed")


def check_size(size_bytes: int, max_bytes: int) -> None:
    if size_bytes == 0:
        raise UploadRejected(400, "No video file provided")
    if size_bytes > max_bytes:
        raise UploadRejected(
            413,
            f"Video exceeds the {max_bytes // (1024 * 1024)} MB upload limit",
        )


def check_owner(assessment: Assessment, athlete_id: Optional[UUID]) -> None:
    if athlete_id is None or assessment.athlete_id != athlete_id:
        raise UploadRejected(403, "Assessment belongs to another athlete")


def check_pending(assessment: Assessment) -> None:
    if assessment.status != AssessmentStatus.PENDING:
        raise UploadRejected(
            409,
            f"Assessment is already {assessment.status.value}",
        )
