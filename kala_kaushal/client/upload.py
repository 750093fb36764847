"""
Upload coordinator: one multipart POST per clip, with byte-level progress.

The outcome of a transfer is a value, never an exception:
success, network_error, server_error or aborted. There is no automatic
retry. Starting a new upload for an assessment aborts the one in flight.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional
from uuid import UUID

import httpx

from .api import error_message
from .capture import RecordedClip

logger = logging.getLogger(__name__)

UPLOAD_PATH = "/api/v1/assessments/{assessment_id}/upload-video"
UPLOAD_FIELD = "video"
DEFAULT_CHUNK_BYTES = 64 * 1024

ProgressCallback = Callable[[float], None]


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "server_error"
    ABORTED = "aborted"


@dataclass(frozen=True)
class UploadOutcome:
    kind: OutcomeKind
    status_code: Optional[int] = None
    message: str = ""
    response: Optional[dict[str, Any]] = None
    # the whole request body reached the transport before the error
    body_sent: bool = False

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @classmethod
    def success(cls, status_code: int, response: dict[str, Any]) -> "UploadOutcome":
        return cls(OutcomeKind.SUCCESS, status_code=status_code, response=response)

    @classmethod
    def network_error(cls, message: str, body_sent: bool) -> "UploadOutcome":
        return cls(OutcomeKind.NETWORK_ERROR, message=message, body_sent=body_sent)

    @classmethod
    def server_error(
        cls,
        status_code: int,
        message: str,
        response: Optional[dict[str, Any]] = None,
    ) -> "UploadOutcome":
        return cls(OutcomeKind.SERVER_ERROR, status_code=status_code, message=message, response=response)

    @classmethod
    def aborted(cls) -> "UploadOutcome":
        return cls(OutcomeKind.ABORTED, message="Upload aborted")


class _ProgressStream(httpx.AsyncByteStream):
    """Feeds a prepared body to the transport in chunks, reporting bytes sent."""

    def __init__(self, body: bytes, on_sent: Callable[[int], None], chunk_size: int) -> None:
        self._body = body
        self._on_sent = on_sent
        self._chunk_size = chunk_size

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for start in range(0, len(self._body), self._chunk_size):
            chunk = self._body[start:start + self._chunk_size]
            yield chunk
            # resumed only once the transport has taken the chunk
            self._on_sent(len(chunk))


class UploadTransfer:
    """One in-flight upload. Await ``wait()`` for its outcome."""

    def __init__(self, assessment_id: UUID, on_progress: Optional[ProgressCallback] = None) -> None:
        self.assessment_id = assessment_id
        self._on_progress = on_progress
        self._progress = 0.0
        self._total_bytes = 0
        self._sent_bytes = 0
        self._aborted = False
        self._task: Optional[asyncio.Task] = None

    @property
    def progress(self) -> float:
        """Percent of the request body handed to the transport, 0-100."""
        return self._progress

    @property
    def body_sent(self) -> bool:
        return self._total_bytes > 0 and self._sent_bytes >= self._total_bytes

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def abort(self) -> None:
        """Stop the transfer; its outcome becomes ``aborted``."""
        if self.done:
            return
        self._aborted = True
        if self._task is not None:
            self._task.cancel()

    async def wait(self) -> UploadOutcome:
        if self._task is None:
            raise RuntimeError("Transfer has not been started")
        try:
            return await self._task
        except asyncio.CancelledError:
            if self._aborted and self._task.cancelled():
                return UploadOutcome.aborted()
            raise

    def _start_body(self, total_bytes: int) -> None:
        self._total_bytes = total_bytes
        self._report(0.0)

    def _bytes_sent(self, count: int) -> None:
        self._sent_bytes += count
        if self._total_bytes:
            self._report(100.0 * self._sent_bytes / self._total_bytes)

    def _report(self, percent: float) -> None:
        percent = max(self._progress, min(100.0, percent))
        if percent == self._progress and percent != 0.0:
            return
        self._progress = percent
        if self._on_progress:
            self._on_progress(percent)


class UploadCoordinator:
    """
    Sends recorded clips to the ingestion endpoint.

    Keeps at most one transfer per assessment; uploading again for the same
    assessment aborts the earlier transfer first.
    """

    def __init__(self, http: httpx.AsyncClient, chunk_size: int = DEFAULT_CHUNK_BYTES) -> None:
        self._http = http
        self._chunk_size = chunk_size
        self._inflight: dict[UUID, UploadTransfer] = {}

    def in_flight(self, assessment_id: UUID) -> Optional[UploadTransfer]:
        transfer = self._inflight.get(assessment_id)
        return transfer if transfer and not transfer.done else None

    async def upload(
        self,
        clip: RecordedClip,
        assessment_id: UUID,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadTransfer:
        prior = self.in_flight(assessment_id)
        if prior is not None:
            logger.info("Aborting previous upload", extra={"assessment_id": str(assessment_id)})
            prior.abort()
            await prior.wait()

        transfer = UploadTransfer(assessment_id, on_progress)
        transfer._task = asyncio.create_task(self._send(transfer, clip))
        transfer._task.add_done_callback(lambda _: self._forget(transfer))
        self._inflight[assessment_id] = transfer
        return transfer

    async def _send(self, transfer: UploadTransfer, clip: RecordedClip) -> UploadOutcome:
        url = UPLOAD_PATH.format(assessment_id=transfer.assessment_id)

        try:
            request = self._build_request(url, clip, transfer)
            response = await self._http.send(request)
        except asyncio.CancelledError:
            if transfer.aborted:
                logger.info("Upload aborted", extra={"assessment_id": str(transfer.assessment_id)})
                return UploadOutcome.aborted()
            raise
        except httpx.TransportError as e:
            logger.warning(
                "Upload network error",
                extra={
                    "assessment_id": str(transfer.assessment_id),
                    "error": str(e),
                    "body_sent": transfer.body_sent,
                },
            )
            return UploadOutcome.network_error(str(e) or type(e).__name__, transfer.body_sent)

        try:
            body = response.json()
        except ValueError:
            body = None
        body = body if isinstance(body, dict) else None

        if response.status_code >= 400:
            message = error_message(response)
            logger.info(
                "Upload answered with an error",
                extra={
                    "assessment_id": str(transfer.assessment_id),
                    "status": response.status_code,
                    "error_message": message,
                },
            )
            return UploadOutcome.server_error(response.status_code, message, body)

        return UploadOutcome.success(response.status_code, body or {})

    def _build_request(self, url: str, clip: RecordedClip, transfer: UploadTransfer) -> httpx.Request:
        prepared = self._http.build_request(
            "POST",
            url,
            files={UPLOAD_FIELD: (clip.filename, clip.data, clip.mime_type)},
        )
        body = prepared.read()
        transfer._start_body(len(body))

        # a fresh request so the transport has to pull the body through our stream
        return httpx.Request(
            "POST",
            prepared.url,
            headers=prepared.headers,
            stream=_ProgressStream(body, transfer._bytes_sent, self._chunk_size),
            extensions=prepared.extensions,
        )

    def _forget(self, transfer: UploadTransfer) -> None:
        if self._inflight.get(transfer.assessment_id) is transfer:
            del self._inflight[transfer.assessment_id]
