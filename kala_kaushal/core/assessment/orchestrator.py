"""
Analysis orchestration and result persistence.

Once an assessment has been claimed (pending -> processing) the orchestrator
runs the collaborator calls exactly once and hands the outcome to the
ResultPersister, which is the only component allowed to write a terminal
state. Every failure path ends in a persisted ``failed`` assessment; nothing
raised by the collaborator escapes ``AnalysisOrchestrator.run``.

Persistence errors are the exception: they are fatal for the request and
propagate so the API layer can answer with a 500.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol
from uuid import UUID

from .analyzer import FrameSamplingError, PerformanceAnalyzer
from .models import Assessment, AssessmentStatus, Athlete, PerformanceMetric, TestType
from .results import IntegrityReport, MalformedResponseError, VideoAnalysisResult


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------

class AssessmentStore(Protocol):
    """
    The persistence operations the orchestrator and persister rely on.

    ``complete_assessment`` and ``fail_assessment`` must apply their writes in
    one transaction and only when the row is still ``processing``. They return
    False when the condition did not hold and nothing was written.
    """

    def get_athlete(self, athlete_id: UUID) -> Optional[Athlete]:
        ...

    def get_test_type(self, test_type_id: UUID) -> Optional[TestType]:
        ...

    def complete_assessment(
        self,
        assessment_id: UUID,
        results: dict[str, Any],
        performance_score: float,
        feedback: str,
        metrics: list[PerformanceMetric],
    ) -> bool:
        ...

    def fail_assessment(self, assessment_id: UUID, results: dict[str, Any]) -> bool:
        ...

    def fail_stale_processing(
        self,
        older_than: datetime,
        results: dict[str, Any],
    ) -> list[UUID]:
        ...


# ---------------------------------------------------------------------------
# Outcome types
# ---------------------------------------------------------------------------

class FailureReason(str, Enum):
    INTEGRITY_FAILED = "integrity_failed"
    ANALYSIS_ERROR = "analysis_error"
    MALFORMED_RESPONSE = "malformed_response"
    NO_FRAMES = "no_frames"
    TIMEOUT = "timeout"
    STALE_PROCESSING = "stale_processing"


FAILURE_MESSAGES = {
    FailureReason.INTEGRITY_FAILED: "Video integrity validation failed",
    FailureReason.ANALYSIS_ERROR: "AI analysis failed",
    FailureReason.MALFORMED_RESPONSE: "AI analysis returned an unreadable response",
    FailureReason.NO_FRAMES: "No frames could be read from the video",
    FailureReason.TIMEOUT: "AI analysis timed out",
    FailureReason.STALE_PROCESSING: "Analysis did not finish",
}


@dataclass
class AnalysisFailure:
    """Why an assessment ended in ``failed``; stored as its ai_analysis_results."""
    reason: FailureReason
    details: str = ""
    issues: list[str] = field(default_factory=list)

    @property
    def error(self) -> str:
        return FAILURE_MESSAGES[self.reason]

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.error,
            "reason": self.reason.value,
            "details": self.details,
            "issues": list(self.issues),
        }


@dataclass
class OrchestrationOutcome:
    assessment_id: UUID
    status: AssessmentStatus
    result: Optional[VideoAnalysisResult] = None
    integrity: Optional[IntegrityReport] = None
    failure: Optional[AnalysisFailure] = None
    # False when another writer reached a terminal state first
    persisted: bool = True

    @property
    def succeeded(self) -> bool:
        return self.status == AssessmentStatus.COMPLETED


class _IntegrityRejected(Exception):
    def __init__(self, report: IntegrityReport) -> None:
        super().__init__("integrity check reported the clip as invalid")
        self.report = report


# ---------------------------------------------------------------------------
# Result Persister
# ---------------------------------------------------------------------------

class ResultPersister:
    """
    Writes terminal states.

    Both writes are conditional on the assessment still being ``processing``,
    so a second call for the same assessment changes nothing: the first
    terminal write wins and metric rows are never duplicated.
    """

    def __init__(self, store: AssessmentStore) -> None:
        self._store = store

    def persist_success(
        self,
        assessment_id: UUID,
        result: VideoAnalysisResult,
        integrity: Optional[IntegrityReport] = None,
    ) -> bool:
        payload = result.to_dict()
        if integrity is not None:
            payload["integrity"] = integrity.to_dict()

        written = self._store.complete_assessment(
            assessment_id,
            results=payload,
            performance_score=result.performance_score,
            feedback=result.feedback,
            metrics=self._build_metrics(assessment_id, result),
        )

        if written:
            logger.info(
                "Assessment completed",
                extra={
                    "assessment_id": str(assessment_id),
                    "performance_score": result.performance_score,
                    "metric_count": len(result.metrics),
                },
            )
        else:
            logger.warning(
                "Completion skipped, assessment no longer processing",
                extra={"assessment_id": str(assessment_id)},
            )
        return written

    def persist_failure(self, assessment_id: UUID, failure: AnalysisFailure) -> bool:
        written = self._store.fail_assessment(assessment_id, failure.to_dict())

        if written:
            logger.info(
                "Assessment failed",
                extra={
                    "assessment_id": str(assessment_id),
                    "reason": failure.reason.value,
                },
            )
        else:
            logger.warning(
                "Failure write skipped, assessment no longer processing",
                extra={"assessment_id": str(assessment_id), "reason": failure.reason.value},
            )
        return written

    def fail_stale(self, older_than: datetime) -> list[UUID]:
        """Mark assessments processing since before ``older_than`` as failed."""
        failure = AnalysisFailure(
            reason=FailureReason.STALE_PROCESSING,
            details=f"Still processing at {older_than.isoformat()}",
        )
        failed_ids = self._store.fail_stale_processing(older_than, failure.to_dict())

        if failed_ids:
            logger.warning(
                "Failed stale processing assessments",
                extra={"count": len(failed_ids), "ids": [str(i) for i in failed_ids[:10]]},
            )
        return failed_ids

    def _build_metrics(
        self,
        assessment_id: UUID,
        result: VideoAnalysisResult,
    ) -> list[PerformanceMetric]:
        # one row per metric name; the first occurrence wins
        seen: set[str] = set()
        metrics = []
        for metric in result.metrics:
            if metric.name in seen:
                continue
            seen.add(metric.name)
            metrics.append(PerformanceMetric(
                assessment_id=assessment_id,
                metric_name=metric.name,
                value=metric.value,
                unit=metric.unit,
                confidence=metric.confidence,
            ))
        return metrics


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class AnalysisOrchestrator:
    """
    Runs the integrity check and the performance analysis for one clip.

    The whole collaborator exchange (frame sampling included) is bounded by
    ``timeout_seconds``. There is no retry: one attempt, one terminal write.
    """

    def __init__(
        self,
        analyzer: PerformanceAnalyzer,
        store: AssessmentStore,
        persister: Optional[ResultPersister] = None,
        timeout_seconds: float = 90.0,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._analyzer = analyzer
        self._store = store
        self._persister = persister or ResultPersister(store)
        self._timeout = timeout_seconds

    async def run(self, assessment: Assessment, video_data: bytes) -> OrchestrationOutcome:
        """
        Analyze ``video_data`` for an assessment already in ``processing``.

        Returns the outcome that was persisted (or that lost to an earlier
        terminal write, see ``OrchestrationOutcome.persisted``).
        """
        test_type = self._store.get_test_type(assessment.test_type_id)
        athlete = self._store.get_athlete(assessment.athlete_id)
        test_type_name = test_type.name if test_type else "general"

        logger.info(
            "Starting analysis",
            extra={
                "assessment_id": str(assessment.id),
                "test_type": test_type_name,
                "size_bytes": len(video_data),
            },
        )

        try:
            result, integrity = await asyncio.wait_for(
                self._analyze(video_data, test_type_name, athlete),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            return self._fail(assessment.id, AnalysisFailure(
                reason=FailureReason.TIMEOUT,
                details=f"No answer within {self._timeout:g} seconds",
            ))
        except _IntegrityRejected as e:
            return self._fail(
                assessment.id,
                AnalysisFailure(
                    reason=FailureReason.INTEGRITY_FAILED,
                    details=f"Integrity confidence {e.report.confidence:.2f}",
                    issues=e.report.issues,
                ),
                integrity=e.report,
            )
        except MalformedResponseError as e:
            return self._fail(assessment.id, AnalysisFailure(
                reason=FailureReason.MALFORMED_RESPONSE,
                details=str(e),
            ))
        except FrameSamplingError as e:
            return self._fail(assessment.id, AnalysisFailure(
                reason=FailureReason.NO_FRAMES,
                details=str(e),
            ))
        except Exception as e:
            logger.error(
                "Analysis collaborator failed",
                extra={"assessment_id": str(assessment.id), "error": str(e)},
                exc_info=True,
            )
            return self._fail(assessment.id, AnalysisFailure(
                reason=FailureReason.ANALYSIS_ERROR,
                details=str(e) or type(e).__name__,
            ))

        persisted = self._persister.persist_success(assessment.id, result, integrity)
        return OrchestrationOutcome(
            assessment_id=assessment.id,
            status=AssessmentStatus.COMPLETED,
            result=result,
            integrity=integrity,
            persisted=persisted,
        )

    async def _analyze(
        self,
        video_data: bytes,
        test_type_name: str,
        athlete: Optional[Athlete],
    ) -> tuple[VideoAnalysisResult, IntegrityReport]:
        frames = await self._analyzer.sample(video_data)

        integrity = await self._analyzer.validate_integrity(frames)
        if not integrity.is_valid:
            raise _IntegrityRejected(integrity)

        result = await self._analyzer.analyze_performance(frames, test_type_name, athlete)
        return result, integrity

    def _fail(
        self,
        assessment_id: UUID,
        failure: AnalysisFailure,
        integrity: Optional[IntegrityReport] = None,
    ) -> OrchestrationOutcome:
        persisted = self._persister.persist_failure(assessment_id, failure)
        return OrchestrationOutcome(
            assessment_id=assessment_id,
            status=AssessmentStatus.FAILED,
            integrity=integrity,
            failure=failure,
            persisted=persisted,
        )
