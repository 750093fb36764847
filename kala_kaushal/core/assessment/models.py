"""
Domain models for performance assessments.

These models describe an athlete's attempt at a test and the measurements
extracted from it. They carry no knowledge of HTTP, SQL or the AI vendor.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssessmentStatus(str, Enum):
    """
    Lifecycle of an assessment.

    The only legal moves are pending -> processing -> completed|failed.
    Completed and failed are terminal.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AssessmentStatus.COMPLETED, AssessmentStatus.FAILED)

    @property
    def rank(self) -> int:
        """Position along the lifecycle; both terminal states share the last rank."""
        return _STATUS_RANK[self]

    def can_transition_to(self, target: "AssessmentStatus") -> bool:
        return target in ALLOWED_TRANSITIONS[self]


_STATUS_RANK = {
    AssessmentStatus.PENDING: 0,
    AssessmentStatus.PROCESSING: 1,
    AssessmentStatus.COMPLETED: 2,
    AssessmentStatus.FAILED: 2,
}

ALLOWED_TRANSITIONS: dict[AssessmentStatus, frozenset[AssessmentStatus]] = {
    AssessmentStatus.PENDING: frozenset({AssessmentStatus.PROCESSING}),
    AssessmentStatus.PROCESSING: frozenset({
        AssessmentStatus.COMPLETED,
        AssessmentStatus.FAILED,
    }),
    AssessmentStatus.COMPLETED: frozenset(),
    AssessmentStatus.FAILED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a status change would move off the lifecycle graph."""

    def __init__(self, current: AssessmentStatus, target: AssessmentStatus) -> None:
        super().__init__(f"Cannot move assessment from {current.value} to {target.value}")
        self.current = current
        self.target = target


@dataclass
class Athlete:
    """
    The subset of an athlete profile the analysis prompt needs.

    Height is in centimetres and weight in kilograms.
    """
    id: UUID = field(default_factory=uuid4)
    user_id: str = ""
    age: Optional[int] = None
    height: Optional[float] = None
    weight: Optional[float] = None
    primary_sport: Optional[str] = None

    @property
    def has_context(self) -> bool:
        return any(
            value is not None
            for value in (self.age, self.height, self.weight, self.primary_sport)
        )


@dataclass
class TestType:
    """A performance test an athlete can record (sprint, vertical jump, ...)."""
    id: UUID = field(default_factory=uuid4)
    name: str = "general"
    category: str = "general"
    description: str = ""
    instructions: str = ""
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "instructions": self.instructions,
            "isActive": self.is_active,
        }


@dataclass
class PerformanceMetric:
    """
    One named measurement extracted from an assessment.

    Created once alongside a completed assessment and never updated.
    """
    assessment_id: UUID
    metric_name: str
    value: float
    unit: str = ""
    confidence: float = 0.0
    percentile: Optional[float] = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not self.metric_name.strip():
            raise ValueError("Metric name cannot be empty")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("Metric confidence must be between 0 and 1")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "assessmentId": str(self.assessment_id),
            "metricName": self.metric_name,
            "value": self.value,
            "unit": self.unit,
            "percentile": self.percentile,
            "confidence": self.confidence,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class Assessment:
    """
    One athlete's attempt at one test type.

    This is the aggregate the capture -> analysis lifecycle revolves around.
    Only the ingestion endpoint and the result persister change its status.
    """
    athlete_id: UUID
    test_type_id: UUID
    id: UUID = field(default_factory=uuid4)
    status: AssessmentStatus = AssessmentStatus.PENDING
    ai_analysis_results: Optional[dict[str, Any]] = None
    performance_score: Optional[float] = None
    feedback: Optional[str] = None
    video_url: Optional[str] = None
    duration: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.performance_score is not None and not 0.0 <= self.performance_score <= 100.0:
            raise ValueError("Performance score must be between 0 and 100")

    def transition_to(self, target: AssessmentStatus) -> None:
        """Move to ``target`` or raise InvalidTransitionError."""
        if not self.status.can_transition_to(target):
            raise InvalidTransitionError(self.status, target)
        self.status = target
        self.updated_at = utcnow()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the camelCase keys the web client reads."""
        return {
            "id": str(self.id),
            "athleteId": str(self.athlete_id),
            "testTypeId": str(self.test_type_id),
            "status": self.status.value,
            "aiAnalysisResults": self.ai_analysis_results,
            "performanceScore": self.performance_score,
            "feedback": self.feedback,
            "videoUrl": self.video_url,
            "duration": self.duration,
            "metadata": self.metadata,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
