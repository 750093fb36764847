"""
Assessment lifecycle: models, AI response schema, analysis and persistence.
"""

from .models import (
    Assessment,
    AssessmentStatus,
    Athlete,
    InvalidTransitionError,
    PerformanceMetric,
    TestType,
)
from .results import (
    IntegrityReport,
    MalformedResponseError,
    VideoAnalysisResult,
)
from .analyzer import PerformanceAnalyzer, VisionModelClient, FrameSampler
from .orchestrator import (
    AnalysisFailure,
    AnalysisOrchestrator,
    AssessmentStore,
    FailureReason,
    OrchestrationOutcome,
    ResultPersister,
)
from .ingestion import UploadRejected

__all__ = [
    "Assessment",
    "AssessmentStatus",
    "Athlete",
    "InvalidTransitionError",
    "PerformanceMetric",
    "TestType",
    "IntegrityReport",
    "MalformedResponseError",
    "VideoAnalysisResult",
    "PerformanceAnalyzer",
    "VisionModelClient",
    "FrameSampler",
    "AnalysisFailure",
    "AnalysisOrchestrator",
    "AssessmentStore",
    "FailureReason",
    "OrchestrationOutcome",
    "ResultPersister",
    "UploadRejected",
]
