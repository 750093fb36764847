"""
Unit tests for the assessment domain models.

These tests verify the core business logic without touching
external services (no API calls, no database, no file system).

Testing philosophy:
- Test behavior, not implementation
- Each test should have a clear "given/when/then" structure
- Use descriptive names that explain what we're testing
- Prefer real objects over mocks where practical
"""

from uuid import uuid4

import pytest

from kala_kaushal.core.assessment.models import (
    Assessment,
    AssessmentStatus,
    Athlete,
    InvalidTransitionError,
    PerformanceMetric,
    TestType as TestTypeRecord,
)


def make_assessment(**kwargs) -> Assessment:
    return Assessment(athlete_id=uuid4(), test_type_id=uuid4(), **kwargs)


# ---------------------------------------------------------------------------
# Status lifecycle
# ---------------------------------------------------------------------------

class TestAssessmentStatus:
    """Tests for the status graph."""

    def test_terminal_states(self):
        """Only completed and failed are terminal."""
        assert AssessmentStatus.COMPLETED.is_terminal
        assert AssessmentStatus.FAILED.is_terminal
        assert not AssessmentStatus.PENDING.is_terminal
        assert not AssessmentStatus.PROCESSING.is_terminal

    def test_rank_increases_along_lifecycle(self):
        assert AssessmentStatus.PENDING.rank < AssessmentStatus.PROCESSING.rank
        assert AssessmentStatus.PROCESSING.rank < AssessmentStatus.COMPLETED.rank
        assert AssessmentStatus.COMPLETED.rank == AssessmentStatus.FAILED.rank

    @pytest.mark.parametrize("current,target", [
        (AssessmentStatus.PENDING, AssessmentStatus.PROCESSING),
        (AssessmentStatus.PROCESSING, AssessmentStatus.COMPLETED),
        (AssessmentStatus.PROCESSING, AssessmentStatus.FAILED),
    ])
    def test_allowed_transitions(self, current, target):
        assert current.can_transition_to(target)

    @pytest.mark.parametrize("current,target", [
        (AssessmentStatus.PENDING, AssessmentStatus.COMPLETED),
        (AssessmentStatus.PENDING, AssessmentStatus.FAILED),
        (AssessmentStatus.PROCESSING, AssessmentStatus.PENDING),
        (AssessmentStatus.COMPLETED, AssessmentStatus.FAILED),
        (AssessmentStatus.FAILED, AssessmentStatus.PROCESSING),
        (AssessmentStatus.COMPLETED, AssessmentStatus.COMPLETED),
    ])
    def test_forbidden_transitions(self, current, target):
        """Skipping processing or leaving a terminal state is never allowed."""
        assert not current.can_transition_to(target)


class TestAssessment:
    """Tests for the Assessment aggregate."""

    def test_new_assessment_is_pending(self):
        assessment = make_assessment()

        assert assessment.status == AssessmentStatus.PENDING
        assert assessment.ai_analysis_results is None
        assert assessment.performance_score is None
        assert not assessment.is_terminal

    def test_transition_updates_status_and_timestamp(self):
        assessment = make_assessment()
        original_updated = assessment.updated_at

        assessment.transition_to(AssessmentStatus.PROCESSING)

        assert assessment.status == AssessmentStatus.PROCESSING
        assert assessment.updated_at >= original_updated

    def test_illegal_transition_raises_and_leaves_status(self):
        assessment = make_assessment()

        with pytest.raises(InvalidTransitionError, match="pending to completed"):
            assessment.transition_to(AssessmentStatus.COMPLETED)

        assert assessment.status == AssessmentStatus.PENDING

    def test_terminal_assessment_cannot_move(self):
        assessment = make_assessment()
        assessment.transition_to(AssessmentStatus.PROCESSING)
        assessment.transition_to(AssessmentStatus.FAILED)

        with pytest.raises(InvalidTransitionError):
            assessment.transition_to(AssessmentStatus.COMPLETED)

    def test_score_out_of_range_rejected(self):
        with pytest.raises(ValueError, match="between 0 and 100"):
            make_assessment(performance_score=101.0)

    def test_to_dict_uses_camel_case(self):
        """The web client reads camelCase keys."""
        assessment = make_assessment(duration=12, metadata={"source": "camera"})

        data = assessment.to_dict()

        assert data["status"] == "pending"
        assert data["athleteId"] == str(assessment.athlete_id)
        assert data["testTypeId"] == str(assessment.test_type_id)
        assert data["aiAnalysisResults"] is None
        assert data["duration"] == 12
        assert data["metadata"] == {"source": "camera"}
        assert "createdAt" in data and "updatedAt" in data


class TestPerformanceMetric:
    """Tests for the PerformanceMetric value object."""

    def test_rejects_empty_name(self):
        with pytest.raises(ValueError, match="cannot be empty"):
            PerformanceMetric(assessment_id=uuid4(), metric_name="  ", value=1.0)

    def test_rejects_confidence_outside_unit_interval(self):
        with pytest.raises(ValueError, match="between 0 and 1"):
            PerformanceMetric(assessment_id=uuid4(), metric_name="speed", value=1.0, confidence=1.5)

    def test_to_dict(self):
        metric = PerformanceMetric(
            assessment_id=uuid4(),
            metric_name="jump_height",
            value=42.5,
            unit="cm",
            confidence=0.7,
        )

        data = metric.to_dict()

        assert data["metricName"] == "jump_height"
        assert data["value"] == 42.5
        assert data["unit"] == "cm"
        assert data["confidence"] == 0.7
        assert data["percentile"] is None


class TestAthlete:
    def test_has_context_only_with_known_fields(self):
        assert not Athlete(user_id="u1").has_context
        assert Athlete(user_id="u1", age=16).has_context
        assert Athlete(user_id="u1", primary_sport="kabaddi").has_context


class TestTestType:
    def test_to_dict(self):
        test_type = TestTypeRecord(name="sprint", category="speed", is_active=False)

        data = test_type.to_dict()

        assert data["name"] == "sprint"
        assert data["category"] == "speed"
        assert data["isActive"] is False
