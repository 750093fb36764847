"""
Shared fixtures: an in-memory repository seeded with one athlete and one
test type, plus assessments at the start of their lifecycle.
"""

import pytest

from kala_kaushal.core.assessment.models import (
    Assessment,
    AssessmentStatus,
    Athlete,
    TestType,
)
from kala_kaushal.infrastructure.snowflake.repositories.assessments import (
    InMemoryAssessmentRepository,
)


@pytest.fixture
def repository() -> InMemoryAssessmentRepository:
    return InMemoryAssessmentRepository()


@pytest.fixture
def athlete(repository) -> Athlete:
    return repository.add_athlete(Athlete(
        user_id="athlete-1",
        age=16,
        height=168.0,
        weight=55.0,
        primary_sport="athletics",
    ))


@pytest.fixture
def sprint(repository) -> TestType:
    return repository.add_test_type(TestType(name="sprint", category="speed"))


@pytest.fixture
def pending_assessment(repository, athlete, sprint) -> Assessment:
    return repository.create_assessment(Assessment(
        athlete_id=athlete.id,
        test_type_id=sprint.id,
    ))


@pytest.fixture
def processing_assessment(repository, pending_assessment) -> Assessment:
    assert repository.claim_for_processing(pending_assessment.id, "assessments/x/clip.mp4")
    assessment = repository.get_assessment(pending_assessment.id)
    assert assessment.status == AssessmentStatus.PROCESSING
    return assessment
