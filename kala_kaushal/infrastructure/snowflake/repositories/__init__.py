"""
Repository pattern implementations for Snowflake.

Repositories translate between domain models and database representations.
"""

from .assessments import (
    DEMO_USER_ID,
    AssessmentRepository,
    InMemoryAssessmentRepository,
)

__all__ = [
    "DEMO_USER_ID",
    "AssessmentRepository",
    "InMemoryAssessmentRepository",
]
