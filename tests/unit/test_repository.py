"""
Unit tests for the assessment repositories.

The in-memory repository is exercised directly. The Snowflake repository is
driven through a recording fake connection, checking the statements it
issues and how it handles conditional updates.
"""

import json
from datetime import datetime
from uuid import uuid4

import pytest

from kala_kaushal.core.assessment.models import (
    Assessment,
    AssessmentStatus,
    PerformanceMetric,
)
from kala_kaushal.infrastructure.snowflake.repositories.assessments import (
    DEMO_USER_ID,
    AssessmentRepository,
    InMemoryAssessmentRepository,
)


# ---------------------------------------------------------------------------
# In-memory repository
# ---------------------------------------------------------------------------

class TestInMemoryRepository:
    def test_claim_only_once(self, repository, pending_assessment):
        """Two uploads racing for one assessment: exactly one claim succeeds."""
        assert repository.claim_for_processing(pending_assessment.id, "assessments/a/1.mp4")
        assert not repository.claim_for_processing(pending_assessment.id, "assessments/a/2.mp4")

        stored = repository.get_assessment(pending_assessment.id)
        assert stored.status == AssessmentStatus.PROCESSING
        assert stored.video_url == "assessments/a/1.mp4"

    def test_claim_unknown_assessment(self, repository):
        assert not repository.claim_for_processing(uuid4(), "assessments/a/1.mp4")

    def test_complete_writes_everything_together(self, repository, processing_assessment):
        metric = PerformanceMetric(
            assessment_id=processing_assessment.id,
            metric_name="sprint_speed",
            value=6.1,
            unit="m/s",
            confidence=0.7,
        )

        written = repository.complete_assessment(
            processing_assessment.id,
            results={"performanceScore": 70},
            performance_score=70.0,
            feedback="Good",
            metrics=[metric],
        )

        assert written
        stored = repository.get_assessment(processing_assessment.id)
        assert stored.status == AssessmentStatus.COMPLETED
        assert stored.performance_score == 70.0
        assert stored.feedback == "Good"
        assert [m.metric_name for m in repository.list_metrics(processing_assessment.id)] == ["sprint_speed"]

    def test_completed_assessment_cannot_fail(self, repository, processing_assessment):
        repository.complete_assessment(processing_assessment.id, {}, 50.0, "ok", [])

        assert not repository.fail_assessment(processing_assessment.id, {"error": "late"})
        assert repository.get_assessment(processing_assessment.id).status == AssessmentStatus.COMPLETED

    def test_returns_copies(self, repository, pending_assessment):
        copy = repository.get_assessment(pending_assessment.id)
        copy.status = AssessmentStatus.COMPLETED

        assert repository.get_assessment(pending_assessment.id).status == AssessmentStatus.PENDING

    def test_demo_data(self):
        repository = InMemoryAssessmentRepository.with_demo_data()

        names = {t.name for t in repository.list_test_types()}
        assert names == {"sprint", "vertical_jump", "agility", "strength", "endurance"}
        assert repository.get_athlete_by_user(DEMO_USER_ID) is not None
        assert repository.get_athlete_by_user("someone-else") is None


# ---------------------------------------------------------------------------
# Snowflake repository
# ---------------------------------------------------------------------------

class FakeCursor:
    def __init__(self, connection: "FakeConnection") -> None:
        self._conn = connection
        self.rowcount = 0
        self._rows: list = []

    def execute(self, sql: str, params=None) -> None:
        normalized = " ".join(sql.split())
        self._conn.statements.append((normalized, params))
        self.rowcount = self._conn.next_rowcount(normalized)
        self._rows = self._conn.rows_for(normalized)

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)

    def close(self) -> None:
        pass


class FakeConnection:
    """Records statements; UPDATE rowcounts and SELECT rows are scripted."""

    def __init__(self, update_rowcount: int = 1, rows: dict | None = None) -> None:
        self.update_rowcount = update_rowcount
        self.rows = rows or {}
        self.statements: list[tuple[str, tuple]] = []
        self.commits = 0
        self.rollbacks = 0

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def next_rowcount(self, sql: str) -> int:
        return self.update_rowcount if sql.startswith("UPDATE") else 1

    def rows_for(self, sql: str) -> list:
        for fragment, rows in self.rows.items():
            if fragment in sql:
                return rows
        return []

    def sql(self) -> list[str]:
        return [statement for statement, _ in self.statements]


def make_metrics(assessment_id, *names):
    return [
        PerformanceMetric(assessment_id=assessment_id, metric_name=name, value=1.0)
        for name in names
    ]


class TestSnowflakeRepository:
    def test_create_uses_parse_json_for_metadata(self):
        conn = FakeConnection()
        repo = AssessmentRepository(conn)
        assessment = Assessment(athlete_id=uuid4(), test_type_id=uuid4(), metadata={"fps": 30})

        repo.create_assessment(assessment)

        statement, params = conn.statements[0]
        assert statement.startswith("INSERT INTO assessments")
        assert "PARSE_JSON(%s)" in statement
        assert json.loads(params[5]) == {"fps": 30}
        assert params[3] == "pending"
        assert conn.commits == 1

    def test_claim_is_conditional_on_pending(self):
        conn = FakeConnection(update_rowcount=1)
        repo = AssessmentRepository(conn)
        assessment_id = uuid4()

        assert repo.claim_for_processing(assessment_id, "assessments/x/clip.mp4")

        statement, params = conn.statements[0]
        assert "WHERE assessment_id = %s AND status = %s" in statement
        assert params[0] == "processing"
        assert params[-1] == "pending"

    def test_lost_claim(self):
        repo = AssessmentRepository(FakeConnection(update_rowcount=0))

        assert not repo.claim_for_processing(uuid4(), "assessments/x/clip.mp4")

    def test_complete_inserts_metrics_in_same_transaction(self):
        conn = FakeConnection(update_rowcount=1)
        repo = AssessmentRepository(conn)
        assessment_id = uuid4()

        written = repo.complete_assessment(
            assessment_id,
            results={"performanceScore": 80},
            performance_score=80.0,
            feedback="Nice",
            metrics=make_metrics(assessment_id, "speed", "stride"),
        )

        assert written
        sql = conn.sql()
        assert sql[0] == "BEGIN"
        assert sql[1].startswith("UPDATE assessments")
        assert sum(s.startswith("MERGE INTO performance_metrics") for s in sql) == 2
        assert conn.commits == 1
        assert conn.rollbacks == 0

    def test_complete_rolls_back_when_not_processing(self):
        """No metric rows are written once another writer got there first."""
        conn = FakeConnection(update_rowcount=0)
        repo = AssessmentRepository(conn)
        assessment_id = uuid4()

        written = repo.complete_assessment(
            assessment_id, {}, 50.0, "late", make_metrics(assessment_id, "speed"),
        )

        assert not written
        assert not any(s.startswith("MERGE") for s in conn.sql())
        assert conn.rollbacks == 1
        assert conn.commits == 0

    def test_fail_is_conditional_on_processing(self):
        conn = FakeConnection(update_rowcount=1)
        repo = AssessmentRepository(conn)

        assert repo.fail_assessment(uuid4(), {"error": "AI analysis failed"})

        statement, params = conn.statements[0]
        assert params[0] == "failed"
        assert params[-1] == "processing"
        assert json.loads(params[1]) == {"error": "AI analysis failed"}

    def test_get_assessment_parses_variant_columns(self):
        assessment_id, athlete_id, test_type_id = uuid4(), uuid4(), uuid4()
        row = (
            str(assessment_id), str(athlete_id), str(test_type_id), "completed",
            '{"performanceScore": 77}', 77.0, "Solid", "assessments/x/c.mp4",
            14, '{"fps": 30}', datetime(2025, 1, 1), datetime(2025, 1, 1),
        )
        repo = AssessmentRepository(FakeConnection(rows={"FROM assessments": [row]}))

        assessment = repo.get_assessment(assessment_id)

        assert assessment.status == AssessmentStatus.COMPLETED
        assert assessment.ai_analysis_results == {"performanceScore": 77}
        assert assessment.metadata == {"fps": 30}
        assert assessment.created_at.tzinfo is not None

    def test_get_missing_assessment(self):
        repo = AssessmentRepository(FakeConnection())

        assert repo.get_assessment(uuid4()) is None

    @pytest.mark.parametrize("rowcount,expected", [(1, True), (0, False)])
    def test_fail_stale_goes_through_conditional_write(self, rowcount, expected):
        stale_id = uuid4()
        conn = FakeConnection(
            update_rowcount=rowcount,
            rows={"SELECT assessment_id FROM assessments": [(str(stale_id),)]},
        )
        repo = AssessmentRepository(conn)

        failed = repo.fail_stale_processing(datetime(2025, 1, 1), {"reason": "stale_processing"})

        assert failed == ([stale_id] if expected else [])
