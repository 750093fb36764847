"""
Repositories for assessments, their metrics, and the read-only athlete and
test type records they reference.

Two implementations share one interface:
- AssessmentRepository talks to Snowflake
- InMemoryAssessmentRepository keeps everything in dictionaries; it backs
  mock mode and the unit tests

Status changes are always conditional on the current status, so two writers
racing on the same assessment cannot both succeed. Terminal writes (status,
results, score, feedback and metric rows) happen in a single transaction.
"""

import copy
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from kala_kaushal.core.assessment.models import (
    Assessment,
    AssessmentStatus,
    Athlete,
    PerformanceMetric,
    TestType,
    utcnow,
)
from kala_kaushal.infrastructure.snowflake.client import SnowflakeConnection


logger = logging.getLogger(__name__)


def _parse_variant_json(variant_data: Any) -> Any:
    """
    Parse Snowflake VARIANT data that might be a string or already parsed.

    snowflake-connector-python returns VARIANT columns as JSON strings.
    """
    if variant_data is None or variant_data == "":
        return None

    if isinstance(variant_data, str):
        try:
            return json.loads(variant_data)
        except json.JSONDecodeError as e:
            logger.error(
                "Failed to parse VARIANT JSON string",
                extra={"variant_data": variant_data[:100], "error": str(e)}
            )
            return None

    return variant_data


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return utcnow()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Snowflake
# ---------------------------------------------------------------------------

_ASSESSMENT_COLUMNS = """
    assessment_id, athlete_id, test_type_id, status, ai_analysis_results,
    performance_score, feedback, video_url, duration, metadata,
    created_at, updated_at
"""


class AssessmentRepository:
    """
    Snowflake-backed persistence for the assessment lifecycle.

    The connector runs in autocommit mode, so multi-statement writes open
    an explicit transaction with BEGIN and end it with commit or rollback.
    """

    def __init__(self, connection: SnowflakeConnection) -> None:
        self._conn = connection

    # -- reads ---------------------------------------------------------------

    def ping(self) -> None:
        cursor = self._conn.cursor()
        try:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        finally:
            cursor.close()

    def get_assessment(self, assessment_id: UUID) -> Optional[Assessment]:
        cursor = self._conn.cursor()
        try:
            cursor.execute(
                f"SELECT {_ASSESSMENT_COLUMNS} FROM assessments WHERE assessment_id = %s",
                (str(assessment_id),),
            )
            row = cursor.fetchone()
            return self._row_to_assessment(row) if row else None
        finally:
            cursor.close()

    def list_metrics(self, assessment_id: UUID) -> list[PerformanceMetric]:
        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                SELECT metric_id, assessment_id, metric_name, value, unit,
                       percentile, confidence, created_at
                FROM performance_metrics
                WHERE assessment_id = %s
                ORDER BY created_at, metric_name
            """, (str(assessment_id),))
            return [
                PerformanceMetric(
                    id=UUID(row[0]),
                    assessment_id=UUID(row[1]),
                    metric_name=row[2],
                    value=float(row[3]),
                    unit=row[4] or "",
                    percentile=float(row[5]) if row[5] is not None else None,
                    confidence=float(row[6] or 0.0),
                    created_at=_as_utc(row[7]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            cursor.close()

    def get_athlete(self, athlete_id: UUID) -> Optional[Athlete]:
        return self._fetch_athlete("athlete_id", str(athlete_id))

    def get_athlete_by_user(self, user_id: str) -> Optional[Athlete]:
        return self._fetch_athlete("user_id", user_id)

    def get_test_type(self, test_type_id: UUID) -> Optional[TestType]:
        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                SELECT test_type_id, name, category, description, instructions, is_active
                FROM test_types
                WHERE test_type_id = %s
            """, (str(test_type_id),))
            row = cursor.fetchone()
            return self._row_to_test_type(row) if row else None
        finally:
            cursor.close()

    def list_test_types(self, active_only: bool = True) -> list[TestType]:
        cursor = self._conn.cursor()
        try:
            where = "WHERE is_active = TRUE" if active_only else ""
            cursor.execute(f"""
                SELECT test_type_id, name, category, description, instructions, is_active
                FROM test_types
                {where}
                ORDER BY category, name
            """)
            return [self._row_to_test_type(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    # -- writes --------------------------------------------------------------

    def create_assessment(self, assessment: Assessment) -> Assessment:
        cursor = self._conn.cursor()
        try:
            # PARSE_JSON is not allowed in a VALUES clause, hence INSERT ... SELECT
            cursor.execute("""
                INSERT INTO assessments (
                    assessment_id, athlete_id, test_type_id, status,
                    duration, metadata, created_at, updated_at
                )
                SELECT %s, %s, %s, %s, %s, PARSE_JSON(%s), %s, %s
            """, (
                str(assessment.id),
                str(assessment.athlete_id),
                str(assessment.test_type_id),
                assessment.status.value,
                assessment.duration,
                json.dumps(assessment.metadata),
                assessment.created_at,
                assessment.updated_at,
            ))
            self._conn.commit()
        finally:
            cursor.close()

        logger.info(
            "Created assessment",
            extra={"assessment_id": str(assessment.id), "athlete_id": str(assessment.athlete_id)},
        )
        return assessment

    def claim_for_processing(self, assessment_id: UUID, video_url: str) -> bool:
        """pending -> processing; False if the assessment was not pending."""
        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                UPDATE assessments
                SET status = %s, video_url = %s, updated_at = %s
                WHERE assessment_id = %s AND status = %s
            """, (
                AssessmentStatus.PROCESSING.value,
                video_url,
                utcnow(),
                str(assessment_id),
                AssessmentStatus.PENDING.value,
            ))
            claimed = cursor.rowcount == 1
            self._conn.commit()
            return claimed
        finally:
            cursor.close()

    def complete_assessment(
        self,
        assessment_id: UUID,
        results: dict[str, Any],
        performance_score: float,
        feedback: str,
        metrics: list[PerformanceMetric],
    ) -> bool:
        cursor = self._conn.cursor()
        try:
            cursor.execute("BEGIN")
            cursor.execute("""
                UPDATE assessments
                SET status = %s,
                    ai_analysis_results = PARSE_JSON(%s),
                    performance_score = %s,
                    feedback = %s,
                    updated_at = %s
                WHERE assessment_id = %s AND status = %s
            """, (
                AssessmentStatus.COMPLETED.value,
                json.dumps(results),
                performance_score,
                feedback,
                utcnow(),
                str(assessment_id),
                AssessmentStatus.PROCESSING.value,
            ))

            if cursor.rowcount != 1:
                self._conn.rollback()
                return False

            for metric in metrics:
                self._insert_metric(cursor, metric)

            self._conn.commit()
            return True

        except Exception as e:
            logger.error(
                "Failed to persist completed assessment",
                extra={"assessment_id": str(assessment_id), "error": str(e)}
            )
            self._conn.rollback()
            raise
        finally:
            cursor.close()

    def fail_assessment(self, assessment_id: UUID, results: dict[str, Any]) -> bool:
        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                UPDATE assessments
                SET status = %s, ai_analysis_results = PARSE_JSON(%s), updated_at = %s
                WHERE assessment_id = %s AND status = %s
            """, (
                AssessmentStatus.FAILED.value,
                json.dumps(results),
                utcnow(),
                str(assessment_id),
                AssessmentStatus.PROCESSING.value,
            ))
            failed = cursor.rowcount == 1
            self._conn.commit()
            return failed
        finally:
            cursor.close()

    def fail_stale_processing(
        self,
        older_than: datetime,
        results: dict[str, Any],
    ) -> list[UUID]:
        cursor = self._conn.cursor()
        try:
            cursor.execute("""
                SELECT assessment_id FROM assessments
                WHERE status = %s AND updated_at < %s
            """, (AssessmentStatus.PROCESSING.value, older_than))
            candidates = [UUID(row[0]) for row in cursor.fetchall()]
        finally:
            cursor.close()

        # each one goes through the same conditional write as any failure
        return [
            assessment_id
            for assessment_id in candidates
            if self.fail_assessment(assessment_id, results)
        ]

    # -- helpers -------------------------------------------------------------

    def _insert_metric(self, cursor, metric: PerformanceMetric) -> None:
        # metrics are unique per (assessment_id, metric_name); never updated
        cursor.execute("""
            MERGE INTO performance_metrics AS target
            USING (SELECT %s AS assessment_id, %s AS metric_name) AS source
            ON target.assessment_id = source.assessment_id
               AND target.metric_name = source.metric_name
            WHEN NOT MATCHED THEN INSERT (
                metric_id, assessment_id, metric_name, value, unit,
                percentile, confidence, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """, (
            str(metric.assessment_id),
            metric.metric_name,
            str(metric.id),
            str(metric.assessment_id),
            metric.metric_name,
            metric.value,
            metric.unit,
            metric.percentile,
            metric.confidence,
            metric.created_at,
        ))

    def _fetch_athlete(self, column: str, value: str) -> Optional[Athlete]:
        cursor = self._conn.cursor()
        try:
            cursor.execute(f"""
                SELECT athlete_id, user_id, age, height, weight, primary_sport
                FROM athletes
                WHERE {column} = %s
            """, (value,))
            row = cursor.fetchone()
            if not row:
                return None
            return Athlete(
                id=UUID(row[0]),
                user_id=row[1],
                age=int(row[2]) if row[2] is not None else None,
                height=float(row[3]) if row[3] is not None else None,
                weight=float(row[4]) if row[4] is not None else None,
                primary_sport=row[5],
            )
        finally:
            cursor.close()

    def _row_to_test_type(self, row) -> TestType:
        return TestType(
            id=UUID(row[0]),
            name=row[1],
            category=row[2] or "general",
            description=row[3] or "",
            instructions=row[4] or "",
            is_active=bool(row[5]),
        )

    def _row_to_assessment(self, row) -> Assessment:
        return Assessment(
            id=UUID(row[0]),
            athlete_id=UUID(row[1]),
            test_type_id=UUID(row[2]),
            status=AssessmentStatus(row[3]),
            ai_analysis_results=_parse_variant_json(row[4]),
            performance_score=float(row[5]) if row[5] is not None else None,
            feedback=row[6],
            video_url=row[7],
            duration=int(row[8]) if row[8] is not None else None,
            metadata=_parse_variant_json(row[9]) or {},
            created_at=_as_utc(row[10]),
            updated_at=_as_utc(row[11]),
        )


# ---------------------------------------------------------------------------
# In-memory repository for mock mode and tests
# ---------------------------------------------------------------------------

DEMO_USER_ID = "demo-user"

DEMO_TEST_TYPES = [
    ("sprint", "speed", "30 metre sprint from a standing start",
     "Place the camera side-on at the halfway mark and sprint past it."),
    ("vertical_jump", "power", "Counter-movement vertical jump",
     "Film side-on with your whole body in frame, jump straight up and land in place."),
    ("agility", "agility", "Shuttle run around cones",
     "Keep all cones in frame and touch the line at each turn."),
    ("strength", "strength", "Bodyweight push-ups",
     "Film side-on and complete as many full-range repetitions as you can."),
    ("endurance", "endurance", "Continuous skipping",
     "Keep a steady rhythm for the whole recording."),
]


class InMemoryAssessmentRepository:
    """
    Dictionary-backed repository with the same conditional semantics as
    the Snowflake one. A lock makes each write atomic.

    Returned objects are copies; mutating them does not change stored state.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._assessments: dict[UUID, Assessment] = {}
        self._metrics: dict[UUID, list[PerformanceMetric]] = {}
        self._athletes: dict[UUID, Athlete] = {}
        self._test_types: dict[UUID, TestType] = {}

    @classmethod
    def with_demo_data(cls) -> "InMemoryAssessmentRepository":
        """A repository holding the standard test types and one demo athlete."""
        repo = cls()
        for name, category, description, instructions in DEMO_TEST_TYPES:
            repo.add_test_type(TestType(
                name=name,
                category=category,
                description=description,
                instructions=instructions,
            ))
        repo.add_athlete(Athlete(
            user_id=DEMO_USER_ID,
            age=17,
            height=172.0,
            weight=61.0,
            primary_sport="athletics",
        ))
        logger.info("Seeded in-memory repository with demo data")
        return repo

    # -- setup helpers -------------------------------------------------------

    def add_athlete(self, athlete: Athlete) -> Athlete:
        with self._lock:
            self._athletes[athlete.id] = copy.deepcopy(athlete)
        return athlete

    def add_test_type(self, test_type: TestType) -> TestType:
        with self._lock:
            self._test_types[test_type.id] = copy.deepcopy(test_type)
        return test_type

    # -- reads ---------------------------------------------------------------

    def ping(self) -> None:
        return None

    def get_assessment(self, assessment_id: UUID) -> Optional[Assessment]:
        with self._lock:
            assessment = self._assessments.get(assessment_id)
            return copy.deepcopy(assessment)

    def list_metrics(self, assessment_id: UUID) -> list[PerformanceMetric]:
        with self._lock:
            return copy.deepcopy(self._metrics.get(assessment_id, []))

    def get_athlete(self, athlete_id: UUID) -> Optional[Athlete]:
        with self._lock:
            return copy.deepcopy(self._athletes.get(athlete_id))

    def get_athlete_by_user(self, user_id: str) -> Optional[Athlete]:
        with self._lock:
            for athlete in self._athletes.values():
                if athlete.user_id == user_id:
                    return copy.deepcopy(athlete)
        return None

    def get_test_type(self, test_type_id: UUID) -> Optional[TestType]:
        with self._lock:
            return copy.deepcopy(self._test_types.get(test_type_id))

    def list_test_types(self, active_only: bool = True) -> list[TestType]:
        with self._lock:
            types = [
                copy.deepcopy(t)
                for t in self._test_types.values()
                if t.is_active or not active_only
            ]
        return sorted(types, key=lambda t: (t.category, t.name))

    # -- writes --------------------------------------------------------------

    def create_assessment(self, assessment: Assessment) -> Assessment:
        with self._lock:
            self._assessments[assessment.id] = copy.deepcopy(assessment)
        return assessment

    def claim_for_processing(self, assessment_id: UUID, video_url: str) -> bool:
        with self._lock:
            stored = self._assessments.get(assessment_id)
            if stored is None or stored.status != AssessmentStatus.PENDING:
                return False
            stored.transition_to(AssessmentStatus.PROCESSING)
            stored.video_url = video_url
            return True

    def complete_assessment(
        self,
        assessment_id: UUID,
        results: dict[str, Any],
        performance_score: float,
        feedback: str,
        metrics: list[PerformanceMetric],
    ) -> bool:
        with self._lock:
            stored = self._assessments.get(assessment_id)
            if stored is None or stored.status != AssessmentStatus.PROCESSING:
                return False

            rows = self._metrics.setdefault(assessment_id, [])
            existing = {m.metric_name for m in rows}
            new_rows = [m for m in metrics if m.metric_name not in existing]

            stored.transition_to(AssessmentStatus.COMPLETED)
            stored.ai_analysis_results = copy.deepcopy(results)
            stored.performance_score = performance_score
            stored.feedback = feedback
            rows.extend(copy.deepcopy(new_rows))
            return True

    def fail_assessment(self, assessment_id: UUID, results: dict[str, Any]) -> bool:
        with self._lock:
            stored = self._assessments.get(assessment_id)
            if stored is None or stored.status != AssessmentStatus.PROCESSING:
                return False
            stored.transition_to(AssessmentStatus.FAILED)
            stored.ai_analysis_results = copy.deepcopy(results)
            return True

    def fail_stale_processing(
        self,
        older_than: datetime,
        results: dict[str, Any],
    ) -> list[UUID]:
        with self._lock:
            stale = [
                a.id
                for a in self._assessments.values()
                if a.status == AssessmentStatus.PROCESSING and a.updated_at < older_than
            ]
        return [
            assessment_id
            for assessment_id in stale
            if self.fail_assessment(assessment_id, results)
        ]
