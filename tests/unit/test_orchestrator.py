"""
Unit tests for the analysis orchestrator and the result persister.

Every path through ``AnalysisOrchestrator.run`` must end with the assessment
in a terminal state, with metrics written only for a completed one.
"""

import asyncio
import json
from datetime import timedelta
from uuid import uuid4

import pytest

from kala_kaushal.core.assessment.analyzer import PerformanceAnalyzer
from kala_kaushal.core.assessment.models import Assessment, AssessmentStatus, utcnow
from kala_kaushal.core.assessment.orchestrator import (
    AnalysisFailure,
    AnalysisOrchestrator,
    FailureReason,
    ResultPersister,
)
from kala_kaushal.core.assessment.results import parse_analysis_response
from kala_kaushal.infrastructure.anthropic.client import AnthropicClientError

from fakes import SPRINT_ANALYSIS, VALID_INTEGRITY, FakeFrameSampler, FakeVisionClient


def make_orchestrator(repository, client, timeout_seconds=5.0, frame_count=4):
    analyzer = PerformanceAnalyzer(client, FakeFrameSampler(frame_count=frame_count))
    return AnalysisOrchestrator(analyzer, repository, timeout_seconds=timeout_seconds)


class TestSuccessfulAnalysis:
    def test_completes_assessment_with_metrics(self, repository, processing_assessment):
        """A valid clip and a valid analysis end in completed with one row per metric."""
        client = FakeVisionClient(VALID_INTEGRITY, SPRINT_ANALYSIS)
        orchestrator = make_orchestrator(repository, client)

        outcome = asyncio.run(orchestrator.run(processing_assessment, b"video"))

        assert outcome.succeeded
        assert outcome.persisted
        stored = repository.get_assessment(processing_assessment.id)
        assert stored.status == AssessmentStatus.COMPLETED
        assert stored.performance_score == 81
        assert stored.feedback.startswith("Explosive start")
        assert stored.ai_analysis_results["performanceScore"] == 81
        assert stored.ai_analysis_results["integrity"]["isValid"] is True

        metrics = repository.list_metrics(processing_assessment.id)
        assert {m.metric_name for m in metrics} == {"sprint_speed", "stride_length"}
        assert all(m.assessment_id == processing_assessment.id for m in metrics)

    def test_athlete_context_reaches_prompt(self, repository, processing_assessment):
        client = FakeVisionClient(VALID_INTEGRITY, SPRINT_ANALYSIS)
        orchestrator = make_orchestrator(repository, client)

        asyncio.run(orchestrator.run(processing_assessment, b"video"))

        analysis_prompt = client.calls[1]["user_prompt"]
        assert "sprint" in analysis_prompt
        assert "age 16" in analysis_prompt

    def test_out_of_range_score_is_clamped_before_persisting(self, repository, processing_assessment):
        reply = json.dumps({"performanceScore": 250, "metrics": []})
        orchestrator = make_orchestrator(repository, FakeVisionClient(VALID_INTEGRITY, reply))

        asyncio.run(orchestrator.run(processing_assessment, b"video"))

        stored = repository.get_assessment(processing_assessment.id)
        assert stored.status == AssessmentStatus.COMPLETED
        assert stored.performance_score == 100.0

    def test_duplicate_metric_names_stored_once(self, repository, processing_assessment):
        reply = json.dumps({
            "performanceScore": 70,
            "metrics": [
                {"name": "jump_height", "value": 41, "unit": "cm", "confidence": 0.6},
                {"name": "jump_height", "value": 44, "unit": "cm", "confidence": 0.9},
            ],
        })
        orchestrator = make_orchestrator(repository, FakeVisionClient(VALID_INTEGRITY, reply))

        asyncio.run(orchestrator.run(processing_assessment, b"video"))

        metrics = repository.list_metrics(processing_assessment.id)
        assert len(metrics) == 1
        assert metrics[0].value == 41


class TestFailedAnalysis:
    def test_integrity_failure_skips_performance_analysis(self, repository, processing_assessment):
        """A clip flagged as manipulated fails without a second model call."""
        verdict = json.dumps({"isValid": False, "confidence": 0.91, "issues": ["speed altered"]})
        client = FakeVisionClient(verdict, SPRINT_ANALYSIS)
        orchestrator = make_orchestrator(repository, client)

        outcome = asyncio.run(orchestrator.run(processing_assessment, b"video"))

        assert not outcome.succeeded
        assert outcome.failure.reason == FailureReason.INTEGRITY_FAILED
        assert outcome.failure.issues == ["speed altered"]
        assert len(client.calls) == 1

        stored = repository.get_assessment(processing_assessment.id)
        assert stored.status == AssessmentStatus.FAILED
        assert stored.ai_analysis_results["error"] == "Video integrity validation failed"
        assert stored.ai_analysis_results["issues"] == ["speed altered"]
        assert stored.performance_score is None
        assert repository.list_metrics(processing_assessment.id) == []

    def test_collaborator_error_fails_assessment(self, repository, processing_assessment):
        client = FakeVisionClient(VALID_INTEGRITY, AnthropicClientError("upstream 529"))
        orchestrator = make_orchestrator(repository, client)

        outcome = asyncio.run(orchestrator.run(processing_assessment, b"video"))

        assert outcome.failure.reason == FailureReason.ANALYSIS_ERROR
        stored = repository.get_assessment(processing_assessment.id)
        assert stored.status == AssessmentStatus.FAILED
        assert stored.ai_analysis_results["reason"] == "analysis_error"
        assert "upstream 529" in stored.ai_analysis_results["details"]
        assert repository.list_metrics(processing_assessment.id) == []

    def test_malformed_reply_fails_assessment(self, repository, processing_assessment):
        client = FakeVisionClient(VALID_INTEGRITY, "I could not see the athlete clearly.")
        orchestrator = make_orchestrator(repository, client)

        outcome = asyncio.run(orchestrator.run(processing_assessment, b"video"))

        assert outcome.failure.reason == FailureReason.MALFORMED_RESPONSE
        stored = repository.get_assessment(processing_assessment.id)
        assert stored.status == AssessmentStatus.FAILED

    def test_no_frames_fails_assessment(self, repository, processing_assessment):
        client = FakeVisionClient(VALID_INTEGRITY, SPRINT_ANALYSIS)
        orchestrator = make_orchestrator(repository, client, frame_count=0)

        outcome = asyncio.run(orchestrator.run(processing_assessment, b"video"))

        assert outcome.failure.reason == FailureReason.NO_FRAMES
        assert client.calls == []
        assert repository.get_assessment(processing_assessment.id).status == AssessmentStatus.FAILED

    def test_timeout_fails_assessment(self, repository, processing_assessment):
        client = FakeVisionClient(VALID_INTEGRITY, SPRINT_ANALYSIS, delay=0.5)
        orchestrator = make_orchestrator(repository, client, timeout_seconds=0.05)

        outcome = asyncio.run(orchestrator.run(processing_assessment, b"video"))

        assert outcome.failure.reason == FailureReason.TIMEOUT
        stored = repository.get_assessment(processing_assessment.id)
        assert stored.status == AssessmentStatus.FAILED
        assert stored.ai_analysis_results["error"] == "AI analysis timed out"

    def test_rejects_non_positive_timeout(self, repository):
        analyzer = PerformanceAnalyzer(FakeVisionClient(), FakeFrameSampler())
        with pytest.raises(ValueError):
            AnalysisOrchestrator(analyzer, repository, timeout_seconds=0)


class TestResultPersister:
    def test_second_terminal_write_is_ignored(self, repository, processing_assessment):
        """The first terminal write wins; repeating it changes nothing."""
        persister = ResultPersister(repository)
        result = parse_analysis_response(SPRINT_ANALYSIS)

        assert persister.persist_success(processing_assessment.id, result)
        assert not persister.persist_success(processing_assessment.id, result)
        assert not persister.persist_failure(
            processing_assessment.id,
            AnalysisFailure(reason=FailureReason.ANALYSIS_ERROR),
        )

        stored = repository.get_assessment(processing_assessment.id)
        assert stored.status == AssessmentStatus.COMPLETED
        assert len(repository.list_metrics(processing_assessment.id)) == 2

    def test_pending_assessment_cannot_be_completed(self, repository, pending_assessment):
        """Skipping processing is not allowed."""
        persister = ResultPersister(repository)
        result = parse_analysis_response(SPRINT_ANALYSIS)

        assert not persister.persist_success(pending_assessment.id, result)
        assert repository.get_assessment(pending_assessment.id).status == AssessmentStatus.PENDING
        assert repository.list_metrics(pending_assessment.id) == []

    def test_unknown_assessment(self, repository):
        persister = ResultPersister(repository)
        failure = AnalysisFailure(reason=FailureReason.TIMEOUT)

        assert not persister.persist_failure(uuid4(), failure)

    def test_fail_stale_only_touches_old_processing_rows(self, repository, processing_assessment):
        waiting = repository.create_assessment(Assessment(
            athlete_id=processing_assessment.athlete_id,
            test_type_id=processing_assessment.test_type_id,
        ))
        persister = ResultPersister(repository)

        assert persister.fail_stale(utcnow() - timedelta(minutes=10)) == []

        failed = persister.fail_stale(utcnow() + timedelta(seconds=1))

        assert failed == [processing_assessment.id]
        stored = repository.get_assessment(processing_assessment.id)
        assert stored.status == AssessmentStatus.FAILED
        assert stored.ai_analysis_results["reason"] == "stale_processing"
        assert repository.get_assessment(waiting.id).status == AssessmentStatus.PENDING


class TestAnalysisFailure:
    def test_to_dict(self):
        failure = AnalysisFailure(reason=FailureReason.INTEGRITY_FAILED, issues=["cut at 00:03"])

        assert failure.to_dict() == {
            "error": "Video integrity validation failed",
            "reason": "integrity_failed",
            "details": "",
            "issues": ["cut at 00:03"],
        }
