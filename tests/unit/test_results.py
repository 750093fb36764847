"""
Unit tests for parsing and validating the vision model's replies.

The model is treated as an untrusted source, so most of these tests feed in
something slightly wrong and check what survives.
"""

import json

import pytest

from kala_kaushal.core.assessment.results import (
    DEFAULT_FEEDBACK,
    MalformedResponseError,
    clamp,
    extract_json_object,
    parse_analysis_response,
    parse_integrity_response,
)


class TestClamp:
    @pytest.mark.parametrize("value,expected", [
        (50, 50.0),
        (-5, 0.0),
        (150, 100.0),
        ("72.5", 72.5),
        ("fast", 0.0),
        (None, 0.0),
        (True, 0.0),
        (float("nan"), 0.0),
        (float("inf"), 0.0),
    ])
    def test_clamp_to_score_range(self, value, expected):
        assert clamp(value, 0.0, 100.0) == expected


class TestExtractJsonObject:
    def test_plain_json(self):
        assert extract_json_object('{"a": 1}') == {"a": 1}

    def test_markdown_fence(self):
        text = 'Here is the result:\n```json\n{"isValid": true}\n```\nThanks.'
        assert extract_json_object(text) == {"isValid": True}

    def test_surrounding_prose(self):
        text = 'Sure. {"performanceScore": 80} Let me know if you need more.'
        assert extract_json_object(text) == {"performanceScore": 80}

    def test_empty_reply(self):
        with pytest.raises(MalformedResponseError, match="Empty"):
            extract_json_object("   ")

    def test_no_json(self):
        with pytest.raises(MalformedResponseError, match="No JSON"):
            extract_json_object("I cannot analyze this video.")

    def test_invalid_json(self):
        with pytest.raises(MalformedResponseError, match="Invalid JSON"):
            extract_json_object('{"performanceScore": 80,}')


class TestParseAnalysisResponse:
    def test_full_response(self):
        reply = json.dumps({
            "performanceScore": 78,
            "metrics": [
                {"name": "sprint_speed", "value": 6.4, "unit": "m/s", "confidence": 0.8},
                {"name": "stride_length", "value": 1.9, "unit": "m", "confidence": 0.6},
            ],
            "feedback": "Strong acceleration phase.",
            "formAnalysis": {
                "overallForm": 74,
                "improvements": ["Arm drive"],
                "strengths": ["Posture"],
            },
            "detectedMovements": ["sprint start", "acceleration"],
            "riskFactors": [],
        })

        result = parse_analysis_response(reply)

        assert result.performance_score == 78
        assert [m.name for m in result.metrics] == ["sprint_speed", "stride_length"]
        assert result.form_analysis.overall_form == 74
        assert result.form_analysis.strengths == ["Posture"]
        assert result.detected_movements == ["sprint start", "acceleration"]

    def test_missing_fields_get_defaults(self):
        """Lists become empty and feedback falls back to a default."""
        result = parse_analysis_response('{"performanceScore": 55}')

        assert result.metrics == []
        assert result.feedback == DEFAULT_FEEDBACK
        assert result.form_analysis.improvements == []
        assert result.risk_factors == []

    def test_out_of_range_values_are_clamped(self):
        reply = json.dumps({
            "performanceScore": 140,
            "metrics": [{"name": "jump_height", "value": 40, "unit": "cm", "confidence": 3}],
            "formAnalysis": {"overallForm": -20},
        })

        result = parse_analysis_response(reply)

        assert result.performance_score == 100.0
        assert result.metrics[0].confidence == 1.0
        assert result.form_analysis.overall_form == 0.0

    def test_unusable_metrics_are_dropped(self):
        reply = json.dumps({
            "performanceScore": 60,
            "metrics": [
                {"name": "", "value": 1},
                {"name": "reaction_time", "value": "quick"},
                "not a metric",
                {"name": "cadence", "value": 3.1, "unit": None},
            ],
        })

        result = parse_analysis_response(reply)

        assert len(result.metrics) == 1
        assert result.metrics[0].name == "cadence"
        assert result.metrics[0].unit == ""

    def test_wrongly_typed_lists_become_empty(self):
        reply = json.dumps({
            "performanceScore": 60,
            "metrics": "none",
            "detectedMovements": "jump",
            "formAnalysis": "good",
        })

        result = parse_analysis_response(reply)

        assert result.metrics == []
        assert result.detected_movements == []
        assert result.form_analysis.overall_form == 0.0

    def test_to_dict_uses_response_keys(self):
        result = parse_analysis_response('{"performanceScore": 50}')

        data = result.to_dict()

        assert set(data) == {
            "performanceScore",
            "metrics",
            "feedback",
            "formAnalysis",
            "detectedMovements",
            "riskFactors",
        }
        assert set(data["formAnalysis"]) == {"overallForm", "improvements", "strengths"}

    def test_non_object_reply_is_malformed(self):
        with pytest.raises(MalformedResponseError):
            parse_analysis_response("no analysis available")


class TestParseIntegrityResponse:
    def test_invalid_clip(self):
        report = parse_integrity_response(
            '{"isValid": false, "confidence": 0.9, "issues": ["speed altered"]}'
        )

        assert report.is_valid is False
        assert report.confidence == 0.9
        assert report.issues == ["speed altered"]

    def test_missing_fields_default_to_valid(self):
        report = parse_integrity_response("{}")

        assert report.is_valid is True
        assert report.confidence == 0.8
        assert report.issues == []

    def test_to_dict(self):
        report = parse_integrity_response('{"isValid": true, "confidence": 0.95}')

        assert report.to_dict() == {"isValid": True, "confidence": 0.95, "issues": []}
