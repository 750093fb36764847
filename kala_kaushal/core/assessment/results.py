"""
Validated shapes for the AI collaborator's responses.

The vision model is an untrusted source: any field may be missing, mistyped
or out of range. Everything it returns passes through these models before it
reaches the persister. Missing lists become empty lists, scores are clamped
to their declared ranges, and metric entries that cannot be stored are dropped.
"""

import json
import logging
import math
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


logger = logging.getLogger(__name__)

SCORE_RANGE = (0.0, 100.0)
CONFIDENCE_RANGE = (0.0, 1.0)

DEFAULT_FEEDBACK = "Analysis completed"
DEFAULT_INTEGRITY_CONFIDENCE = 0.8


class MalformedResponseError(Exception):
    """Raised when a collaborator response cannot be read as the expected structure."""
    pass


def clamp(value: Any, lower: float, upper: float) -> float:
    """
    Coerce ``value`` to a float inside [lower, upper].

    Anything that is not a finite number collapses to ``lower``.
    """
    if isinstance(value, bool):
        return lower
    try:
        number = float(value)
    except (TypeError, ValueError):
        return lower
    if not math.isfinite(number):
        return lower
    return max(lower, min(upper, number))


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [
        str(item).strip()
        for item in value
        if item is not None and str(item).strip()
    ]


class MetricResult(BaseModel):
    """One measurement reported by the collaborator (e.g. sprint speed)."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    value: float
    unit: str = ""
    confidence: float = 0.0

    @field_validator("name", mode="before")
    @classmethod
    def _name_present(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("metric name is required")
        return value.strip()

    @field_validator("value")
    @classmethod
    def _value_finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("metric value must be finite")
        return value

    @field_validator("unit", mode="before")
    @classmethod
    def _unit_text(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        return clamp(value, *CONFIDENCE_RANGE)


class FormAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    overall_form: float = Field(default=0.0, alias="overallForm")
    improvements: list[str] = Field(default_factory=list)
    strengths: list[str] = Field(default_factory=list)

    @field_validator("overall_form", mode="before")
    @classmethod
    def _clamp_form(cls, value: Any) -> float:
        return clamp(value, *SCORE_RANGE)

    @field_validator("improvements", "strengths", mode="before")
    @classmethod
    def _lists(cls, value: Any) -> list[str]:
        return _string_list(value)


class VideoAnalysisResult(BaseModel):
    """
    The structured performance analysis for one clip.

    Serialized with the collaborator's camelCase keys, which is also the shape
    stored in ``ai_analysis_results`` and returned to clients.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    performance_score: float = Field(default=0.0, alias="performanceScore")
    metrics: list[MetricResult] = Field(default_factory=list)
    feedback: str = DEFAULT_FEEDBACK
    form_analysis: FormAnalysis = Field(default_factory=FormAnalysis, alias="formAnalysis")
    detected_movements: list[str] = Field(default_factory=list, alias="detectedMovements")
    risk_factors: list[str] = Field(default_factory=list, alias="riskFactors")

    @field_validator("performance_score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> float:
        return clamp(value, *SCORE_RANGE)

    @field_validator("metrics", mode="before")
    @classmethod
    def _usable_metrics(cls, value: Any) -> list[MetricResult]:
        if not isinstance(value, list):
            return []
        metrics = []
        for entry in value:
            try:
                metrics.append(MetricResult.model_validate(entry))
            except ValidationError as e:
                logger.warning(
                    "Dropping unusable metric from analysis response",
                    extra={"entry": str(entry)[:200], "error": str(e)},
                )
        return metrics

    @field_validator("feedback", mode="before")
    @classmethod
    def _feedback_text(cls, value: Any) -> str:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_FEEDBACK
        return str(value)

    @field_validator("form_analysis", mode="before")
    @classmethod
    def _form_object(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @field_validator("detected_movements", "risk_factors", mode="before")
    @classmethod
    def _lists(cls, value: Any) -> list[str]:
        return _string_list(value)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class IntegrityReport(BaseModel):
    """Result of the collaborator's manipulation / deepfake pre-check."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    is_valid: bool = Field(default=True, alias="isValid")
    confidence: float = DEFAULT_INTEGRITY_CONFIDENCE
    issues: list[str] = Field(default_factory=list)

    @field_validator("is_valid", mode="before")
    @classmethod
    def _valid_flag(cls, value: Any) -> Any:
        return True if value is None else value

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        if value is None:
            return DEFAULT_INTEGRITY_CONFIDENCE
        return clamp(value, *CONFIDENCE_RANGE)

    @field_validator("issues", mode="before")
    @classmethod
    def _lists(cls, value: Any) -> list[str]:
        return _string_list(value)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)
_RAW_JSON = re.compile(r"\{.*\}", re.DOTALL)


def extract_json_object(text: str) -> dict[str, Any]:
    """
    Pull the JSON object out of a model reply.

    The model may wrap its answer in a markdown fence or surround it with
    prose; both are tolerated. Anything else raises MalformedResponseError.
    """
    if not text or not text.strip():
        raise MalformedResponseError("Empty response from analysis service")

    match = _FENCED_JSON.search(text) or _RAW_JSON.search(text)
    if not match:
        raise MalformedResponseError("No JSON object found in analysis response")

    json_str = match.group(1) if match.re is _FENCED_JSON else match.group(0)

    try:
        payload = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"Invalid JSON in analysis response: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedResponseError("Analysis response is not a JSON object")

    return payload


def parse_analysis_response(text: str) -> VideoAnalysisResult:
    payload = extract_json_object(text)
    try:
        return VideoAnalysisResult.model_validate(payload)
    except ValidationError as e:
        raise MalformedResponseError(f"Analysis response failed validation: {e}") from e


def parse_integrity_response(text: str) -> IntegrityReport:
    payload = extract_json_object(text)
    try:
        return IntegrityReport.model_validate(payload)
    except ValidationError as e:
        raise MalformedResponseError(f"Integrity response failed validation: {e}") from e
