"""
Performance analysis logic and prompt management.

This module turns a recorded clip into a validated analysis by asking a
vision-capable model two questions: "has this video been tampered with?" and
"how well did the athlete perform this test?". It knows nothing about HTTP,
storage or which vendor answers the questions.

The prompts live here because they define what the product measures.
"""

import logging
from typing import Optional, Protocol

from .models import Athlete
from .results import (
    IntegrityReport,
    VideoAnalysisResult,
    parse_analysis_response,
    parse_integrity_response,
)


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols (interfaces)
# ---------------------------------------------------------------------------

class VisionModelClient(Protocol):
    """
    Interface for vision-capable LLM clients.

    Implementations send the images plus prompts and return the raw text reply.
    """

    async def analyze_images(
        self,
        images: list[bytes],
        system_prompt: str,
        user_prompt: str,
    ) -> str:
        """Analyze images and return text response."""
        ...


class FrameSampler(Protocol):
    """Interface for turning a video clip into still frames for the model."""

    async def sample_frames(self, video_data: bytes, max_frames: int) -> list[bytes]:
        """Return up to ``max_frames`` JPEG frames spread across the clip."""
        ...


class FrameSamplingError(Exception):
    """Raised when no usable frames could be taken from a clip."""
    pass


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

ANALYSIS_SYSTEM_PROMPT = """You are an expert sports performance analyst with computer vision capabilities. Analyze athletic movements with precision and provide actionable feedback.

You receive still frames sampled in order from a short video of one athlete performing one test. Base every measurement on what the frames show and state lower confidence where the footage limits what you can judge.

Always answer with a single JSON object and nothing else."""


TEST_INSTRUCTIONS = {
    "sprint": "Focus on running form, acceleration, stride length, and speed consistency. Measure approximate speed if possible.",
    "vertical_jump": "Analyze jump height, takeoff technique, body positioning, and landing form. Estimate jump height in centimeters.",
    "agility": "Assess change of direction speed, body control, footwork, and movement efficiency.",
    "strength": "Evaluate form, range of motion, control, and execution quality.",
    "endurance": "Monitor consistency, pacing, form degradation, and cardiovascular efficiency.",
}

DEFAULT_TEST_INSTRUCTION = "Analyze the athletic movement and provide performance insights."


ANALYSIS_USER_PROMPT_TEMPLATE = """Analyze this {test_type} performance video ({frame_count} frames in chronological order) and provide a detailed assessment. {instructions}{athlete_context}

Respond in JSON format with:
{{
  "performanceScore": 0-100,
  "metrics": [{{"name": "", "value": 0, "unit": "", "confidence": 0-1}}],
  "feedback": "detailed feedback text",
  "formAnalysis": {{
    "overallForm": 0-100,
    "improvements": ["list of areas to improve"],
    "strengths": ["list of strengths observed"]
  }},
  "detectedMovements": ["list of movements identified"],
  "riskFactors": ["potential injury risks or form issues"]
}}"""


INTEGRITY_SYSTEM_PROMPT = """You are a digital forensics expert. Detect signs of video manipulation, editing, or artificial enhancement.

Always answer with a single JSON object and nothing else."""


INTEGRITY_USER_PROMPT_TEMPLATE = """These {frame_count} frames were sampled in order from one uploaded video. Analyze them for signs of digital manipulation, speed alteration, deepfakes, or other editing. Look for inconsistencies in lighting, motion blur, frame rates, or unnatural movements.

Respond in JSON: {{"isValid": boolean, "confidence": 0-1, "issues": []}}"""


def normalize_test_key(test_type_name: str) -> str:
    """'Vertical Jump' -> 'vertical_jump'."""
    return "_".join(test_type_name.strip().lower().replace("-", " ").split())


def describe_athlete(athlete: Optional[Athlete]) -> str:
    """Render the athlete facts we know; unknown fields are left out."""
    if athlete is None or not athlete.has_context:
        return ""

    parts = []
    if athlete.age is not None:
        parts.append(f"age {athlete.age}")
    if athlete.height is not None:
        parts.append(f"height {athlete.height:g}cm")
    if athlete.weight is not None:
        parts.append(f"weight {athlete.weight:g}kg")
    if athlete.primary_sport:
        parts.append(f"sport: {athlete.primary_sport}")

    return f" Consider athlete context: {', '.join(parts)}."


def build_analysis_prompt(
    test_type_name: str,
    frame_count: int,
    athlete: Optional[Athlete] = None,
) -> str:
    instructions = TEST_INSTRUCTIONS.get(
        normalize_test_key(test_type_name),
        DEFAULT_TEST_INSTRUCTION,
    )
    return ANALYSIS_USER_PROMPT_TEMPLATE.format(
        test_type=test_type_name,
        frame_count=frame_count,
        instructions=instructions,
        athlete_context=describe_athlete(athlete),
    )


# ---------------------------------------------------------------------------
# Analyzer Service
# ---------------------------------------------------------------------------

class PerformanceAnalyzer:
    """
    Asks the vision model about one clip and validates what comes back.

    Each call is a single best-effort request. Errors from the client and
    MalformedResponseError from parsing propagate to the caller; deciding
    what they mean for the assessment is the orchestrator's job.
    """

    def __init__(
        self,
        vision_client: VisionModelClient,
        frame_sampler: FrameSampler,
        max_frames: int = 12,
    ) -> None:
        if max_frames < 1:
            raise ValueError("max_frames must be positive")
        self._vision_client = vision_client
        self._frame_sampler = frame_sampler
        self._max_frames = max_frames

    async def sample(self, video_data: bytes) -> list[bytes]:
        frames = await self._frame_sampler.sample_frames(video_data, self._max_frames)
        if not frames:
            raise FrameSamplingError("No frames could be extracted from the clip")
        return frames[: self._max_frames]

    async def validate_integrity(self, frames: list[bytes]) -> IntegrityReport:
        raw_response = await self._vision_client.analyze_images(
            images=frames,
            system_prompt=INTEGRITY_SYSTEM_PROMPT,
            user_prompt=INTEGRITY_USER_PROMPT_TEMPLATE.format(frame_count=len(frames)),
        )
        report = parse_integrity_response(raw_response)

        logger.info(
            "Integrity check finished",
            extra={
                "is_valid": report.is_valid,
                "confidence": report.confidence,
                "issue_count": len(report.issues),
            },
        )
        return report

    async def analyze_performance(
        self,
        frames: list[bytes],
        test_type_name: str,
        athlete: Optional[Athlete] = None,
    ) -> VideoAnalysisResult:
        user_prompt = build_analysis_prompt(test_type_name, len(frames), athlete)

        raw_response = await self._vision_client.analyze_images(
            images=frames,
            system_prompt=ANALYSIS_SYSTEM_PROMPT,
            user_prompt=user_prompt,
        )
        result = parse_analysis_response(raw_response)

        logger.info(
            "Performance analysis parsed",
            extra={
                "test_type": test_type_name,
                "performance_score": result.performance_score,
                "metric_count": len(result.metrics),
            },
        )
        return result
