"""
Thin async client for the assessment API.

Wraps an httpx.AsyncClient configured with the caller's API key and identity
headers. Every method returns parsed models or raises ApiError.
"""

import logging
from typing import Any, Optional
from uuid import UUID

import httpx
from pydantic import BaseModel, ConfigDict, Field

from ..config.settings import ClientSettings
from ..core.assessment.models import AssessmentStatus

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Raised when the API answers with an error status."""

    def __init__(self, status_code: int, message: str, body: Optional[dict] = None) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.body = body or {}


class MetricView(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    metric_name: str = Field(alias="metricName")
    value: float
    unit: str = ""
    confidence: float = 0.0
    percentile: Optional[float] = None


class AssessmentView(BaseModel):
    """An assessment as the API returns it."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: UUID
    status: AssessmentStatus
    test_type_id: Optional[UUID] = Field(default=None, alias="testTypeId")
    performance_score: Optional[float] = Field(default=None, alias="performanceScore")
    feedback: Optional[str] = None
    ai_analysis_results: Optional[dict[str, Any]] = Field(default=None, alias="aiAnalysisResults")
    video_url: Optional[str] = Field(default=None, alias="videoUrl")
    metrics: list[MetricView] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def failure_reason(self) -> Optional[str]:
        if self.status != AssessmentStatus.FAILED or not self.ai_analysis_results:
            return None
        return self.ai_analysis_results.get("reason")


class TestTypeView(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: UUID
    name: str
    category: str = "general"
    description: str = ""
    instructions: str = ""


def error_message(response: httpx.Response) -> str:
    """Pull the ``message`` out of an error body, falling back to the status text."""
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.reason_phrase or f"HTTP {response.status_code}"


def build_http_client(
    settings: ClientSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    headers = {"X-API-Key": settings.api_key}
    if settings.user_id:
        headers["X-User-Id"] = settings.user_id
    return httpx.AsyncClient(
        base_url=settings.api_base_url,
        headers=headers,
        timeout=httpx.Timeout(30.0, write=settings.upload_timeout_seconds, read=settings.upload_timeout_seconds),
        transport=transport,
    )


class AssessmentApiClient:
    """Read and create assessments; uploads go through UploadCoordinator."""

    def __init__(self, http: httpx.AsyncClient) -> None:
        self._http = http

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http

    async def list_test_types(self) -> list[TestTypeView]:
        body = await self._request("GET", "/api/v1/test-types")
        return [TestTypeView.model_validate(item) for item in body]

    async def find_test_type(self, name: str) -> TestTypeView:
        for test_type in await self.list_test_types():
            if test_type.name == name:
                return test_type
        raise ApiError(404, f"Unknown test type: {name}")

    async def create_assessment(
        self,
        test_type_id: UUID,
        duration: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AssessmentView:
        body = await self._request("POST", "/api/v1/assessments", json={
            "test_type_id": str(test_type_id),
            "duration": duration,
            "metadata": metadata or {},
        })
        return AssessmentView.model_validate(body)

    async def get_assessment(self, assessment_id: UUID) -> AssessmentView:
        body = await self._request("GET", f"/api/v1/assessments/{assessment_id}")
        return AssessmentView.model_validate(body)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        response = await self._http.request(method, path, **kwargs)
        if response.status_code >= 400:
            message = error_message(response)
            logger.warning(
                "API request failed",
                extra={"method": method, "path": path, "status": response.status_code},
            )
            try:
                body = response.json()
            except ValueError:
                body = None
            raise ApiError(response.status_code, message, body if isinstance(body, dict) else None)
        return response.json()
