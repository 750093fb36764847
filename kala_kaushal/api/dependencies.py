"""
FastAPI dependency injection.

Dependencies provide services, clients and configuration to route handlers,
so routes never build their own collaborators and tests can override any of
them through ``app.dependency_overrides``.

Each dependency is a function that FastAPI calls when needed.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated, Generator, Optional, Union

from fastapi import Depends, Header, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ..config.settings import Settings, get_settings
from ..core.assessment.analyzer import FrameSampler, PerformanceAnalyzer, VisionModelClient
from ..core.assessment.orchestrator import AnalysisOrchestrator
from ..infrastructure.anthropic.client import AnthropicConfig, AnthropicVisionClient
from ..infrastructure.snowflake.client import SnowflakeConfig, get_snowflake_connection
from ..infrastructure.snowflake.repositories.assessments import (
    AssessmentRepository,
    InMemoryAssessmentRepository,
)
from ..infrastructure.storage.client import StorageConfig, VideoStorage, create_video_storage
from ..infrastructure.video.processor import create_video_processor

logger = logging.getLogger(__name__)

Repository = Union[AssessmentRepository, InMemoryAssessmentRepository]

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Shared mock instances so data survives across requests in mock mode
_mock_repository: Optional[InMemoryAssessmentRepository] = None
_video_storage: Optional[VideoStorage] = None


# ---------------------------------------------------------------------------
# Authentication & identity
# ---------------------------------------------------------------------------

async def verify_api_key(
    settings: Annotated[Settings, Depends(get_settings)],
    api_key: str = Security(api_key_header),
) -> str:
    """
    Validate API key from request header.

    Raises 403 if key is invalid or missing.
    """
    if not api_key:
        logger.warning("Request missing API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="API key required. Provide X-API-Key header.",
        )

    if api_key not in settings.api_keys_list:
        logger.warning(
            "Invalid API key attempt",
            extra={"key_prefix": api_key[:8]}
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key


@dataclass(frozen=True)
class Identity:
    """
    The caller, as asserted by the identity provider in front of the API.

    Request-scoped: every handler that needs to know who is calling takes
    it as a dependency.
    """
    user_id: str
    api_key: str


async def get_identity(
    api_key: Annotated[str, Depends(verify_api_key)],
    user_id: Annotated[Optional[str], Header(alias="X-User-Id")] = None,
) -> Identity:
    if not user_id or not user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User identity required. Provide X-User-Id header.",
        )
    return Identity(user_id=user_id.strip(), api_key=api_key)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def _snowflake_config(settings: Settings) -> SnowflakeConfig:
    return SnowflakeConfig(
        account=settings.snowflake_account,
        user=settings.snowflake_user,
        password=settings.snowflake_password or None,
        private_key_path=settings.snowflake_private_key_path,
        private_key_base64=settings.snowflake_private_key_base64,
        database=settings.snowflake_database,
        schema=settings.snowflake_schema,
        warehouse=settings.snowflake_warehouse,
        role=settings.snowflake_role,
    )


@contextmanager
def open_repository(settings: Settings) -> Generator[Repository, None, None]:
    """
    Yield a repository for one unit of work.

    In mock mode the same in-memory repository is shared by every caller;
    otherwise a Snowflake connection is opened and closed around the block.
    """
    global _mock_repository

    if settings.snowflake_mock_mode:
        if _mock_repository is None:
            _mock_repository = InMemoryAssessmentRepository.with_demo_data()
            logger.info("Created shared in-memory repository")
        yield _mock_repository
        return

    with get_snowflake_connection(_snowflake_config(settings)) as conn:
        yield AssessmentRepository(conn)


def get_repository(
    settings: Annotated[Settings, Depends(get_settings)],
) -> Generator[Repository, None, None]:
    """
    Provide the assessment repository for the duration of the request.

    A generator dependency, so the connection is closed after the response.
    """
    with open_repository(settings) as repository:
        yield repository


def get_video_storage(
    settings: Annotated[Settings, Depends(get_settings)],
) -> VideoStorage:
    """Provide the clip storage backend chosen by STORAGE_BACKEND."""
    global _video_storage

    if _video_storage is None:
        config = None
        if settings.storage_backend == "r2":
            config = StorageConfig(
                access_key_id=settings.r2_access_key_id,
                secret_access_key=settings.r2_secret_access_key,
                bucket_name=settings.r2_bucket_name,
                endpoint_url=settings.r2_endpoint,
            )
        _video_storage = create_video_storage(
            backend=settings.storage_backend,
            root=settings.storage_root,
            config=config,
        )
        logger.info("Created video storage", extra={"backend": settings.storage_backend})

    return _video_storage


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

def get_vision_client(
    settings: Annotated[Settings, Depends(get_settings)],
) -> VisionModelClient:
    if not settings.anthropic_api_key:
        logger.error("Upload received but ANTHROPIC_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Analysis service is not configured",
        )

    config = AnthropicConfig(
        api_key=settings.anthropic_api_key,
        model=settings.anthropic_model,
        max_tokens=settings.anthropic_max_tokens,
        temperature=settings.anthropic_temperature,
    )
    return AnthropicVisionClient(config)


@lru_cache()
def _frame_sampler(mock_mode: bool) -> FrameSampler:
    # FFmpegVideoProcessor probes the binary on construction; do it once
    return create_video_processor(mock_mode=mock_mode)


def get_frame_sampler(
    settings: Annotated[Settings, Depends(get_settings)],
) -> FrameSampler:
    return _frame_sampler(settings.ffmpeg_mock_mode)


def get_orchestrator(
    settings: Annotated[Settings, Depends(get_settings)],
    repository: Annotated[Repository, Depends(get_repository)],
    vision_client: Annotated[VisionModelClient, Depends(get_vision_client)],
    frame_sampler: Annotated[FrameSampler, Depends(get_frame_sampler)],
) -> AnalysisOrchestrator:
    analyzer = PerformanceAnalyzer(
        vision_client=vision_client,
        frame_sampler=frame_sampler,
        max_frames=settings.analysis_max_frames,
    )
    return AnalysisOrchestrator(
        analyzer=analyzer,
        store=repository,
        timeout_seconds=settings.analysis_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

AuthenticatedUser = Annotated[str, Depends(verify_api_key)]
IdentityDep = Annotated[Identity, Depends(get_identity)]
RepositoryDep = Annotated[Repository, Depends(get_repository)]
VideoStorageDep = Annotated[VideoStorage, Depends(get_video_storage)]
OrchestratorDep = Annotated[AnalysisOrchestrator, Depends(get_orchestrator)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
