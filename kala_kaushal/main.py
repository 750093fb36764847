"""
FastAPI application entry point.

Uses an application factory (create_app) so tests can build fresh apps with
their own settings and dependency overrides.

For local development:
    uvicorn kala_kaushal.main:app --reload
"""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .api.dependencies import open_repository
from .api.routes import assessments, health, test_types
from .config.settings import Settings, get_settings
from .core.assessment.models import utcnow
from .core.assessment.orchestrator import ResultPersister

# Configure logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=get_settings().log_level.upper(),
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Stale-processing watchdog
# ---------------------------------------------------------------------------

def fail_stale_assessments(settings: Settings) -> int:
    """Fail assessments stuck in processing; returns how many were failed."""
    cutoff = utcnow() - timedelta(seconds=settings.processing_stale_after_seconds)
    with open_repository(settings) as repository:
        return len(ResultPersister(repository).fail_stale(cutoff))


async def run_watchdog(settings: Settings) -> None:
    while True:
        await asyncio.sleep(settings.watchdog_interval_seconds)
        try:
            await asyncio.to_thread(fail_stale_assessments, settings)
        except Exception as e:
            # keep the loop alive; the next pass retries
            logger.error("Stale-processing watchdog failed", extra={"error": str(e)}, exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Starts the stale-processing watchdog on startup and cancels it on
    shutdown.
    """
    settings = get_settings()

    logger.info(
        "Kala Kaushal API starting",
        extra={
            "version": settings.api_version,
            "mock_mode": {
                "snowflake": settings.snowflake_mock_mode,
                "ffmpeg": settings.ffmpeg_mock_mode,
            },
            "storage_backend": settings.storage_backend,
        }
    )

    missing_fields = settings.validate_required_fields()
    if missing_fields:
        # logged rather than fatal so local development still starts
        logger.error(
            "Missing required configuration",
            extra={"missing_fields": missing_fields}
        )

    watchdog = None
    if settings.watchdog_interval_seconds > 0:
        watchdog = asyncio.create_task(run_watchdog(settings))

    yield

    if watchdog is not None:
        watchdog.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watchdog

    logger.info("Kala Kaushal API shutting down")


def create_app() -> FastAPI:
    """
    Application factory.

    Creates and configures the FastAPI application.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.api_title,
        version=__version__,
        description="""
        Sports talent self-assessment from recorded video.

        ## Authentication

        Every `/api/v1` endpoint requires an API key in the `X-API-Key`
        header and the caller's identity in `X-User-Id`.

        ## Workflow

        1. **Pick a test**: `GET /api/v1/test-types`
        2. **Create an assessment**: `POST /api/v1/assessments`
        3. **Upload the clip**: `POST /api/v1/assessments/{id}/upload-video`
           - multipart field `video`, up to 50 MB
           - the response carries the analysis once it is done
        4. **Poll**: `GET /api/v1/assessments/{id}` until the status is
           `completed` or `failed`
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(
        health.router,
        prefix="/health",
        tags=["Health"],
    )

    app.include_router(
        assessments.router,
        prefix="/api/v1/assessments",
        tags=["Assessments"],
    )

    app.include_router(
        test_types.router,
        prefix="/api/v1/test-types",
        tags=["Test Types"],
    )

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "message": "Kala Kaushal Assessment API",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Error bodies always carry a ``message``."""
        content = exc.detail if isinstance(exc.detail, dict) else {"message": exc.detail}
        return JSONResponse(
            status_code=exc.status_code,
            content=content,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "message": "Invalid request",
                "errors": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """
        Catch-all exception handler.

        Logs the full error server-side and returns a generic message, so
        stack traces never reach clients.
        """
        logger.error(
            "Unhandled exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "error": str(exc),
            },
            exc_info=exc,
        )

        return JSONResponse(
            status_code=500,
            content={
                "message": "Internal server error. Please contact support if this persists."
            }
        )

    logger.info(
        "FastAPI application created",
        extra={
            "title": settings.api_title,
            "version": __version__,
        }
    )

    return app


# This is what uvicorn imports
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "kala_kaushal.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower(),
    )
