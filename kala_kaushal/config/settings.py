"""
Application configuration using Pydantic settings.

Configuration is loaded from environment variables (and a .env file) with
sensible defaults. Type errors fail at startup instead of mid-request.

Two settings classes live here:
- Settings: the API server
- ClientSettings: the recording client, read from KALA_* variables

Mock modes enable local development without external services.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Server settings loaded from environment variables.

    For lists (like api_keys), use comma-separated values in env.
    """

    # API Configuration
    api_title: str = "Kala Kaushal Assessment API"
    api_version: str = "v1"
    api_keys: str = Field(
        default="dev-key-1,dev-key-2",
        description="Comma-separated API keys. Several keys allow rotation without downtime."
    )

    # Anthropic Configuration
    anthropic_api_key: str = Field(
        default="",
        description="Claude API key. Required for analysis."
    )
    anthropic_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Claude model used for integrity checks and scoring."
    )
    anthropic_max_tokens: int = Field(
        default=2048,
        description="Max tokens for Claude responses. The analysis JSON is compact."
    )
    anthropic_temperature: float = Field(
        default=0.2,
        description="Low temperature keeps scores repeatable across uploads."
    )

    # Snowflake Configuration
    snowflake_account: str = Field(
        default="",
        description="Snowflake account identifier"
    )
    snowflake_user: str = Field(
        default="",
        description="Snowflake service account username"
    )
    snowflake_password: str = Field(
        default="",
        description="Snowflake service account password"
    )
    snowflake_private_key_path: Optional[str] = Field(
        default=None,
        description="Path to RSA private key file for key-pair authentication"
    )
    snowflake_private_key_base64: Optional[str] = Field(
        default=None,
        description="Base64-encoded private key (for deployment, alternative to file path)"
    )
    snowflake_database: str = Field(
        default="KALA_KAUSHAL",
        description="Snowflake database name"
    )
    snowflake_schema: str = Field(
        default="ASSESSMENTS",
        description="Snowflake schema name"
    )
    snowflake_warehouse: str = Field(
        default="COMPUTE_WH",
        description="Snowflake warehouse for query execution"
    )
    snowflake_role: Optional[str] = Field(
        default=None,
        description="Snowflake role to use (optional)"
    )
    snowflake_mock_mode: bool = Field(
        default=False,
        description="Use the in-memory repository instead of Snowflake. Seeds demo test types."
    )

    # Video Storage Configuration
    storage_backend: Literal["local", "r2", "mock"] = Field(
        default="local",
        description="Where uploaded clips are kept: local disk, Cloudflare R2, or memory."
    )
    storage_root: Path = Field(
        default=Path("./uploads"),
        description="Directory for the local storage backend"
    )
    r2_account_id: str = Field(
        default="",
        description="Cloudflare account ID for R2"
    )
    r2_access_key_id: str = Field(
        default="",
        description="R2 access key ID"
    )
    r2_secret_access_key: str = Field(
        default="",
        description="R2 secret access key"
    )
    r2_bucket_name: str = Field(
        default="kala-kaushal-videos",
        description="R2 bucket name for assessment videos"
    )
    r2_endpoint_url: Optional[str] = Field(
        default=None,
        description="R2 endpoint URL. Auto-constructed from account_id if not provided."
    )

    # Video Processing
    ffmpeg_mock_mode: bool = Field(
        default=False,
        description="Use placeholder frames instead of FFmpeg. Enables local dev without ffmpeg."
    )
    analysis_max_frames: int = Field(
        default=12,
        ge=1,
        le=20,
        description="Frames sampled from each clip and sent to the vision model."
    )

    # Assessment Lifecycle
    max_upload_size_mb: int = Field(
        default=50,
        description="Maximum video upload size in MB."
    )
    analysis_timeout_seconds: float = Field(
        default=90.0,
        gt=0,
        description="Upper bound on the whole AI exchange for one upload."
    )
    processing_stale_after_seconds: int = Field(
        default=600,
        description="Assessments processing longer than this are failed by the watchdog."
    )
    watchdog_interval_seconds: float = Field(
        default=60.0,
        description="How often the stale-processing watchdog runs. 0 disables it."
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins. Use * for development only."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def api_keys_list(self) -> list[str]:
        """Parse comma-separated API keys into a list."""
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def max_upload_size_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024

    @property
    def r2_endpoint(self) -> str:
        """
        R2 endpoint URL; follows https://{account_id}.r2.cloudflarestorage.com
        unless set explicitly.
        """
        if self.r2_endpoint_url:
            return self.r2_endpoint_url
        return f"https://{self.r2_account_id}.r2.cloudflarestorage.com"

    def validate_required_fields(self) -> list[str]:
        """
        Return the names of required settings that are missing.

        Separate from Pydantic validation because requirements depend on
        which mock modes are on.
        """
        missing = []

        # no mock for the LLM
        if not self.anthropic_api_key:
            missing.append("ANTHROPIC_API_KEY")

        if not self.snowflake_mock_mode:
            if not self.snowflake_account:
                missing.append("SNOWFLAKE_ACCOUNT")
            if not self.snowflake_user:
                missing.append("SNOWFLAKE_USER")
            if not (
                self.snowflake_password
                or self.snowflake_private_key_path
                or self.snowflake_private_key_base64
            ):
                missing.append("SNOWFLAKE_PASSWORD or SNOWFLAKE_PRIVATE_KEY_PATH")

        if self.storage_backend == "r2":
            if not self.r2_account_id and not self.r2_endpoint_url:
                missing.append("R2_ACCOUNT_ID")
            if not self.r2_access_key_id:
                missing.append("R2_ACCESS_KEY_ID")
            if not self.r2_secret_access_key:
                missing.append("R2_SECRET_ACCESS_KEY")

        return missing


class ClientSettings(BaseSettings):
    """
    Settings for the recording client (CLI).

    Read from KALA_* environment variables, e.g. KALA_API_BASE_URL.
    """

    api_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the assessment API"
    )
    api_key: str = Field(
        default="dev-key-1",
        description="Sent as X-API-Key"
    )
    user_id: str = Field(
        default="",
        description="Identity subject sent as X-User-Id"
    )
    camera_index: int = Field(
        default=0,
        description="OpenCV camera index"
    )
    max_recording_seconds: int = Field(
        default=30,
        gt=0,
        description="Recording stops automatically at this length"
    )
    countdown_seconds: int = Field(
        default=3,
        ge=0,
        description="Countdown before recording starts"
    )
    poll_interval_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Delay between status checks while an assessment is processing"
    )
    upload_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Upper bound on a single upload request"
    )
    container: Literal["mp4", "webm"] = Field(
        default="mp4",
        description="Container for recorded clips"
    )

    model_config = SettingsConfigDict(
        env_prefix="KALA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Settings are loaded once per process. For tests, call
    get_settings.cache_clear() to reset.
    """
    return Settings()
