"""
Video storage for uploaded assessment clips.

Three backends share one protocol:
- LocalVideoStorage writes under a directory on disk (the default)
- R2VideoStorage uses Cloudflare R2 through its S3-compatible API
- MockVideoStorage keeps clips in memory for tests and local demos

Storage is write-once. Every backend refuses to replace an existing object,
so a stored clip always matches the assessment that references it.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when storage operations fail."""
    pass


class ObjectExistsError(StorageError):
    """Raised when a write would replace an existing object."""
    pass


@dataclass
class StorageConfig:
    """Configuration for R2/S3-compatible storage."""
    access_key_id: str
    secret_access_key: str
    bucket_name: str
    endpoint_url: str
    region: str = "auto"  # R2 uses 'auto' for region


class VideoStorage(Protocol):
    """
    Protocol for clip storage.

    Keys are relative paths like ``assessments/<id>/<name>``; callers build
    them from sanitized names only.
    """

    async def save_video(self, key: str, video_data: bytes, content_type: str) -> str:
        """Store the clip under ``key`` and return the storage path."""
        ...

    async def load_video(self, key: str) -> bytes:
        """Return the clip stored under ``key``."""
        ...


def _check_key(key: str) -> None:
    parts = key.split("/")
    if not key or key.startswith("/") or any(p in ("", ".", "..") for p in parts):
        raise StorageError(f"Invalid storage key: {key!r}")


# ---------------------------------------------------------------------------
# Local disk
# ---------------------------------------------------------------------------

class LocalVideoStorage:
    """Stores clips as files under ``root``."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        logger.info("Initialized local video storage", extra={"root": str(self._root)})

    def _path_for(self, key: str) -> Path:
        _check_key(key)
        path = (self._root / key).resolve()
        if self._root not in path.parents:
            raise StorageError(f"Storage key escapes root: {key!r}")
        return path

    async def save_video(self, key: str, video_data: bytes, content_type: str) -> str:
        path = self._path_for(key)
        await asyncio.to_thread(self._write_once, path, video_data)

        logger.info(
            "Stored video",
            extra={
                "storage_path": key,
                "size_bytes": len(video_data),
                "content_type": content_type,
            },
        )
        return key

    async def load_video(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise StorageError(f"Video not found: {key}") from e
        except OSError as e:
            logger.error("Failed to read video", extra={"storage_path": key, "error": str(e)})
            raise StorageError(f"Video read failed: {e}") from e

    @staticmethod
    def _write_once(path: Path, data: bytes) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # "x" fails if the file is already there
            with open(path, "xb") as f:
                f.write(data)
        except FileExistsError as e:
            raise ObjectExistsError(f"Video already stored: {path.name}") from e
        except OSError as e:
            logger.error("Failed to write video", extra={"path": str(path), "error": str(e)})
            raise StorageError(f"Video write failed: {e}") from e


# ---------------------------------------------------------------------------
# Cloudflare R2
# ---------------------------------------------------------------------------

class R2VideoStorage:
    """
    Cloudflare R2 object storage.

    Uses boto3 because R2 is S3-compatible. boto3 is synchronous, so each
    call runs in a worker thread to keep the event loop free.
    """

    def __init__(self, config: StorageConfig) -> None:
        import boto3
        from botocore.config import Config

        self._config = config

        # R2 requires v4 signatures and path-style addressing
        boto_config = Config(
            signature_version='s3v4',
            s3={'addressing_style': 'path'},
        )

        self._s3_client = boto3.client(
            's3',
            endpoint_url=config.endpoint_url,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            region_name=config.region,
            config=boto_config,
        )

        logger.info(
            "Initialized R2 storage client",
            extra={
                "bucket": config.bucket_name,
                "endpoint": config.endpoint_url,
            }
        )

    async def save_video(self, key: str, video_data: bytes, content_type: str) -> str:
        from botocore.exceptions import BotoCoreError, ClientError

        _check_key(key)
        try:
            await asyncio.to_thread(
                self._s3_client.put_object,
                Bucket=self._config.bucket_name,
                Key=key,
                Body=video_data,
                ContentType=content_type,
                # conditional write: fail instead of overwriting
                IfNoneMatch="*",
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("PreconditionFailed", "412"):
                raise ObjectExistsError(f"Video already stored: {key}") from e
            logger.error("Failed to upload video", extra={"storage_path": key, "error": str(e)})
            raise StorageError(f"Video upload failed: {e}") from e
        except BotoCoreError as e:
            logger.error("Failed to upload video", extra={"storage_path": key, "error": str(e)})
            raise StorageError(f"Video upload failed: {e}") from e

        logger.info(
            "Uploaded video",
            extra={"storage_path": key, "size_bytes": len(video_data)},
        )
        return key

    async def load_video(self, key: str) -> bytes:
        from botocore.exceptions import BotoCoreError, ClientError

        _check_key(key)
        try:
            response = await asyncio.to_thread(
                self._s3_client.get_object,
                Bucket=self._config.bucket_name,
                Key=key,
            )
            return await asyncio.to_thread(response['Body'].read)
        except (ClientError, BotoCoreError) as e:
            logger.error(
                "Failed to download video",
                extra={"storage_path": key, "error": str(e)}
            )
            raise StorageError(f"Video download failed: {e}") from e


# ---------------------------------------------------------------------------
# Mock Storage for Local Development
# ---------------------------------------------------------------------------

class MockVideoStorage:
    """In-memory storage for tests and local development."""

    def __init__(self) -> None:
        self._videos: dict[str, bytes] = {}
        logger.info("Initialized mock video storage (in-memory)")

    async def save_video(self, key: str, video_data: bytes, content_type: str) -> str:
        _check_key(key)
        if key in self._videos:
            raise ObjectExistsError(f"Video already stored: {key}")
        self._videos[key] = bytes(video_data)
        return key

    async def load_video(self, key: str) -> bytes:
        if key not in self._videos:
            raise StorageError(f"Video not found: {key}")
        return self._videos[key]

    @property
    def keys(self) -> list[str]:
        return list(self._videos)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_video_storage(
    backend: str = "local",
    root: Optional[Path] = None,
    config: Optional[StorageConfig] = None,
) -> VideoStorage:
    """
    Create the storage backend named by ``backend`` (local, r2 or mock).
    """
    if backend == "mock":
        return MockVideoStorage()

    if backend == "local":
        if root is None:
            raise ValueError("root is required for local storage")
        return LocalVideoStorage(root)

    if backend == "r2":
        if config is None:
            raise ValueError("config is required for r2 storage")
        return R2VideoStorage(config)

    raise ValueError(f"Unknown storage backend: {backend}")
