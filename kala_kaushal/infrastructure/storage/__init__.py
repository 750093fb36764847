"""
Storage for uploaded assessment videos.

Supports local disk, R2 (Cloudflare) via the S3-compatible API, and an
in-memory mode for tests and local development.
"""

from .client import (
    LocalVideoStorage,
    MockVideoStorage,
    ObjectExistsError,
    R2VideoStorage,
    StorageConfig,
    StorageError,
    VideoStorage,
    create_video_storage,
)

__all__ = [
    "LocalVideoStorage",
    "MockVideoStorage",
    "ObjectExistsError",
    "R2VideoStorage",
    "StorageConfig",
    "StorageError",
    "VideoStorage",
    "create_video_storage",
]
