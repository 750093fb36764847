"""
Infrastructure layer - external service integrations.

Each subdirectory wraps an external dependency:
- anthropic: Claude vision API client
- snowflake: Database persistence
- storage: Video storage (local disk, R2/S3)
- video: FFmpeg frame sampling

These wrappers translate between external formats and our domain models.
"""
