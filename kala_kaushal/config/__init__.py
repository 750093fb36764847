"""
Configuration for the API server and the recording client.

Both read environment variables (and .env) through pydantic-settings.
"""

from .settings import ClientSettings, Settings, get_settings

__all__ = ["ClientSettings", "Settings", "get_settings"]
