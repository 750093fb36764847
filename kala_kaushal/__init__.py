"""
Kala Kaushal - sports talent self-assessment from recorded video.

This package contains the assessment video lifecycle:
- core: Framework-agnostic assessment state machine and analysis rules
- infrastructure: External service integrations
- api: FastAPI routes and dependencies
- client: Capture, upload and polling for the athlete's device
- config: Application configuration
"""

__version__ = "0.1.0"
