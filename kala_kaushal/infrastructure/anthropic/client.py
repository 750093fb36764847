"""
Anthropic Claude API client wrapper.

This module provides a thin wrapper around the Anthropic SDK that:
1. Implements our VisionModelClient protocol
2. Handles API-specific details (base64 encoding, message format)
3. Translates SDK errors into our own exception types

It sends frames and prompts and returns text. It does not know what an
assessment is.
"""

import base64
import logging
from dataclasses import dataclass
from typing import Optional

import anthropic
from anthropic import APIConnectionError, APIStatusError, RateLimitError

from kala_kaushal.core.assessment.analyzer import VisionModelClient


logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"


class AnthropicClientError(Exception):
    """Raised when API calls fail."""
    pass


class RateLimitExceeded(AnthropicClientError):
    """Raised when we hit rate limits."""
    pass


@dataclass
class AnthropicConfig:
    """Configuration for the Anthropic client, validated at construction."""
    api_key: str
    model: str = DEFAULT_MODEL
    max_tokens: int = 2048
    # low so repeated runs score alike
    temperature: float = 0.2
    # the orchestrator owns the overall deadline; this only bounds one request
    request_timeout_seconds: float = 120.0

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ValueError("API key is required")
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be positive")
        if not 0 <= self.temperature <= 1:
            raise ValueError("temperature must be between 0 and 1")


class AnthropicVisionClient(VisionModelClient):
    """
    Implementation of VisionModelClient using Claude.

    One request per call and no retries: the SDK's own retry loop is turned
    off so a failure surfaces to the orchestrator immediately.
    """

    def __init__(self, config: AnthropicConfig) -> None:
        self._config = config
        self._client = anthropic.AsyncAnthropic(
            api_key=config.api_key,
            max_retries=0,
            timeout=config.request_timeout_seconds,
        )

    async def analyze_images(
        self,
        images: list[bytes],
        system_prompt: str,
        user_prompt: str,
    ) -> str:
        """
        Send images to Claude for analysis.

        Images are base64 encoded and sent as part of the user message,
        followed by the text prompt.
        """
        if not images:
            raise ValueError("At least one image is required")

        content = self._build_image_content(images, user_prompt)

        try:
            response = await self._client.messages.create(
                model=self._config.model,
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
                system=system_prompt,
                messages=[
                    {"role": "user", "content": content}
                ],
            )
        except RateLimitError as e:
            logger.warning("Rate limit hit", extra={"error": str(e)})
            raise RateLimitExceeded("API rate limit exceeded. Please try again later.") from e
        except APIStatusError as e:
            logger.error("API error", extra={"error": str(e), "status": e.status_code})
            raise AnthropicClientError(f"API error: {e.message}") from e
        except APIConnectionError as e:
            logger.error("API connection failed", extra={"error": str(e)})
            raise AnthropicClientError(f"Could not reach analysis service: {e}") from e

        text = self._extract_text_response(response)

        logger.debug(
            "Vision response received",
            extra={
                "image_count": len(images),
                "response_chars": len(text),
                "stop_reason": getattr(response, "stop_reason", None),
            },
        )
        return text

    def _build_image_content(
        self,
        images: list[bytes],
        text_prompt: str,
    ) -> list[dict]:
        """
        Build the content array for a multi-image request.

        Claude expects:
        [
            {"type": "image", "source": {"type": "base64", "media_type": "image/jpeg", "data": "..."}},
            {"type": "image", "source": {...}},
            {"type": "text", "text": "..."}
        ]
        """
        content = []

        for image in images:
            content.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": self._detect_image_type(image),
                    "data": base64.b64encode(image).decode("utf-8"),
                }
            })

        content.append({
            "type": "text",
            "text": text_prompt,
        })

        return content

    def _detect_image_type(self, image_data: bytes) -> str:
        """Detect image MIME type from magic bytes; frames from ffmpeg are JPEG."""
        if image_data[:3] == b'\xff\xd8\xff':
            return "image/jpeg"
        elif image_data[:8] == b'\x89PNG\r\n\x1a\n':
            return "image/png"
        elif image_data[:4] == b'RIFF' and image_data[8:12] == b'WEBP':
            return "image/webp"
        else:
            return "image/jpeg"

    def _extract_text_response(self, response) -> str:
        """Extract text content from API response."""
        if not response.content:
            return ""

        text_blocks = [
            block.text
            for block in response.content
            if hasattr(block, 'text')
        ]

        return "\n".join(text_blocks)
