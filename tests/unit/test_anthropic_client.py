"""
Unit tests for the Claude vision client.

The SDK call is replaced with a coroutine, so no request leaves the process.
"""

import asyncio
import base64
from types import SimpleNamespace

import anthropic
import httpx
import pytest

from kala_kaushal.infrastructure.anthropic.client import (
    AnthropicClientError,
    AnthropicConfig,
    AnthropicVisionClient,
    RateLimitExceeded,
)

JPEG = b"\xff\xd8\xff\xe0frame"
PNG = b"\x89PNG\r\n\x1a\nframe"

MESSAGES_URL = "https://api.anthropic.com/v1/messages"


@pytest.fixture
def client() -> AnthropicVisionClient:
    return AnthropicVisionClient(AnthropicConfig(api_key="test-key"))


def reply_with(*texts):
    calls = []

    async def create(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=t) for t in texts],
            stop_reason="end_turn",
        )

    return create, calls


def raise_error(error: Exception):
    async def create(**kwargs):
        raise error

    return create


class TestAnthropicConfig:
    def test_requires_api_key(self):
        with pytest.raises(ValueError, match="API key"):
            AnthropicConfig(api_key="")

    def test_temperature_range(self):
        with pytest.raises(ValueError):
            AnthropicConfig(api_key="k", temperature=1.5)


class TestAnthropicVisionClient:
    def test_sends_images_then_prompt(self, client, monkeypatch):
        create, calls = reply_with('{"isValid": true}')
        monkeypatch.setattr(client._client.messages, "create", create)

        text = asyncio.run(client.analyze_images([JPEG, PNG], "system", "user prompt"))

        assert text == '{"isValid": true}'
        request = calls[0]
        assert request["system"] == "system"
        assert request["temperature"] == 0.2
        content = request["messages"][0]["content"]
        assert [block["type"] for block in content] == ["image", "image", "text"]
        assert content[0]["source"]["media_type"] == "image/jpeg"
        assert content[1]["source"]["media_type"] == "image/png"
        assert base64.b64decode(content[0]["source"]["data"]) == JPEG
        assert content[2]["text"] == "user prompt"

    def test_joins_text_blocks(self, client, monkeypatch):
        create, _ = reply_with("part one", "part two")
        monkeypatch.setattr(client._client.messages, "create", create)

        assert asyncio.run(client.analyze_images([JPEG], "s", "u")) == "part one\npart two"

    def test_requires_images(self, client):
        with pytest.raises(ValueError):
            asyncio.run(client.analyze_images([], "s", "u"))

    def test_rate_limit_is_translated(self, client, monkeypatch):
        request = httpx.Request("POST", MESSAGES_URL)
        error = anthropic.RateLimitError(
            "rate limited",
            response=httpx.Response(429, request=request),
            body=None,
        )
        monkeypatch.setattr(client._client.messages, "create", raise_error(error))

        with pytest.raises(RateLimitExceeded):
            asyncio.run(client.analyze_images([JPEG], "s", "u"))

    def test_status_error_is_translated(self, client, monkeypatch):
        request = httpx.Request("POST", MESSAGES_URL)
        error = anthropic.InternalServerError(
            "overloaded",
            response=httpx.Response(529, request=request),
            body=None,
        )
        monkeypatch.setattr(client._client.messages, "create", raise_error(error))

        with pytest.raises(AnthropicClientError, match="API error"):
            asyncio.run(client.analyze_images([JPEG], "s", "u"))

    def test_connection_error_is_translated(self, client, monkeypatch):
        error = anthropic.APIConnectionError(request=httpx.Request("POST", MESSAGES_URL))
        monkeypatch.setattr(client._client.messages, "create", raise_error(error))

        with pytest.raises(AnthropicClientError, match="Could not reach"):
            asyncio.run(client.analyze_images([JPEG], "s", "u"))
