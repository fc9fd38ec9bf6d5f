from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ai.providers import AnthropicProvider, GoogleProvider, ProviderError  # noqa: E402
from ai.providers.base import detect_media_type  # noqa: E402

JPEG = b"\xff\xd8\xff\xe0fake-jpeg-bytes"


def _mock_httpx(monkeypatch, handler):
    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        httpx,
        "AsyncClient",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )


def test_detect_media_type():
    assert detect_media_type(JPEG) == "image/jpeg"
    assert detect_media_type(b"RIFF0000WEBP") == "image/webp"
    assert detect_media_type(b"\x89PNG\r\n\x1a\n") == "image/png"


def test_anthropic_chat_joins_text_blocks(monkeypatch):
    captured = {}

    def handler(request):
        captured["body"] = json.loads(request.content)
        captured["key"] = request.headers["x-api-key"]
        return httpx.Response(
            200,
            json={
                "content": [{"type": "text", "text": '{"event_type": '}, {"type": "text", "text": '"food"}'}],
                "usage": {"input_tokens": 120, "output_tokens": 8},
                "model": "claude-haiku-4-5-20251001",
            },
        )

    _mock_httpx(monkeypatch, handler)
    provider = AnthropicProvider(api_key="sk-test")

    result = asyncio.run(
        provider.chat([{"role": "user", "content": "apple"}], provider.get_classifier_model(), system="parse it")
    )

    assert result["content"] == '{"event_type": "food"}'
    assert result["tokens_in"] == 120
    assert captured["key"] == "sk-test"
    assert captured["body"]["system"] == "parse it"
    assert captured["body"]["max_tokens"] == 1024


def test_anthropic_vision_attaches_image_to_user_message(monkeypatch):
    captured = {}

    def handler(request):
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"content": [{"type": "text", "text": "{}"}], "usage": {}})

    _mock_httpx(monkeypatch, handler)
    provider = AnthropicProvider(api_key="sk-test")

    asyncio.run(provider.chat_with_vision([{"role": "user", "content": "what is this"}], JPEG, "claude-sonnet-4-20250514"))

    blocks = captured["body"]["messages"][0]["content"]
    assert blocks[0]["type"] == "image"
    assert blocks[0]["source"]["media_type"] == "image/jpeg"
    assert blocks[1] == {"type": "text", "text": "what is this"}


def test_anthropic_error_status_raises_provider_error(monkeypatch):
    _mock_httpx(monkeypatch, lambda request: httpx.Response(529, text="overloaded"))
    provider = AnthropicProvider(api_key="sk-test")

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(provider.chat([{"role": "user", "content": "apple"}], "claude-haiku-4-5-20251001"))

    assert excinfo.value.status_code == 529


def test_google_chat_maps_roles_and_reads_candidates(monkeypatch):
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": '{"event_type": "sauna"}'}]}}],
                "usageMetadata": {"promptTokenCount": 50, "candidatesTokenCount": 6},
            },
        )

    _mock_httpx(monkeypatch, handler)
    provider = GoogleProvider(api_key="g-test")

    result = asyncio.run(
        provider.chat(
            [{"role": "user", "content": "20 min sauna"}, {"role": "assistant", "content": "ok"}],
            "gemini-2.0-flash",
            system="parse it",
        )
    )

    assert result["content"] == '{"event_type": "sauna"}'
    assert result["tokens_out"] == 6
    assert "gemini-2.0-flash:generateContent" in captured["url"]
    assert [c["role"] for c in captured["body"]["contents"]] == ["user", "model"]
    assert captured["body"]["system_instruction"] == {"parts": [{"text": "parse it"}]}


def test_google_vision_puts_image_before_text(monkeypatch):
    captured = {}

    def handler(request):
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"candidates": []})

    _mock_httpx(monkeypatch, handler)
    provider = GoogleProvider(api_key="g-test")

    result = asyncio.run(provider.chat_with_vision([{"role": "user", "content": "label?"}], JPEG, "gemini-2.5-flash"))

    parts = captured["body"]["contents"][0]["parts"]
    assert parts[0]["inline_data"]["mime_type"] == "image/jpeg"
    assert parts[1] == {"text": "label?"}
    assert result["content"] == ""
