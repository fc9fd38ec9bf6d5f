import base64

import httpx

from ai.providers.base import AIProvider, ProviderError, detect_media_type


class AnthropicProvider(AIProvider):
    """Anthropic / Claude AI provider."""

    name = "anthropic"
    BASE_URL = "https://api.anthropic.com/v1/messages"
    DEFAULT_CLASSIFIER_MODEL = "claude-haiku-4-5-20251001"
    DEFAULT_VISION_MODEL = "claude-sonnet-4-20250514"

    def __init__(
        self,
        api_key: str,
        classifier_model: str | None = None,
        vision_model: str | None = None,
    ):
        super().__init__(api_key, classifier_model, vision_model)
        self._headers = {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }

    async def chat(
        self,
        messages: list[dict],
        model: str,
        system: str = "",
        max_tokens: int = 1024,
    ) -> dict:
        payload: dict = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": messages,
        }
        if system:
            payload["system"] = system
        return await self._post(payload)

    async def _post(self, payload: dict) -> dict:
        async with httpx.AsyncClient(timeout=120) as client:
            resp = await client.post(
                self.BASE_URL,
                headers=self._headers,
                json=payload,
            )
            if resp.status_code != 200:
                raise ProviderError(
                    f"Anthropic API error: {resp.text}",
                    status_code=resp.status_code,
                )
            data = resp.json()

        content = ""
        for block in data.get("content", []):
            if block.get("type") == "text":
                content += block["text"]

        usage = data.get("usage", {})
        return {
            "content": content,
            "tokens_in": usage.get("input_tokens", 0),
            "tokens_out": usage.get("output_tokens", 0),
            "model": data.get("model", payload["model"]),
        }

    async def chat_with_vision(
        self,
        messages: list[dict],
        image_bytes: bytes,
        model: str,
        system: str = "",
        max_tokens: int = 2048,
    ) -> dict:
        image_block = {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": detect_media_type(image_bytes),
                "data": base64.b64encode(image_bytes).decode("utf-8"),
            },
        }

        vision_messages = []
        for msg in messages:
            text_content = msg.get("content", "")
            if msg["role"] == "user" and isinstance(text_content, str):
                vision_messages.append({
                    "role": "user",
                    "content": [image_block, {"type": "text", "text": text_content}],
                })
            else:
                vision_messages.append(msg)

        payload: dict = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": vision_messages,
        }
        if system:
            payload["system"] = system
        return await self._post(payload)
