import base64

import httpx

from ai.providers.base import AIProvider, ProviderError, detect_media_type


class GoogleProvider(AIProvider):
    """Google Gemini AI provider."""

    name = "google"
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
    DEFAULT_CLASSIFIER_MODEL = "gemini-2.0-flash"
    DEFAULT_VISION_MODEL = "gemini-2.5-flash"

    def _endpoint(self, model: str) -> str:
        return f"{self.BASE_URL}/{model}:generateContent?key={self.api_key}"

    @staticmethod
    def _convert_messages(messages: list[dict], image_part: dict | None = None) -> list[dict]:
        """Convert chat-style messages to Gemini contents."""
        contents = []
        for msg in messages:
            # Gemini uses "user" and "model" roles
            role = "model" if msg["role"] == "assistant" else msg["role"]
            text = msg.get("content", "")
            if isinstance(text, str):
                parts = [{"text": text}]
                if image_part is not None and role == "user":
                    parts.insert(0, image_part)
            else:
                parts = text if isinstance(text, list) else [{"text": str(text)}]
            contents.append({"role": role, "parts": parts})
        return contents

    async def chat(
        self,
        messages: list[dict],
        model: str,
        system: str = "",
        max_tokens: int = 1024,
    ) -> dict:
        payload: dict = {
            "contents": self._convert_messages(messages),
            "generationConfig": {"maxOutputTokens": max_tokens},
        }
        if system:
            payload["system_instruction"] = {"parts": [{"text": system}]}
        return await self._post(payload, model)

    async def _post(self, payload: dict, model: str) -> dict:
        async with httpx.AsyncClient(timeout=120) as client:
            resp = await client.post(
                self._endpoint(model),
                headers={"Content-Type": "application/json"},
                json=payload,
            )
            if resp.status_code != 200:
                raise ProviderError(
                    f"Google API error: {resp.text}",
                    status_code=resp.status_code,
                )
            data = resp.json()

        content = ""
        candidates = data.get("candidates", [])
        if candidates:
            for part in candidates[0].get("content", {}).get("parts", []):
                content += part.get("text", "")

        usage = data.get("usageMetadata", {})
        return {
            "content": content,
            "tokens_in": usage.get("promptTokenCount", 0),
            "tokens_out": usage.get("candidatesTokenCount", 0),
            "model": model,
        }

    async def chat_with_vision(
        self,
        messages: list[dict],
        image_bytes: bytes,
        model: str,
        system: str = "",
        max_tokens: int = 2048,
    ) -> dict:
        image_part = {
            "inline_data": {
                "mime_type": detect_media_type(image_bytes),
                "data": base64.b64encode(image_bytes).decode("utf-8"),
            }
        }
        payload: dict = {
            "contents": self._convert_messages(messages, image_part=image_part),
            "generationConfig": {"maxOutputTokens": max_tokens},
        }
        if system:
            payload["system_instruction"] = {"parts": [{"text": system}]}
        return await self._post(payload, model)
