from abc import ABC, abstractmethod


class ProviderError(Exception):
    """Non-2xx response or unusable payload from an AI provider."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def detect_media_type(image_bytes: bytes) -> str:
    if image_bytes[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if image_bytes[:4] == b"RIFF":
        return "image/webp"
    return "image/png"


class AIProvider(ABC):
    """Abstract base class for all AI providers."""

    name = "provider"
    DEFAULT_CLASSIFIER_MODEL = ""
    DEFAULT_VISION_MODEL = ""

    def __init__(
        self,
        api_key: str,
        classifier_model: str | None = None,
        vision_model: str | None = None,
    ):
        self.api_key = api_key
        self._classifier_model = classifier_model
        self._vision_model = vision_model

    @abstractmethod
    async def chat(
        self,
        messages: list[dict],
        model: str,
        system: str = "",
        max_tokens: int = 1024,
    ) -> dict:
        """Send a chat request to the provider.

        Args:
            messages: List of message dicts with role and content.
            model: Model identifier to use.
            system: Optional system prompt.
            max_tokens: Upper bound on generated tokens.

        Returns:
            dict with content, tokens_in, tokens_out, model.
        """
        ...

    @abstractmethod
    async def chat_with_vision(
        self,
        messages: list[dict],
        image_bytes: bytes,
        model: str,
        system: str = "",
        max_tokens: int = 2048,
    ) -> dict:
        """Send a chat request that includes an image.

        The image is attached to every user message with plain-text content.
        """
        ...

    def get_classifier_model(self) -> str:
        return self._classifier_model or self.DEFAULT_CLASSIFIER_MODEL

    def get_vision_model(self) -> str:
        return self._vision_model or self.DEFAULT_VISION_MODEL
