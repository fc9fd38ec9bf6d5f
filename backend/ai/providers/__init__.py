from ai.providers.base import AIProvider, ProviderError
from ai.providers.anthropic import AnthropicProvider
from ai.providers.google import GoogleProvider

PROVIDERS: dict[str, type[AIProvider]] = {
    "anthropic": AnthropicProvider,
    "google": GoogleProvider,
}


def _looks_like_provider_model(provider_name: str, model_id: str | None) -> bool:
    if not model_id:
        return False
    m = model_id.strip().lower()
    if not m:
        return False
    if provider_name == "anthropic":
        return "claude" in m
    if provider_name == "google":
        return "gemini" in m
    return True


def get_provider(
    provider_name: str,
    api_key: str,
    classifier_model: str | None = None,
    vision_model: str | None = None,
) -> AIProvider:
    cls = PROVIDERS.get((provider_name or "").strip().lower())
    if not cls:
        raise ValueError(f"Unknown provider: {provider_name}")

    name = cls.name
    safe_classifier = classifier_model if _looks_like_provider_model(name, classifier_model) else None
    safe_vision = vision_model if _looks_like_provider_model(name, vision_model) else None
    return cls(api_key=api_key, classifier_model=safe_classifier, vision_model=safe_vision)


__all__ = ["AIProvider", "ProviderError", "AnthropicProvider", "GoogleProvider", "get_provider"]
