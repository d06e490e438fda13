"""Translation backend implementations."""

from typing import Optional

from subtrans.core.exceptions import ConfigurationError
from ..base import TranslationBackend
from .openai_backend import OpenAIBackend
from .anthropic_backend import AnthropicBackend
from .deepl_backend import DeepLBackend

# OpenAI-compatible services and their default endpoints
OPENAI_COMPATIBLE = {
    "openai": None,
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai/",
    "deepseek": "https://api.deepseek.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "xai": "https://api.x.ai/v1",
    "mistral": "https://api.mistral.ai/v1",
}

DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "gemini": "gemini-2.0-flash",
    "deepseek": "deepseek-chat",
    "openrouter": "openai/gpt-4o-mini",
    "xai": "grok-2-latest",
    "mistral": "mistral-small-latest",
    "anthropic": "claude-3-5-haiku-latest",
    "deepl": "quality_optimized",
}


def create_backend(
    name: str,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    max_output_tokens: Optional[int] = None
) -> TranslationBackend:
    """
    Instantiate a backend by provider name.

    Unknown names are accepted as OpenAI-compatible endpoints when a
    ``base_url`` is given.
    """
    key = name.lower()
    if key == "anthropic":
        return AnthropicBackend(
            api_key=api_key,
            model=model or DEFAULT_MODELS[key],
            base_url=base_url,
            max_output_tokens=max_output_tokens,
        )
    if key == "deepl":
        return DeepLBackend(api_key=api_key, model=model or DEFAULT_MODELS[key], base_url=base_url)
    if key in OPENAI_COMPATIBLE or base_url:
        return OpenAIBackend(
            api_key=api_key,
            model=model or DEFAULT_MODELS.get(key, "gpt-4o-mini"),
            base_url=base_url or OPENAI_COMPATIBLE.get(key),
            max_output_tokens=max_output_tokens,
            provider=key,
        )
    raise ConfigurationError(
        f"Unknown translation provider: {name}",
        config_key="providers.name",
        invalid_value=name,
        valid_values=sorted(set(OPENAI_COMPATIBLE) | {"anthropic", "deepl"}),
    )


__all__ = [
    'OpenAIBackend',
    'AnthropicBackend',
    'DeepLBackend',
    'create_backend',
]
