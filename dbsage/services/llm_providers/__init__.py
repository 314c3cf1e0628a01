from typing import Optional

from dbsage.config import settings
from dbsage.core.errors import ConfigurationError

from .base import AuthenticationError, BaseLLMProvider, LLMProviderError, RateLimitError

_API_KEY_SETTINGS = {
    "openai": "openai_api_key",
    "anthropic": "anthropic_api_key",
}


def get_llm_provider(provider_name: Optional[str] = None) -> BaseLLMProvider:
    """Build the provider named by provider_name or DBSAGE_LLM_PROVIDER.

    Raises:
        ConfigurationError: unknown provider, or its API key is not set.
    """
    provider_type = (provider_name or settings.llm_provider).lower()
    if provider_type not in _API_KEY_SETTINGS:
        raise ConfigurationError(detail=f"unsupported LLM provider {provider_type!r}; use openai or anthropic")

    key_setting = _API_KEY_SETTINGS[provider_type]
    api_key = getattr(settings, key_setting)
    if not api_key:
        raise ConfigurationError(
            detail=f"{provider_type} API key not set (DBSAGE_{key_setting.upper()})",
            context={"provider": provider_type},
        )

    if provider_type == "openai":
        from .openai import OpenAIProvider

        return OpenAIProvider(api_key, model=settings.llm_model)

    from .anthropic import AnthropicProvider

    return AnthropicProvider(api_key, model=settings.llm_model)


__all__ = [
    "AuthenticationError",
    "BaseLLMProvider",
    "LLMProviderError",
    "RateLimitError",
    "get_llm_provider",
]
