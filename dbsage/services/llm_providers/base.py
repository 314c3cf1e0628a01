"""
LLM Provider Base Class
=======================

The one call the suggestion generator needs from a text-generation service,
and the exceptions every provider maps its SDK errors onto.
"""

from abc import ABC, abstractmethod
from typing import Optional


class LLMProviderError(Exception):
    """Base exception for LLM provider errors."""

    def __init__(self, message: str, provider: str = "unknown", original_error: Exception = None):
        self.message = message
        self.provider = provider
        self.original_error = original_error
        super().__init__(self.message)


class RateLimitError(LLMProviderError):
    """The provider throttled the request."""


class AuthenticationError(LLMProviderError):
    """The provider rejected the configured API key."""


class BaseLLMProvider(ABC):
    """A provider turns one prompt into one complete reply string."""

    name = "unknown"

    def __init__(self, api_key: str, model: str):
        self.api_key = api_key
        self.model_name = model

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 2048,
    ) -> str:
        """
        Return the full reply text for prompt.

        Raises:
            LLMProviderError: the call failed; subclasses say why.
        """

    def _wrap(self, error: Exception, sdk_rate_limit: type, sdk_auth: type) -> LLMProviderError:
        """Map an SDK exception onto the provider error hierarchy."""
        if isinstance(error, sdk_rate_limit):
            return RateLimitError(f"{self.name} rate limit exceeded", provider=self.name, original_error=error)
        if isinstance(error, sdk_auth):
            return AuthenticationError(f"{self.name} rejected the API key", provider=self.name, original_error=error)
        return LLMProviderError(f"{self.name} request failed: {error}", provider=self.name, original_error=error)
