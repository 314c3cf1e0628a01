"""
Anthropic Messages API provider.

The system prompt goes in the top-level ``system`` parameter; the reply is
the concatenation of its text blocks.
"""

from typing import Optional

from anthropic import AsyncAnthropic
from anthropic import AuthenticationError as AnthropicAuthError
from anthropic import RateLimitError as AnthropicRateLimitError

from .base import BaseLLMProvider

DEFAULT_MODEL = "claude-sonnet-4-20250514"


class AnthropicProvider(BaseLLMProvider):
    name = "anthropic"

    def __init__(self, api_key: str, model: Optional[str] = None):
        super().__init__(api_key, model or DEFAULT_MODEL)
        self.client = AsyncAnthropic(api_key=api_key)

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 2048,
    ) -> str:
        request = {
            "model": self.model_name,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            request["system"] = system_prompt
        try:
            response = await self.client.messages.create(**request)
        except Exception as e:
            raise self._wrap(e, AnthropicRateLimitError, AnthropicAuthError) from e
        return "".join(block.text for block in response.content if getattr(block, "type", None) == "text")
