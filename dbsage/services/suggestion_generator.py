"""
Suggestion Generator
====================

Turns a SuggestionContext into a prompt, sends it to the configured LLM
provider, and validates the reply as a strict JSON array of suggestions.

Anything other than a valid array (provider failure, prose, malformed
items) is a GenerationError. Nothing is invented to fill the gap.
"""

import json
import logging
import re
from typing import List, Optional

from pydantic import TypeAdapter, ValidationError

from dbsage.config import settings
from dbsage.core.errors import GenerationError
from dbsage.models.schemas import GeneratedSuggestion, SuggestionContext
from dbsage.services.llm_providers import BaseLLMProvider, LLMProviderError, get_llm_provider

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a database performance optimization expert. Provide specific, "
    "actionable suggestions based on the provided metrics. Reply with a JSON "
    "array only, no prose and no markdown."
)

QUERY_PREVIEW_CHARS = 200

_FENCE = re.compile(r"^```[a-zA-Z]*\s*\n(.*?)\n?```\s*$", re.DOTALL)

_suggestion_list = TypeAdapter(List[GeneratedSuggestion])


def build_prompt(context: SuggestionContext) -> str:
    """Render the telemetry context as the user prompt."""
    slow = "\n".join(
        f"- [queryId={q.query_id}] Query: {q.query_text[:QUERY_PREVIEW_CHARS]}... "
        f"Avg Time: {q.avg_execution_time_ms:.2f}ms, Executions: {q.execution_count}"
        for q in context.slow_queries
    ) or "- none"
    indexes = "\n".join(
        f"- Table: {i.table_name}, Index: {i.index_name}, Scans: {i.scans}"
        for i in context.index_usage
    ) or "- none"
    tables = "\n".join(
        f"- Table: {t.table_name}, Accesses: {t.access_count}"
        for t in context.table_access
    ) or "- none"

    return f"""Analyze the following {context.db_type} database performance metrics and provide optimization suggestions:

Slow Queries:
{slow}

Index Usage:
{indexes}

Table Access Patterns:
{tables}

Provide specific, actionable optimization suggestions in JSON format:
[
  {{
    "suggestionType": "INDEX_OPTIMIZATION" | "QUERY_OPTIMIZATION" | "SCHEMA_OPTIMIZATION" | "CONNECTION_OPTIMIZATION",
    "priority": "HIGH" | "MEDIUM" | "LOW",
    "suggestionText": "Detailed suggestion text here",
    "queryId": "optional queryId from the list above if related to a specific query"
  }}
]"""


def strip_code_fence(text: str) -> str:
    text = text.strip()
    match = _FENCE.match(text)
    return match.group(1).strip() if match else text


def parse_suggestions(raw: str) -> List[GeneratedSuggestion]:
    """Validate a generator reply. Raises GenerationError on anything but a valid array."""
    body = strip_code_fence(raw or "")
    if not body:
        raise GenerationError(detail="generator returned an empty reply")
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise GenerationError(
            detail=f"generator reply is not JSON: {e.msg}",
            context={"reply_preview": body[:200]},
        )
    if not isinstance(payload, list):
        raise GenerationError(
            detail=f"generator reply is a JSON {type(payload).__name__}, expected an array",
        )
    try:
        return _suggestion_list.validate_python(payload)
    except ValidationError as e:
        raise GenerationError(
            detail=f"generator reply failed validation ({e.error_count()} errors)",
            context={"errors": e.errors(include_url=False)[:5]},
        )


class SuggestionGenerator:
    """Thin adapter between the suggestion pipeline and an LLM provider."""

    def __init__(self, provider: Optional[BaseLLMProvider] = None):
        self._provider = provider

    @property
    def provider(self) -> BaseLLMProvider:
        if self._provider is None:
            self._provider = get_llm_provider()
        return self._provider

    async def generate(self, context: SuggestionContext) -> List[GeneratedSuggestion]:
        prompt = build_prompt(context)
        try:
            raw = await self.provider.generate(
                prompt,
                system_prompt=SYSTEM_PROMPT,
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
            )
        except LLMProviderError as e:
            raise GenerationError(
                detail=e.message,
                context={"provider": e.provider, "error_type": type(e).__name__},
            ) from e

        suggestions = parse_suggestions(raw)
        logger.info("Generator returned %d suggestions", len(suggestions))
        return suggestions


_generator: Optional[SuggestionGenerator] = None


def get_suggestion_generator() -> SuggestionGenerator:
    global _generator
    if _generator is None:
        _generator = SuggestionGenerator()
    return _generator
