"""Completion provider used for summarization and fact extraction."""

from __future__ import annotations

import json
from typing import Any, Protocol, runtime_checkable

from loguru import logger
from openai import AsyncOpenAI, OpenAIError

from .config import LLMConfig
from .exceptions import ExtractionParseError, LLMProviderError


@runtime_checkable
class CompletionProvider(Protocol):
    """Single-shot completion returning the raw response text."""

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        json_mode: bool = True,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str: ...


class OpenAICompletionProvider:
    """OpenAI chat completions, JSON mode by default."""

    def __init__(self, config: LLMConfig | None = None, client: AsyncOpenAI | None = None):
        self._config = config or LLMConfig()
        self._client = client or AsyncOpenAI(
            api_key=self._config.api_key,
            base_url=self._config.base_url,
            timeout=self._config.timeout,
        )
        logger.debug(
            f"OpenAI completion client ready "
            f"(base_url: {self._config.base_url}, model: {self._config.model})"
        )

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        json_mode: bool = True,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": model or self._config.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": (
                self._config.temperature if temperature is None else temperature
            ),
            "max_tokens": max_tokens or self._config.max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            raise LLMProviderError(f"Completion request failed: {e}") from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


def parse_json_response(raw: str) -> Any:
    """Parse an LLM JSON response, tolerating markdown code fences.

    Raises:
        ExtractionParseError: If the response is empty or not valid JSON
    """
    text = (raw or "").strip()
    if text.startswith("```"):
        first_newline = text.find("\n")
        if first_newline != -1:
            text = text[first_newline + 1:]
        if text.endswith("```"):
            text = text[:-3].strip()

    if not text:
        raise ExtractionParseError("Empty LLM response", raw=raw or "")

    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.debug(f"Raw response: {text[:500]}")
        raise ExtractionParseError(f"Invalid JSON in LLM response: {e}", raw=raw) from e
