from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import openai

from meetai.services.llm.base import ChatTurn, LLMProvider, LLMProviderError

logger = logging.getLogger("meetai.llm.openai")


class OpenAIProvider(LLMProvider):
    """Hosted chat completions through the official OpenAI SDK."""

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        timeout: float = 120.0,
    ) -> None:
        try:
            self.client = openai.OpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        except openai.OpenAIError as exc:
            # Raised when no API key is configured
            raise LLMProviderError("OpenAI client is not configured") from exc
        self.model = model

    def complete(
        self,
        messages: List[ChatTurn],
        *,
        json_mode: bool = False,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        kwargs: Dict[str, Any] = {"model": self.model, "messages": messages}
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = self.client.chat.completions.create(**kwargs)
        except openai.OpenAIError as exc:
            logger.warning("OpenAI request failed: %s", exc)
            raise LLMProviderError("Failed to reach OpenAI") from exc

        if not response.choices:
            raise LLMProviderError("OpenAI response missing choices")
        return response.choices[0].message.content or ""
