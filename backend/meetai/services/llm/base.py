from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from meetai.errors import LLMProviderError

# {"role": "system"|"user"|"assistant", "content": str}
ChatTurn = Dict[str, str]

__all__ = ["ChatTurn", "LLMProvider", "LLMProviderError"]


class LLMProvider(ABC):
    """Chat-completion backend used by summarization and transcript chat."""

    name: str = "llm"

    @abstractmethod
    def complete(
        self,
        messages: List[ChatTurn],
        *,
        json_mode: bool = False,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Return the assistant reply text; raise LLMProviderError on failure."""
        raise NotImplementedError
