from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional
import os

from meetai.services.llm.base import ChatTurn, LLMProvider, LLMProviderError

try:
    from llama_cpp import Llama, LlamaGrammar  # type: ignore
except Exception:  # pragma: no cover
    Llama = None  # type: ignore
    LlamaGrammar = None  # type: ignore


_JSON_GBNF = r"""
root   ::= object
value  ::= object | array | string | number | ("true" | "false" | "null") ws

object ::=
  "{" ws (
            string ":" ws value
    ("," ws string ":" ws value)*
  )? "}" ws

array  ::=
  "[" ws (
            value
    ("," ws value)*
  )? "]" ws

string ::=
  "\"" (
    [^"\\] |
    "\\" (["\\/bfnrt] | "u" [0-9a-fA-F] [0-9a-fA-F] [0-9a-fA-F] [0-9a-fA-F])
  )* "\"" ws

number ::= ("-"? ([0-9] | [1-9] [0-9]*)) ("." [0-9]+)? ([eE] [-+]? [0-9]+)? ws

ws ::= ([ \t\n] ws)?
"""


class LlamaCppProvider(LLMProvider):
    """Local GGUF model through llama-cpp; JSON mode is enforced with a grammar."""

    name = "llama_cpp"

    def __init__(self, model_path: str, n_ctx: int = 32768, n_gpu_layers: int = 0) -> None:
        if Llama is None:
            raise RuntimeError(
                "llama-cpp-python is not available. Install the 'local' extra to use the local backend."
            )
        path = Path(os.path.expandvars(model_path)).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"LLM model file not found: {path}")
        self._llm = Llama(model_path=str(path), n_ctx=n_ctx, n_gpu_layers=n_gpu_layers, verbose=False)
        # llama.cpp contexts are not safe for concurrent use
        self._lock = threading.Lock()
        self._grammar = None
        if LlamaGrammar is not None:
            try:
                self._grammar = LlamaGrammar.from_string(_JSON_GBNF)
            except Exception:
                self._grammar = None

    def complete(
        self,
        messages: List[ChatTurn],
        *,
        json_mode: bool = False,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        kwargs: Dict[str, Any] = {
            "messages": messages,
            "temperature": 0.2 if temperature is None else temperature,
            "max_tokens": max_tokens or 4096,
        }
        if json_mode:
            if self._grammar is not None:
                kwargs["grammar"] = self._grammar
            else:
                kwargs["response_format"] = {"type": "json_object"}
        try:
            with self._lock:
                resp = self._llm.create_chat_completion(**kwargs)
            return str(resp["choices"][0]["message"]["content"] or "")
        except Exception as exc:
            raise LLMProviderError(f"Local model failed: {exc}") from exc
