from __future__ import annotations

from meetai.config import Settings
from meetai.services.llm.base import LLMProvider


def build_llm_provider(settings: Settings) -> LLMProvider:
    if settings.llm_backend == "llama_cpp":
        from meetai.services.llm.llama_cpp_provider import LlamaCppProvider

        if not settings.llm_model_path:
            raise RuntimeError("MEETAI_LLM_MODEL_PATH must point to a GGUF file for the local backend")
        return LlamaCppProvider(settings.llm_model_path)

    from meetai.services.llm.openai_provider import OpenAIProvider

    return OpenAIProvider(
        api_key=settings.openai_api_key,
        model=settings.llm_model,
        base_url=settings.openai_base_url,
        timeout=settings.llm_timeout_seconds,
    )
