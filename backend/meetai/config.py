from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional
from pydantic import Field
from pydantic_settings import BaseSettings
import os


class Settings(BaseSettings):
    app_name: str = "Meet.ai"

    # "production" enforces webhook signature verification
    environment: Literal["development", "production"] = "development"

    data_dir: Path = Field(default_factory=lambda: Path(os.getenv("MEETAI_HOME", ".meetai")) / "data")
    logs_dir: Path = Field(default_factory=lambda: Path(os.getenv("MEETAI_HOME", ".meetai")) / "logs")

    # Falls back to a SQLite file under data_dir
    database_url: Optional[str] = None

    # Video provider credentials; the secret signs webhooks and user tokens
    stream_api_key: str = ""
    webhook_secret: str = ""
    token_ttl_seconds: int = 3600

    # LLM backend selection
    llm_backend: Literal["openai", "llama_cpp"] = "openai"
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    llm_model: str = "gpt-4o-mini"
    llm_model_path: Optional[str] = None
    llm_timeout_seconds: float = 120.0

    # Background pipeline policy
    pipeline_max_attempts: int = 3
    pipeline_backoff_seconds: float = 2.0
    pipeline_workers: int = 2
    pipeline_poll_seconds: float = 5.0

    # Context budgets (characters)
    summary_chunk_chars: int = 8000
    chat_transcript_chars: int = 12000
    chat_history_turns: int = 10

    transcript_fetch_timeout: float = 30.0

    class Config:
        env_prefix = "MEETAI_"
        case_sensitive = False

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir / 'meetai.db'}"

    def ensure_dirs(self) -> None:
        for d in [self.data_dir, self.logs_dir]:
            d.mkdir(parents=True, exist_ok=True)
