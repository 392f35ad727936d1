from __future__ import annotations

from typing import Iterator, Optional

from fastapi import Header, HTTPException, Request
from sqlmodel import Session

from meetai.config import Settings
from meetai.services.llm.base import LLMProvider
from meetai.services.pipeline import PipelineOrchestrator
from meetai.services.video_provider import StreamVideoClient


def get_session(request: Request) -> Iterator[Session]:
    with Session(request.app.state.engine) as session:
        yield session


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


def get_llm(request: Request) -> LLMProvider:
    return request.app.state.llm_factory()


def get_video_client(request: Request) -> StreamVideoClient:
    settings: Settings = request.app.state.settings
    return StreamVideoClient(settings.stream_api_key, settings.webhook_secret)


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    # Identity is established upstream by the auth provider
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id
