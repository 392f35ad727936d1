from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends

from meetai.config import Settings
from meetai.deps import get_current_user_id, get_settings, get_video_client
from meetai.services.video_provider import StreamVideoClient


router = APIRouter(prefix="/stream", tags=["stream"])


@router.get("/token")
def get_stream_token(
    user_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(get_settings),
    video: StreamVideoClient = Depends(get_video_client),
) -> Dict[str, str]:
    return {
        "token": video.create_token(user_id, settings.token_ttl_seconds),
        "userId": user_id,
        "apiKey": settings.stream_api_key,
    }
