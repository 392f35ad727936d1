from __future__ import annotations

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field

from meetai.models.base import utcnow


class ChatMessage(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    meeting_id: str = Field(index=True, foreign_key="meeting.id")
    user_id: Optional[str] = None  # author, set for user messages
    role: str  # user|assistant
    content: str
    created_at: datetime = Field(default_factory=utcnow, index=True)
