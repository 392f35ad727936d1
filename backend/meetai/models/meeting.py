from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from sqlmodel import SQLModel, Field

from meetai.models.base import new_id, utcnow


class MeetingStatus(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Meeting(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True)
    name: str = Field(default="Untitled Meeting")
    agent_id: Optional[str] = Field(default=None, index=True, foreign_key="agent.id")
    call_id: Optional[str] = Field(default=None, index=True, unique=True)
    status: str = Field(default=MeetingStatus.UPCOMING.value, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    recording_url: Optional[str] = None
    duration_seconds: Optional[float] = None
    participants_count: Optional[int] = None
    transcript: Optional[str] = None  # JSON TranscriptArtifact
    summary: Optional[str] = None  # JSON SummaryArtifact
    updated_at: datetime = Field(default_factory=utcnow)
