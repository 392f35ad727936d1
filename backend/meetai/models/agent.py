from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from sqlmodel import SQLModel, Field

from meetai.models.base import new_id, utcnow


class AgentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class Agent(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True)
    name: str
    instructions: str = Field(default="")
    description: Optional[str] = None
    status: str = Field(default=AgentStatus.ACTIVE.value)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
