"""Durable records of background pipeline jobs and their steps."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field

from meetai.models.base import new_id, utcnow


class PipelineJob(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True)  # event name, e.g. meeting/summarize
    meeting_id: Optional[str] = Field(default=None, index=True)
    payload_json: str = Field(default="{}")
    status: str = Field(default="pending", index=True)  # pending|running|completed|failed|abandoned
    attempts: int = Field(default=0)
    last_error: Optional[str] = None
    result_json: Optional[str] = None
    next_run_at: datetime = Field(default_factory=utcnow, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PipelineStep(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("job_id", "name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(index=True, foreign_key="pipelinejob.id")
    name: str
    status: str = Field(default="failed")  # completed|failed
    attempts: int = Field(default=0)
    last_error: Optional[str] = None
    output_json: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)
