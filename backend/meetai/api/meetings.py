from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional
import logging
import math

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlmodel import Session

from meetai.config import Settings
from meetai.deps import get_current_user_id, get_llm, get_orchestrator, get_session, get_settings, get_video_client
from meetai.errors import NotFoundError
from meetai.models.artifacts import load_summary, load_transcript
from meetai.models.chat_message import ChatMessage
from meetai.models.meeting import Meeting
from meetai.repositories.agents import AgentsRepository
from meetai.repositories.meetings import MeetingsRepository
from meetai.services.chat_service import TranscriptChatEngine
from meetai.services.llm.base import LLMProvider
from meetai.services.meeting_jobs import CALL_ENDED
from meetai.services.pipeline import PipelineOrchestrator
from meetai.services.state_machine import MeetingStateMachine
from meetai.services.video_provider import StreamVideoClient

logger = logging.getLogger("meetai.api")


router = APIRouter(prefix="/meetings", tags=["meetings"])

StatusFilter = Literal["all", "upcoming", "active", "processing", "completed", "cancelled"]


class CreateMeetingRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    agent_id: str = Field(alias="agentId")

    model_config = {"populate_by_name": True}


class UpdateMeetingRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    agent_id: Optional[str] = Field(default=None, alias="agentId")

    model_config = {"populate_by_name": True}


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=2000)


def _owned(session: Session, meeting_id: str, user_id: str) -> Meeting:
    meeting = MeetingsRepository(session).get_owned(meeting_id, user_id)
    if meeting is None:
        raise NotFoundError("Meeting", meeting_id)
    return meeting


def _require_agent(session: Session, agent_id: str, user_id: str) -> None:
    if AgentsRepository(session).get_owned(agent_id, user_id) is None:
        raise NotFoundError("Agent", agent_id)


def _duration_ms(meeting: Meeting) -> Optional[int]:
    if meeting.started_at and meeting.ended_at:
        return int((meeting.ended_at - meeting.started_at).total_seconds() * 1000)
    return None


def _with_agent(session: Session, meeting: Meeting) -> Dict[str, Any]:
    agent = AgentsRepository(session).get_owned(meeting.agent_id, meeting.user_id) if meeting.agent_id else None
    return {**meeting.model_dump(), "agent": agent, "duration": _duration_ms(meeting)}


@router.get("")
def list_meetings(
    search: str = "",
    status: StatusFilter = "all",
    agent_id: str = Query(default="all", alias="agentId"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100, alias="pageSize"),
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    repo = MeetingsRepository(session)
    total = repo.count(user_id, search=search, status=status, agent_id=agent_id)
    rows = repo.list(
        user_id,
        search=search,
        status=status,
        agent_id=agent_id,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return {
        "meetings": [_with_agent(session, m) for m in rows],
        "total": total,
        "page": page,
        "pageSize": page_size,
        "totalPages": math.ceil(total / page_size),
    }


@router.post("", status_code=201)
def create_meeting(
    body: CreateMeetingRequest,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
) -> Meeting:
    _require_agent(session, body.agent_id, user_id)
    meeting = Meeting(user_id=user_id, name=body.name, agent_id=body.agent_id)
    return MeetingsRepository(session).create(meeting)


@router.get("/{meeting_id}")
def get_meeting_detail(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    return _with_agent(session, _owned(session, meeting_id, user_id))


@router.put("/{meeting_id}")
def update_meeting(
    meeting_id: str,
    body: UpdateMeetingRequest,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
) -> Meeting:
    _owned(session, meeting_id, user_id)
    changes = body.model_dump(exclude_none=True)
    if "agent_id" in changes:
        _require_agent(session, changes["agent_id"], user_id)
    if not changes:
        return _owned(session, meeting_id, user_id)
    updated = MeetingsRepository(session).conditional_update(meeting_id, user_id=user_id, values=changes)
    if updated is None:
        raise NotFoundError("Meeting", meeting_id)
    return updated


@router.delete("/{meeting_id}")
def delete_meeting(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    deleted = MeetingStateMachine(session).delete(meeting_id, user_id)
    return {"success": True, "deletedMeeting": deleted}


@router.post("/{meeting_id}/start")
def start_meeting(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
) -> Meeting:
    return MeetingStateMachine(session).start(meeting_id, user_id)


@router.post("/{meeting_id}/complete")
def complete_meeting(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Meeting:
    meeting = MeetingStateMachine(session).complete(meeting_id, user_id)
    # Ingest is idempotent for meetings already in processing
    orchestrator.send(CALL_ENDED, {"meetingId": meeting.id, "callId": meeting.call_id})
    logger.info("Meeting %s completed by user, ingest queued", meeting.id)
    return meeting


@router.post("/{meeting_id}/cancel")
def cancel_meeting(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
) -> Meeting:
    return MeetingStateMachine(session).cancel(meeting_id, user_id)


@router.post("/{meeting_id}/call")
def ensure_call(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    video: StreamVideoClient = Depends(get_video_client),
) -> Dict[str, Any]:
    meeting = _owned(session, meeting_id, user_id)
    if not meeting.call_id:
        repo = MeetingsRepository(session)
        # Only the first caller assigns the call id
        updated = repo.conditional_update(
            meeting_id,
            user_id=user_id,
            statuses=["upcoming", "active"],
            values={"call_id": video.generate_call_id()},
        )
        meeting = repo.get(meeting_id) if updated is None else updated
        if meeting is None or not meeting.call_id:
            raise NotFoundError("Call", meeting_id)
    return {
        "callId": meeting.call_id,
        "token": video.create_token(user_id, settings.token_ttl_seconds),
        "apiKey": settings.stream_api_key,
    }


@router.get("/{meeting_id}/transcript")
def get_transcript(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    meeting = _owned(session, meeting_id, user_id)
    artifact = load_transcript(meeting.transcript)
    return {
        "transcript": artifact.model_dump(mode="json", by_alias=True) if artifact else None,
        "hasTranscript": artifact is not None,
    }


@router.get("/{meeting_id}/summary")
def get_summary(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    meeting = _owned(session, meeting_id, user_id)
    artifact = load_summary(meeting.summary)
    return {
        "summary": artifact.model_dump(mode="json", by_alias=True) if artifact else None,
        "hasSummary": artifact is not None,
    }


@router.get("/{meeting_id}/chat")
def get_chat_history(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> Dict[str, List[ChatMessage]]:
    return {"messages": TranscriptChatEngine(session, None, settings).history(meeting_id, user_id)}


@router.post("/{meeting_id}/chat")
def send_chat_message(
    meeting_id: str,
    body: ChatRequest,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    llm: LLMProvider = Depends(get_llm),
) -> Dict[str, Any]:
    reply = TranscriptChatEngine(session, llm, settings).send(meeting_id, user_id, body.message)
    return {"response": reply.content, "message": reply}


@router.get("/{meeting_id}/jobs")
def list_meeting_jobs(
    meeting_id: str,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    _owned(session, meeting_id, user_id)
    return {"jobs": orchestrator.list_jobs(meeting_id)}


@router.get("/{meeting_id}/jobs/{job_id}")
def get_meeting_job(
    meeting_id: str,
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    _owned(session, meeting_id, user_id)
    job = orchestrator.get_job(job_id)
    if job is None or job["meetingId"] != meeting_id:
        raise NotFoundError("Job", job_id)
    return job
