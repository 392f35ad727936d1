from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlmodel import Session

from meetai.deps import get_current_user_id, get_session
from meetai.models.meeting import MeetingStatus
from meetai.repositories.agents import AgentsRepository
from meetai.repositories.meetings import MeetingsRepository


router = APIRouter(prefix="/dashboard", tags=["dashboard"])

# Estimated manual note-taking time per meeting minute
MINUTES_SAVED_PER_MEETING_MINUTE = 3


def hours_saved(durations) -> float:
    minutes = 0.0
    for started_at, ended_at in durations:
        if started_at and ended_at:
            minutes += (ended_at - started_at).total_seconds() / 60
    return round(minutes * MINUTES_SAVED_PER_MEETING_MINUTE / 60, 1)


@router.get("/overview")
def get_overview(
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    meetings = MeetingsRepository(session)
    by_status = meetings.count_by_status(user_id)
    agents_by_status = AgentsRepository(session).count_by_status(user_id)
    return {
        "meetings": {
            "total": sum(by_status.values()),
            **{s.value: by_status.get(s.value, 0) for s in MeetingStatus},
        },
        "agents": {
            "total": sum(agents_by_status.values()),
            "active": agents_by_status.get("active", 0),
        },
        "hoursSaved": hours_saved(meetings.completed_durations(user_id)),
    }
