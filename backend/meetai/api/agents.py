from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlmodel import Session

from meetai.deps import get_current_user_id, get_session
from meetai.errors import NotFoundError
from meetai.models.agent import Agent
from meetai.repositories.agents import AgentsRepository
from meetai.repositories.meetings import MeetingsRepository


router = APIRouter(prefix="/agents", tags=["agents"])

AgentStatusLiteral = Literal["active", "inactive", "archived"]


class CreateAgentRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    instructions: str = Field(default="", max_length=4000)
    description: Optional[str] = Field(default=None, max_length=500)
    status: AgentStatusLiteral = "active"


class UpdateAgentRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    instructions: Optional[str] = Field(default=None, max_length=4000)
    description: Optional[str] = Field(default=None, max_length=500)
    status: Optional[AgentStatusLiteral] = None


def _owned(repo: AgentsRepository, agent_id: str, user_id: str) -> Agent:
    agent = repo.get_owned(agent_id, user_id)
    if agent is None:
        raise NotFoundError("Agent", agent_id)
    return agent


@router.get("")
def list_agents(
    status: Optional[AgentStatusLiteral] = None,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
) -> List[Agent]:
    return AgentsRepository(session).list_by_user(user_id, status=status)


@router.post("", status_code=201)
def create_agent(
    body: CreateAgentRequest,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
) -> Agent:
    agent = Agent(user_id=user_id, **body.model_dump())
    return AgentsRepository(session).create(agent)


@router.get("/{agent_id}")
def get_agent(
    agent_id: str,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    agent = _owned(AgentsRepository(session), agent_id, user_id)
    meeting_count = MeetingsRepository(session).count_by_agent(agent_id, user_id)
    return {"agent": agent, "meetingCount": meeting_count}


@router.put("/{agent_id}")
def update_agent(
    agent_id: str,
    body: UpdateAgentRequest,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
) -> Agent:
    repo = AgentsRepository(session)
    agent = _owned(repo, agent_id, user_id)
    return repo.update(agent, body.model_dump(exclude_none=True))


@router.delete("/{agent_id}")
def delete_agent(
    agent_id: str,
    user_id: str = Depends(get_current_user_id),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    repo = AgentsRepository(session)
    agent = _owned(repo, agent_id, user_id)
    # Meetings keep existing without the agent; upcoming ones need a new one to start
    detached = MeetingsRepository(session).clear_agent(agent_id)
    repo.delete(agent)
    return {"success": True, "detachedMeetings": detached}
