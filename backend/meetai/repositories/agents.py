from __future__ import annotations

from typing import Any, Optional
from sqlalchemy import func
from sqlmodel import Session, col, select

from meetai.models.agent import Agent
from meetai.models.base import utcnow


class AgentsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, agent: Agent) -> Agent:
        self.session.add(agent)
        self.session.commit()
        self.session.refresh(agent)
        return agent

    def get_owned(self, agent_id: str, user_id: str) -> Optional[Agent]:
        statement = select(Agent).where(Agent.id == agent_id, Agent.user_id == user_id)
        return self.session.exec(statement).first()

    def list_by_user(self, user_id: str, status: Optional[str] = None) -> list[Agent]:
        statement = select(Agent).where(Agent.user_id == user_id)
        if status:
            statement = statement.where(Agent.status == status)
        return list(self.session.exec(statement.order_by(col(Agent.created_at).asc())))

    def update(self, agent: Agent, changes: dict[str, Any]) -> Agent:
        for key, value in changes.items():
            setattr(agent, key, value)
        agent.updated_at = utcnow()
        self.session.add(agent)
        self.session.commit()
        self.session.refresh(agent)
        return agent

    def delete(self, agent: Agent) -> None:
        self.session.delete(agent)
        self.session.commit()

    def count_by_status(self, user_id: str) -> dict[str, int]:
        statement = select(Agent.status, func.count()).where(Agent.user_id == user_id).group_by(Agent.status)
        return {status: int(n) for status, n in self.session.exec(statement)}
