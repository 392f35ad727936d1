from __future__ import annotations

from typing import Any, Iterable, Optional
from sqlalchemy import delete, func, or_, update
from sqlmodel import Session, col, select

from meetai.models.base import utcnow
from meetai.models.meeting import Meeting


class MeetingsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, meeting: Meeting) -> Meeting:
        self.session.add(meeting)
        self.session.commit()
        self.session.refresh(meeting)
        return meeting

    def get(self, meeting_id: str) -> Optional[Meeting]:
        return self.session.get(Meeting, meeting_id)

    def get_owned(self, meeting_id: str, user_id: str) -> Optional[Meeting]:
        statement = select(Meeting).where(Meeting.id == meeting_id, Meeting.user_id == user_id)
        return self.session.exec(statement).first()

    def get_by_call_id(self, call_id: str) -> Optional[Meeting]:
        statement = select(Meeting).where(Meeting.call_id == call_id).limit(1)
        return self.session.exec(statement).first()

    def _filtered(self, statement, user_id: str, search: str = "", status: Optional[str] = None, agent_id: Optional[str] = None):
        statement = statement.where(Meeting.user_id == user_id)
        if search:
            statement = statement.where(col(Meeting.name).ilike(f"%{search}%"))
        if status and status != "all":
            statement = statement.where(Meeting.status == status)
        if agent_id and agent_id != "all":
            statement = statement.where(Meeting.agent_id == agent_id)
        return statement

    def list(
        self,
        user_id: str,
        search: str = "",
        status: Optional[str] = None,
        agent_id: Optional[str] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> list[Meeting]:
        statement = self._filtered(select(Meeting), user_id, search, status, agent_id)
        statement = statement.order_by(col(Meeting.created_at).desc()).limit(limit).offset(offset)
        return list(self.session.exec(statement))

    def count(self, user_id: str, search: str = "", status: Optional[str] = None, agent_id: Optional[str] = None) -> int:
        statement = self._filtered(select(func.count()).select_from(Meeting), user_id, search, status, agent_id)
        return int(self.session.exec(statement).one())

    def count_by_agent(self, agent_id: str, user_id: str) -> int:
        return self.count(user_id, agent_id=agent_id)

    def count_by_status(self, user_id: str) -> dict[str, int]:
        statement = (
            select(Meeting.status, func.count())
            .where(Meeting.user_id == user_id)
            .group_by(Meeting.status)
        )
        return {status: int(n) for status, n in self.session.exec(statement)}

    def completed_durations(self, user_id: str) -> list[tuple[Any, Any]]:
        statement = select(Meeting.started_at, Meeting.ended_at).where(
            Meeting.user_id == user_id,
            Meeting.status == "completed",
        )
        return list(self.session.exec(statement))

    def conditional_update(
        self,
        meeting_id: Optional[str] = None,
        *,
        call_id: Optional[str] = None,
        user_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        agent_required_status: Optional[str] = None,
        values: dict[str, Any],
    ) -> Optional[Meeting]:
        """Apply ``values`` in a single UPDATE guarded by the given predicates.

        Returns the refreshed row when exactly one row matched, else None.
        Only the listed columns are written, so concurrent writers touching
        other fields do not clobber each other.
        """
        if meeting_id is None and call_id is None:
            raise ValueError("meeting_id or call_id is required")
        statement = update(Meeting)
        if meeting_id is not None:
            statement = statement.where(Meeting.id == meeting_id)
        if call_id is not None:
            statement = statement.where(Meeting.call_id == call_id)
        if user_id is not None:
            statement = statement.where(Meeting.user_id == user_id)
        if statuses is not None:
            statement = statement.where(col(Meeting.status).in_(list(statuses)))
        if agent_required_status is not None:
            statement = statement.where(
                or_(Meeting.status != agent_required_status, col(Meeting.agent_id).is_not(None))
            )
        payload = dict(values)
        payload.setdefault("updated_at", utcnow())
        result = self.session.connection().execute(statement.values(**payload))
        self.session.commit()
        if result.rowcount != 1:
            return None
        self.session.expire_all()
        if meeting_id is not None:
            return self.get(meeting_id)
        return self.get_by_call_id(call_id)  # type: ignore[arg-type]

    def set_fields(self, meeting_id: str, **values: Any) -> Optional[Meeting]:
        return self.conditional_update(meeting_id, values=values)

    def delete_owned(self, meeting_id: str, user_id: str, statuses: Iterable[str]) -> bool:
        statement = delete(Meeting).where(
            Meeting.id == meeting_id,
            Meeting.user_id == user_id,
            col(Meeting.status).in_(list(statuses)),
        )
        result = self.session.connection().execute(statement)
        self.session.commit()
        self.session.expire_all()
        return result.rowcount == 1

    def clear_agent(self, agent_id: str) -> int:
        statement = update(Meeting).where(Meeting.agent_id == agent_id).values(agent_id=None, updated_at=utcnow())
        result = self.session.connection().execute(statement)
        self.session.commit()
        return int(result.rowcount or 0)
