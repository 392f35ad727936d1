from __future__ import annotations

from typing import Optional
from sqlalchemy import delete
from sqlmodel import Session, col, select

from meetai.models.chat_message import ChatMessage


class ChatMessagesRepository:
    """Append-only access to a meeting's chat log."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def append(self, meeting_id: str, role: str, content: str, user_id: Optional[str] = None) -> ChatMessage:
        message = ChatMessage(meeting_id=meeting_id, role=role, content=content, user_id=user_id)
        self.session.add(message)
        self.session.commit()
        self.session.refresh(message)
        return message

    def list_by_meeting(self, meeting_id: str) -> list[ChatMessage]:
        statement = (
            select(ChatMessage)
            .where(ChatMessage.meeting_id == meeting_id)
            .order_by(col(ChatMessage.created_at).asc(), col(ChatMessage.id).asc())
        )
        return list(self.session.exec(statement))

    def recent(self, meeting_id: str, limit: int) -> list[ChatMessage]:
        if limit <= 0:
            return []
        statement = (
            select(ChatMessage)
            .where(ChatMessage.meeting_id == meeting_id)
            .order_by(col(ChatMessage.created_at).desc(), col(ChatMessage.id).desc())
            .limit(limit)
        )
        return list(reversed(list(self.session.exec(statement))))

    def delete_for_meeting(self, meeting_id: str) -> int:
        # Only used when the owning meeting itself is deleted
        result = self.session.connection().execute(delete(ChatMessage).where(ChatMessage.meeting_id == meeting_id))
        self.session.commit()
        return int(result.rowcount or 0)
