"""Authoritative meeting status graph and the guarded transitions over it.

Every transition is one conditional UPDATE: the row changes only if its
current status is an allowed source (and, for user actions, the acting user
owns it). When nothing matched, the row is re-read to report why, so a
rejected transition never mutates anything.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, Optional

from sqlmodel import Session

from meetai.errors import InvariantViolationError, NotFoundError, TransitionNotAllowedError
from meetai.models.base import utcnow
from meetai.models.meeting import Meeting, MeetingStatus
from meetai.repositories.chat_messages import ChatMessagesRepository
from meetai.repositories.meetings import MeetingsRepository

logger = logging.getLogger("meetai.state_machine")

UPCOMING = MeetingStatus.UPCOMING.value
ACTIVE = MeetingStatus.ACTIVE.value
PROCESSING = MeetingStatus.PROCESSING.value
COMPLETED = MeetingStatus.COMPLETED.value
CANCELLED = MeetingStatus.CANCELLED.value

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    UPCOMING: frozenset({ACTIVE, CANCELLED}),
    ACTIVE: frozenset({PROCESSING, CANCELLED}),
    PROCESSING: frozenset({COMPLETED}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
}

TERMINAL_STATES: FrozenSet[str] = frozenset({COMPLETED, CANCELLED})


def sources_for(target: str) -> FrozenSet[str]:
    return frozenset(s for s, targets in TRANSITIONS.items() if target in targets)


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


class MeetingStateMachine:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.meetings = MeetingsRepository(session)

    def _transition(
        self,
        target: str,
        *,
        meeting_id: Optional[str] = None,
        call_id: Optional[str] = None,
        user_id: Optional[str] = None,
        values: Optional[Dict[str, Any]] = None,
    ) -> Meeting:
        sources = sources_for(target)
        payload: Dict[str, Any] = {"status": target}
        now = utcnow()
        if target == ACTIVE:
            payload["started_at"] = now
        if target in (PROCESSING, CANCELLED):
            payload["ended_at"] = now
        payload.update(values or {})

        updated = self.meetings.conditional_update(
            meeting_id,
            call_id=call_id,
            user_id=user_id,
            statuses=sources,
            # Leaving upcoming requires an agent
            agent_required_status=UPCOMING if UPCOMING in sources else None,
            values=payload,
        )
        if updated is not None:
            logger.info("Meeting %s -> %s", updated.id, target)
            return updated
        raise self._explain_rejection(target, meeting_id=meeting_id, call_id=call_id, user_id=user_id)

    def _explain_rejection(
        self,
        target: str,
        *,
        meeting_id: Optional[str],
        call_id: Optional[str],
        user_id: Optional[str],
    ) -> Exception:
        if meeting_id is not None:
            meeting = self.meetings.get_owned(meeting_id, user_id) if user_id else self.meetings.get(meeting_id)
        else:
            meeting = self.meetings.get_by_call_id(call_id or "")
        if meeting is None:
            return NotFoundError("Meeting", meeting_id or call_id or "")
        if meeting.status == UPCOMING and meeting.agent_id is None and can_transition(UPCOMING, target):
            return InvariantViolationError("A meeting without an assigned agent cannot leave upcoming")
        return TransitionNotAllowedError(meeting.id, meeting.status, target)

    # User actions (ownership enforced)

    def start(self, meeting_id: str, user_id: str) -> Meeting:
        return self._transition(ACTIVE, meeting_id=meeting_id, user_id=user_id)

    def complete(self, meeting_id: str, user_id: str) -> Meeting:
        return self._transition(PROCESSING, meeting_id=meeting_id, user_id=user_id)

    def cancel(self, meeting_id: str, user_id: str) -> Meeting:
        return self._transition(CANCELLED, meeting_id=meeting_id, user_id=user_id)

    def delete(self, meeting_id: str, user_id: str) -> Meeting:
        meeting = self.meetings.get_owned(meeting_id, user_id)
        if meeting is None:
            raise NotFoundError("Meeting", meeting_id)
        if meeting.status not in TERMINAL_STATES:
            raise InvariantViolationError(
                f"Only completed or cancelled meetings can be deleted (status: {meeting.status})"
            )
        snapshot = Meeting.model_validate(meeting.model_dump())
        # Terminal states never change, so the messages can go first
        ChatMessagesRepository(self.session).delete_for_meeting(meeting_id)
        if not self.meetings.delete_owned(meeting_id, user_id, TERMINAL_STATES):
            raise NotFoundError("Meeting", meeting_id)
        logger.info("Meeting %s deleted", meeting_id)
        return snapshot

    # Provider-driven transitions (matched by call id once the webhook is verified)

    def on_call_started(self, call_id: str) -> Meeting:
        return self._transition(ACTIVE, call_id=call_id)

    # Pipeline transitions

    def enter_processing(
        self,
        meeting_id: str,
        duration_seconds: Optional[float] = None,
        participants_count: Optional[int] = None,
    ) -> Meeting:
        """Ingest a call-ended event; a meeting already in processing is accepted as is."""
        metadata: Dict[str, Any] = {}
        if duration_seconds is not None:
            metadata["duration_seconds"] = duration_seconds
        if participants_count is not None:
            metadata["participants_count"] = participants_count
        try:
            return self._transition(PROCESSING, meeting_id=meeting_id, values=metadata)
        except TransitionNotAllowedError as exc:
            if exc.current != PROCESSING:
                raise
        if metadata:
            updated = self.meetings.conditional_update(meeting_id, statuses=[PROCESSING], values=metadata)
            if updated is not None:
                return updated
        meeting = self.meetings.get(meeting_id)
        if meeting is None:
            raise NotFoundError("Meeting", meeting_id)
        if meeting.status != PROCESSING:
            raise TransitionNotAllowedError(meeting_id, meeting.status, PROCESSING)
        return meeting

    def finalize(self, meeting_id: str, summary_json: str) -> Meeting:
        """Store the summary and complete the meeting in a single guarded write."""
        return self._transition(COMPLETED, meeting_id=meeting_id, values={"summary": summary_json})
