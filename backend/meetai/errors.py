"""Domain errors raised by services and mapped to HTTP responses in main."""

from __future__ import annotations

from typing import Optional


class MeetAIError(Exception):
    """Base class for errors surfaced to API callers."""


class NotFoundError(MeetAIError):
    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} not found")
        self.kind = kind
        self.identifier = identifier


class TransitionNotAllowedError(MeetAIError):
    def __init__(self, meeting_id: str, current: str, target: str) -> None:
        super().__init__(f"Meeting {meeting_id} cannot move from {current} to {target}")
        self.meeting_id = meeting_id
        self.current = current
        self.target = target


class InvariantViolationError(MeetAIError):
    pass


class ChatNotAvailableError(MeetAIError):
    def __init__(self, status: str) -> None:
        super().__init__("Chat is only available for completed meetings")
        self.status = status


class SignatureVerificationError(MeetAIError):
    pass


class LLMProviderError(MeetAIError):
    pass


class NonRetriableError(Exception):
    """Raised inside a pipeline step to fail the job without further attempts."""


class JobAbandoned(NonRetriableError):
    """The meeting moved on (e.g. cancelled) and the job must stop quietly."""

    def __init__(self, reason: str, meeting_id: Optional[str] = None) -> None:
        super().__init__(reason)
        self.meeting_id = meeting_id
