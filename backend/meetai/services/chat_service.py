"""Question answering over a completed meeting's transcript and summary."""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlmodel import Session

from meetai.config import Settings
from meetai.errors import ChatNotAvailableError, LLMProviderError, NotFoundError
from meetai.models.artifacts import load_summary, load_transcript
from meetai.models.chat_message import ChatMessage
from meetai.models.meeting import Meeting, MeetingStatus
from meetai.repositories.chat_messages import ChatMessagesRepository
from meetai.repositories.meetings import MeetingsRepository
from meetai.services.llm.base import ChatTurn, LLMProvider
from meetai.services.summarization_service import summary_to_text

logger = logging.getLogger("meetai.chat")

TRUNCATION_MARKER = "\n\n[... transcript truncated for length ...]"
EMPTY_REPLY = "I couldn't generate a response. Please try again."

SYSTEM_PROMPT_TEMPLATE = """You are an intelligent AI meeting assistant. You have access to a specific meeting's transcript and summary. Answer the user's questions based ONLY on this meeting's content. Be concise, accurate, and helpful.

If the user asks something not covered in the meeting, say so clearly.

=== MEETING SUMMARY ===
{summary}

=== MEETING TRANSCRIPT ===
{transcript}

Guidelines:
- Answer based strictly on the meeting content
- Quote specific parts of the transcript when relevant
- If asked for action items, decisions, or key points, extract them from the transcript
- Be conversational but professional
- If uncertain, indicate your confidence level"""


def truncate_transcript(transcript: str, max_chars: int) -> str:
    if len(transcript) <= max_chars:
        return transcript
    return transcript[:max_chars] + TRUNCATION_MARKER


def build_system_prompt(transcript: str, summary_text: Optional[str], max_chars: int) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(
        summary=summary_text or "No summary available.",
        transcript=truncate_transcript(transcript, max_chars),
    )


def build_messages(
    system_prompt: str,
    history: List[ChatMessage],
    question: str,
    max_turns: int,
) -> List[ChatTurn]:
    messages: List[ChatTurn] = [{"role": "system", "content": system_prompt}]
    recent = history[-max_turns:] if max_turns > 0 else []
    messages.extend({"role": m.role, "content": m.content} for m in recent)
    messages.append({"role": "user", "content": question})
    return messages


class TranscriptChatEngine:
    def __init__(self, session: Session, llm: Optional[LLMProvider], settings: Settings) -> None:
        self.session = session
        self.llm = llm
        self.settings = settings
        self.meetings = MeetingsRepository(session)
        self.messages = ChatMessagesRepository(session)

    def _owned(self, meeting_id: str, user_id: str) -> Meeting:
        meeting = self.meetings.get_owned(meeting_id, user_id)
        if meeting is None:
            raise NotFoundError("Meeting", meeting_id)
        return meeting

    def history(self, meeting_id: str, user_id: str) -> List[ChatMessage]:
        self._owned(meeting_id, user_id)
        return self.messages.list_by_meeting(meeting_id)

    def send(self, meeting_id: str, user_id: str, question: str) -> ChatMessage:
        """Answer ``question``; the user turn is stored first, the reply only on success."""
        meeting = self._owned(meeting_id, user_id)
        if meeting.status != MeetingStatus.COMPLETED.value:
            raise ChatNotAvailableError(meeting.status)
        if self.llm is None:
            raise LLMProviderError("No chat model configured")

        transcript = load_transcript(meeting.transcript)
        summary = load_summary(meeting.summary)
        system_prompt = build_system_prompt(
            transcript.cleaned if transcript else "",
            summary_to_text(summary) if summary else None,
            self.settings.chat_transcript_chars,
        )

        prior = self.messages.recent(meeting_id, self.settings.chat_history_turns)
        self.messages.append(meeting_id, "user", question, user_id=user_id)

        turns = build_messages(system_prompt, prior, question, self.settings.chat_history_turns)
        # Provider errors propagate; no assistant row is written for them
        reply = self.llm.complete(turns, temperature=0.7, max_tokens=1024).strip()
        if not reply:
            logger.warning("Empty chat reply for meeting %s", meeting_id)
            reply = EMPTY_REPLY
        return self.messages.append(meeting_id, "assistant", reply)
