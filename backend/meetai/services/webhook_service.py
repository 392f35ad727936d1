from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlmodel import Session

from meetai.errors import MeetAIError
from meetai.repositories.meetings import MeetingsRepository
from meetai.services.meeting_jobs import CALL_ENDED, RECORDING_READY, TRANSCRIPTION_READY
from meetai.services.pipeline import PipelineOrchestrator
from meetai.services.state_machine import MeetingStateMachine
from meetai.services.webhook_normalizer import (
    CALL_ENDED_TYPES,
    CALL_STARTED_TYPES,
    RECORDING_READY_TYPES,
    TRANSCRIPTION_READY_TYPES,
    CallEvent,
)

logger = logging.getLogger("meetai.webhooks")

HANDLED_EVENTS = [
    "call.session_started",
    "call.session_ended",
    "call.transcription_ready",
    "call.recording_ready",
    "call.session_participant_joined",
    "call.session_participant_left",
    "message.new",
]


class WebhookService:
    """Routes a normalized call event to a state transition or a pipeline job."""

    def __init__(self, session: Session, orchestrator: PipelineOrchestrator) -> None:
        self.session = session
        self.orchestrator = orchestrator
        self.meetings = MeetingsRepository(session)

    def handle(self, event: CallEvent) -> Dict[str, Any]:
        if event.type in CALL_STARTED_TYPES:
            return self._call_started(event)
        if event.type in CALL_ENDED_TYPES:
            return self._enqueue(event, CALL_ENDED, {
                "duration": event.duration,
                "participantsCount": event.participants_count,
            })
        if event.type in TRANSCRIPTION_READY_TYPES:
            return self._enqueue(event, TRANSCRIPTION_READY, {"transcriptUrl": event.transcript_url})
        if event.type in RECORDING_READY_TYPES:
            recording = event.recording
            if recording is None or not recording.url:
                logger.info("Recording event for call %s has no URL; ignored", event.call_id)
                return {"action": "ignored"}
            return self._enqueue(event, RECORDING_READY, {
                "recordingUrl": recording.url,
                "format": recording.format,
                "size": recording.size,
                "duration": recording.duration,
            })
        if event.type in ("call.session_participant_joined", "call.session_participant_left"):
            logger.info("Participant %s: %s", event.type.rsplit("_", 1)[-1], event.participant_user_id)
            return {"action": "logged"}
        if event.type == "message.new":
            logger.info("New chat message event for call %s", event.call_id)
            return {"action": "logged"}
        logger.info("Unhandled event type: %s", event.type)
        return {"action": "ignored"}

    def _call_started(self, event: CallEvent) -> Dict[str, Any]:
        if not event.call_id:
            logger.warning("%s without a call id", event.type)
            return {"action": "ignored"}
        try:
            meeting = MeetingStateMachine(self.session).on_call_started(event.call_id)
        except MeetAIError as exc:
            logger.warning("Call %s started but meeting not activated: %s", event.call_id, exc)
            return {"action": "rejected", "reason": str(exc)}
        logger.info("Meeting %s (callId: %s) -> active", meeting.id, event.call_id)
        return {"action": "transitioned", "meetingId": meeting.id, "status": meeting.status}

    def _enqueue(self, event: CallEvent, job_name: str, extra: Dict[str, Any]) -> Dict[str, Any]:
        meeting_id = self._meeting_for_call(event.call_id)
        if meeting_id is None:
            return {"action": "ignored"}
        payload: Dict[str, Any] = {"callId": event.call_id, "meetingId": meeting_id}
        payload.update({k: v for k, v in extra.items() if v is not None})
        job_id = self.orchestrator.send(job_name, payload)
        logger.info("Triggered %s job %s for meeting %s", job_name, job_id, meeting_id)
        return {"action": "enqueued", "meetingId": meeting_id, "jobId": job_id}

    def _meeting_for_call(self, call_id: Optional[str]) -> Optional[str]:
        if not call_id:
            logger.warning("Event without a call id")
            return None
        meeting = self.meetings.get_by_call_id(call_id)
        if meeting is None:
            logger.warning("No meeting found for callId: %s", call_id)
            return None
        return meeting.id
