"""Post-call pipeline: ingest, transcript processing, summarization, recording."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict

from sqlalchemy.engine import Engine
from sqlmodel import Session

from meetai.config import Settings
from meetai.errors import (
    InvariantViolationError,
    JobAbandoned,
    NonRetriableError,
    NotFoundError,
    TransitionNotAllowedError,
)
from meetai.models.artifacts import TranscriptArtifact, TranscriptEntry, load_transcript
from meetai.models.meeting import MeetingStatus
from meetai.repositories.meetings import MeetingsRepository
from meetai.services.llm.base import LLMProvider
from meetai.services.pipeline import JobContext, PipelineOrchestrator
from meetai.services.state_machine import MeetingStateMachine
from meetai.services.summarization_service import SummarizationEngine
from meetai.services.transcription_service import (
    FETCH_FAILED_TRANSCRIPT,
    NO_TRANSCRIPT,
    build_transcript_artifact,
    fetch_transcript_from_url,
    normalize_transcript_payload,
)

logger = logging.getLogger("meetai.pipeline.meetings")

CALL_ENDED = "meeting/call.ended"
TRANSCRIPTION_READY = "meeting/transcription.ready"
RECORDING_READY = "meeting/recording.ready"
SUMMARIZE = "meeting/summarize"


class WaitingForIngest(RuntimeError):
    """The transcript arrived before the call started; retried later."""


class MeetingJobs:
    def __init__(
        self,
        engine: Engine,
        settings: Settings,
        llm_factory: Callable[[], LLMProvider],
        fetcher: Callable[..., dict] = fetch_transcript_from_url,
    ) -> None:
        self.engine = engine
        self.settings = settings
        self._llm_factory = llm_factory
        self._fetcher = fetcher

    def register(self, orchestrator: PipelineOrchestrator) -> None:
        orchestrator.register(CALL_ENDED, self.handle_call_ended)
        orchestrator.register(TRANSCRIPTION_READY, self.process_transcription)
        orchestrator.register(RECORDING_READY, self.process_recording)
        orchestrator.register(SUMMARIZE, self.summarize_meeting)

    @staticmethod
    def _meeting_id(ctx: JobContext) -> str:
        meeting_id = ctx.payload.get("meetingId") or ctx.meeting_id
        if not meeting_id:
            raise NonRetriableError(f"{ctx.name} payload has no meetingId")
        return str(meeting_id)

    def handle_call_ended(self, ctx: JobContext) -> Dict[str, Any]:
        meeting_id = self._meeting_id(ctx)
        duration = ctx.payload.get("duration")
        participants = ctx.payload.get("participantsCount")

        def set_processing() -> Dict[str, Any]:
            with Session(self.engine) as session:
                try:
                    meeting = MeetingStateMachine(session).enter_processing(meeting_id, duration, participants)
                except NotFoundError as exc:
                    raise NonRetriableError(f"Meeting {meeting_id} not found") from exc
                except (TransitionNotAllowedError, InvariantViolationError) as exc:
                    raise JobAbandoned(str(exc), meeting_id) from exc
                return {"status": meeting.status, "endedAt": meeting.ended_at}

        state = ctx.step.run("set-processing", set_processing)
        logger.info("Meeting %s -> processing (duration=%s, participants=%s)", meeting_id, duration, participants)
        return {
            "meetingId": meeting_id,
            "status": state["status"],
            "duration": duration,
            "participantsCount": participants,
        }

    def process_transcription(self, ctx: JobContext) -> Dict[str, Any]:
        meeting_id = self._meeting_id(ctx)
        inline = ctx.payload.get("transcript")
        url = ctx.payload.get("transcriptUrl")

        def fetch() -> Dict[str, Any]:
            if inline:
                logger.info("Using provided transcript for meeting %s", meeting_id)
                text, entries = normalize_transcript_payload(inline)
                return {"text": text, "entries": [e.model_dump() for e in entries] if entries is not None else None}
            if url:
                return self._fetcher(url, timeout=self.settings.transcript_fetch_timeout)
            return {"text": NO_TRANSCRIPT, "entries": None}

        raw = ctx.step.run(
            "fetch-transcript",
            fetch,
            fallback=lambda: {"text": FETCH_FAILED_TRANSCRIPT, "entries": None},
        )

        def clean() -> Dict[str, Any]:
            entries = None
            if raw.get("entries") is not None:
                entries = [TranscriptEntry.model_validate(e) for e in raw["entries"]]
            artifact = build_transcript_artifact(str(raw.get("text") or ""), entries)
            return artifact.model_dump(mode="json", by_alias=True)

        artifact = ctx.step.run("clean-transcript", clean)

        def store() -> Dict[str, Any]:
            payload = TranscriptArtifact.model_validate(artifact).to_json()
            with Session(self.engine) as session:
                repo = MeetingsRepository(session)
                updated = repo.conditional_update(
                    meeting_id,
                    statuses=[MeetingStatus.PROCESSING.value],
                    values={"transcript": payload},
                )
                if updated is None:
                    meeting = repo.get(meeting_id)
                    if meeting is not None and meeting.status == MeetingStatus.ACTIVE.value:
                        # A ready transcript means the call has ended; ingest may still follow
                        logger.info("Transcript for meeting %s arrived before ingest", meeting_id)
                        try:
                            MeetingStateMachine(session).enter_processing(meeting_id)
                        except (TransitionNotAllowedError, InvariantViolationError) as exc:
                            logger.info("Meeting %s not moved to processing: %s", meeting_id, exc)
                        updated = repo.conditional_update(
                            meeting_id,
                            statuses=[MeetingStatus.PROCESSING.value],
                            values={"transcript": payload},
                        )
                        meeting = repo.get(meeting_id)
                if updated is not None:
                    return {"stored": True, "charCount": artifact.get("charCount", 0)}
            if meeting is None:
                raise NonRetriableError(f"Meeting {meeting_id} not found")
            if meeting.status == MeetingStatus.UPCOMING.value:
                raise WaitingForIngest(f"Meeting {meeting_id} is {meeting.status}, not processing yet")
            raise JobAbandoned(f"Meeting {meeting_id} is {meeting.status}; transcript not stored", meeting_id)

        ctx.step.run("store-transcript", store)
        emitted = ctx.step.send_event(
            "trigger-summarize",
            SUMMARIZE,
            {"meetingId": meeting_id, "transcript": artifact.get("cleaned", "")},
        )
        logger.info("Transcript processing complete for meeting %s", meeting_id)
        return {
            "meetingId": meeting_id,
            "transcriptLength": artifact.get("charCount", 0),
            "summarizeJobId": emitted.get("jobId"),
        }

    def process_recording(self, ctx: JobContext) -> Dict[str, Any]:
        meeting_id = self._meeting_id(ctx)
        recording_url = ctx.payload.get("recordingUrl")
        if not recording_url:
            raise NonRetriableError("recording.ready payload has no recordingUrl")

        def save() -> Dict[str, Any]:
            with Session(self.engine) as session:
                # Targeted write; status is left alone
                updated = MeetingsRepository(session).set_fields(meeting_id, recording_url=recording_url)
            if updated is None:
                raise NonRetriableError(f"Meeting {meeting_id} not found")
            return {"saved": True}

        ctx.step.run("save-recording", save)
        logger.info(
            "Recording saved for meeting %s (format=%s, size=%s, duration=%s)",
            meeting_id, ctx.payload.get("format"), ctx.payload.get("size"), ctx.payload.get("duration"),
        )
        return {
            "meetingId": meeting_id,
            "recordingUrl": recording_url,
            "metadata": {k: ctx.payload.get(k) for k in ("format", "size", "duration")},
        }

    def summarize_meeting(self, ctx: JobContext) -> Dict[str, Any]:
        meeting_id = self._meeting_id(ctx)

        def load() -> str:
            # Summaries are only ever built from the persisted transcript
            with Session(self.engine) as session:
                meeting = MeetingsRepository(session).get(meeting_id)
            if meeting is None:
                raise NonRetriableError(f"Meeting {meeting_id} not found")
            if meeting.status != MeetingStatus.PROCESSING.value:
                raise JobAbandoned(f"Meeting {meeting_id} is {meeting.status}; summary skipped", meeting_id)
            artifact = load_transcript(meeting.transcript)
            if artifact is None:
                raise NonRetriableError(f"Meeting {meeting_id} has no stored transcript")
            return artifact.cleaned

        transcript = ctx.step.run("load-transcript", load)

        def generate() -> Dict[str, Any]:
            logger.info("Generating summary for meeting %s (%d chars)", meeting_id, len(transcript))
            engine = SummarizationEngine(self._llm_factory(), chunk_chars=self.settings.summary_chunk_chars)
            return engine.summarize(transcript).model_dump(mode="json", by_alias=True)

        summary = ctx.step.run("generate-summary", generate)

        def store() -> Dict[str, Any]:
            with Session(self.engine) as session:
                try:
                    meeting = MeetingStateMachine(session).finalize(meeting_id, json.dumps(summary))
                except NotFoundError as exc:
                    raise NonRetriableError(f"Meeting {meeting_id} not found") from exc
                except TransitionNotAllowedError as exc:
                    raise JobAbandoned(str(exc), meeting_id) from exc
                return {"status": meeting.status}

        ctx.step.run("store-summary", store)
        logger.info("Meeting %s summarization complete -> completed", meeting_id)
        return {
            "meetingId": meeting_id,
            "summary": summary.get("summary"),
            "keyPointsCount": len(summary.get("keyPoints") or []),
            "actionItemsCount": len(summary.get("actionItems") or []),
            "sentiment": (summary.get("sentiment") or {}).get("overall"),
        }
