"""Tests for the durable job executor and the post-call meeting jobs."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session, select

from conftest import SUMMARY_REPLY, USER, auth, reload
from meetai.errors import LLMProviderError, NonRetriableError
from meetai.models.artifacts import TranscriptArtifact, load_summary, load_transcript
from meetai.models.base import utcnow
from meetai.models.meeting import Meeting
from meetai.models.pipeline_job import PipelineJob, PipelineStep
from meetai.services.meeting_jobs import CALL_ENDED, RECORDING_READY, SUMMARIZE, TRANSCRIPTION_READY
from meetai.services.pipeline import PipelineOrchestrator
from meetai.services.transcription_service import FETCH_FAILED_TRANSCRIPT, NO_TRANSCRIPT

TRANSCRIPT_URL = "https://cdn.example/transcript.json"

ALICE_TRANSCRIPT = {
    "text": "Alice: Um, so basically we agreed.",
    "entries": [{"speaker": "Alice", "text": "Um, so basically we agreed.", "time": None}],
}


def job_row(engine, job_id):
    with Session(engine) as s:
        return s.get(PipelineJob, job_id)


def step_row(engine, job_id, name):
    with Session(engine) as s:
        return s.exec(select(PipelineStep).where(PipelineStep.job_id == job_id, PipelineStep.name == name)).first()


def jobs_named(engine, name):
    with Session(engine) as s:
        return list(s.exec(select(PipelineJob).where(PipelineJob.name == name)))


def store_transcript(session, meeting, cleaned="Alice: we agreed."):
    artifact = TranscriptArtifact(raw=cleaned, cleaned=cleaned, char_count=len(cleaned))
    meeting.transcript = artifact.to_json()
    session.add(meeting)
    session.commit()


class TestOrchestrator:

    def test_backoff_is_exponential(self, engine, settings):
        orch = PipelineOrchestrator(engine, settings.model_copy(update={"pipeline_backoff_seconds": 2.0}))
        assert [orch.backoff_for(a) for a in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_timestamps_are_naive_utc(self):
        now = utcnow()
        assert now.tzinfo is None
        assert abs((datetime.now(timezone.utc).replace(tzinfo=None) - now).total_seconds()) < 5

    def test_failed_step_is_rescheduled_with_backoff(self, engine, settings):
        orch = PipelineOrchestrator(engine, settings.model_copy(update={"pipeline_backoff_seconds": 60.0}))

        def handler(ctx):
            ctx.step.run("boom", lambda: 1 / 0)

        orch.register("test/flaky", handler)
        job_id = orch.send("test/flaky", {})
        assert orch.run_job(job_id) == "pending"

        job = job_row(engine, job_id)
        assert job.attempts == 1
        assert job.next_run_at > utcnow() + timedelta(seconds=30)
        assert "ZeroDivisionError" in job.last_error
        assert orch.run_due() == 0

        step = step_row(engine, job_id, "boom")
        assert step.status == "failed"
        assert step.attempts == 1
        assert step.last_error == "ZeroDivisionError: division by zero"
        assert job.last_error.endswith(step.last_error)

    def test_job_fails_after_max_attempts(self, engine, settings):
        orch = PipelineOrchestrator(engine, settings)

        def handler(ctx):
            ctx.step.run("boom", lambda: 1 / 0)

        orch.register("test/broken", handler)
        job_id = orch.send("test/broken", {})
        orch.drain()
        job = job_row(engine, job_id)
        assert job.status == "failed"
        assert job.attempts == 3
        assert step_row(engine, job_id, "boom").attempts == 3

    def test_completed_steps_are_replayed(self, engine, settings):
        orch = PipelineOrchestrator(engine, settings)
        calls = {"first": 0, "second": 0}

        def first():
            calls["first"] += 1
            return {"value": 41}

        def second():
            calls["second"] += 1
            if calls["second"] == 1:
                raise RuntimeError("transient")
            return "ok"

        def handler(ctx):
            out = ctx.step.run("first", first)
            ctx.step.run("second", second)
            return out["value"] + 1

        orch.register("test/memo", handler)
        job_id = orch.send("test/memo", {})
        orch.drain()
        job = job_row(engine, job_id)
        assert job.status == "completed"
        assert json.loads(job.result_json) == 42
        assert calls == {"first": 1, "second": 2}

    def test_non_retriable_error_fails_immediately(self, engine, settings):
        orch = PipelineOrchestrator(engine, settings)

        def handler(ctx):
            def step():
                raise NonRetriableError("bad payload")
            ctx.step.run("validate", step)

        orch.register("test/fatal", handler)
        job_id = orch.send("test/fatal", {})
        orch.drain()
        job = job_row(engine, job_id)
        assert job.status == "failed"
        assert job.attempts == 1

    def test_fallback_used_on_final_attempt(self, engine, settings):
        orch = PipelineOrchestrator(engine, settings)

        def handler(ctx):
            return ctx.step.run("fetch", lambda: 1 / 0, fallback=lambda: "sentinel")

        orch.register("test/fallback", handler)
        job_id = orch.send("test/fallback", {})
        orch.drain()
        job = job_row(engine, job_id)
        assert job.status == "completed"
        assert json.loads(job.result_json) == "sentinel"
        assert step_row(engine, job_id, "fetch").attempts == 3

    def test_send_event_emits_once(self, engine, settings):
        orch = PipelineOrchestrator(engine, settings)
        attempts = {"n": 0}

        def parent(ctx):
            ctx.step.send_event("emit", "test/child", {"meetingId": "m1"})
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise RuntimeError("after emit")

        orch.register("test/parent", parent)
        orch.register("test/child", lambda ctx: "child done")
        orch.send("test/parent", {})
        orch.drain()
        children = jobs_named(engine, "test/child")
        assert len(children) == 1
        assert children[0].status == "completed"

    def test_unknown_event_rejected(self, engine, settings):
        with pytest.raises(ValueError):
            PipelineOrchestrator(engine, settings).send("test/unregistered", {})

    def test_recover_requeues_running_jobs(self, engine, settings):
        orch = PipelineOrchestrator(engine, settings)
        orch.register("test/noop", lambda ctx: None)
        job_id = orch.send("test/noop", {})
        with Session(engine) as s:
            job = s.get(PipelineJob, job_id)
            job.status = "running"
            s.add(job)
            s.commit()
        assert orch.recover() == 1
        assert job_row(engine, job_id).status == "pending"


class TestMeetingPipeline:

    def test_full_flow_to_completed(self, engine, session, orchestrator, fetcher, llm, make_meeting):
        fetcher.responses[TRANSCRIPT_URL] = ALICE_TRANSCRIPT
        meeting = make_meeting(status="active", call_id="abc123")
        orchestrator.send(CALL_ENDED, {"meetingId": meeting.id, "callId": "abc123", "duration": 300})
        orchestrator.send(TRANSCRIPTION_READY, {"meetingId": meeting.id, "transcriptUrl": TRANSCRIPT_URL})
        orchestrator.drain()

        done = reload(session, Meeting, meeting.id)
        assert done.status == "completed"
        assert done.duration_seconds == 300

        transcript = load_transcript(done.transcript)
        assert transcript.cleaned == "Alice: we agreed."
        assert transcript.entries[0].text == "we agreed."
        assert transcript.entries[0].speaker == "Alice"
        assert transcript.char_count == len("Alice: we agreed.")

        summary = load_summary(done.summary)
        assert summary.summary == "The team agreed on the launch plan."
        assert summary.action_items == ["Alice to prepare the release notes"]

        assert len(jobs_named(engine, SUMMARIZE)) == 1
        assert all(j.status == "completed" for j in jobs_named(engine, TRANSCRIPTION_READY))

    def test_summary_uses_persisted_transcript(self, session, orchestrator, llm, make_meeting):
        meeting = make_meeting(status="processing")
        store_transcript(session, meeting, cleaned="Bob: persisted text.")
        # The event payload carries a different transcript; only the stored one counts
        orchestrator.send(SUMMARIZE, {"meetingId": meeting.id, "transcript": "stale payload text"})
        orchestrator.drain()

        prompt = llm.calls[0]["messages"][1]["content"]
        assert "Bob: persisted text." in prompt
        assert "stale payload text" not in prompt
        assert reload(session, Meeting, meeting.id).status == "completed"

    def test_summarize_without_stored_transcript_fails(self, engine, session, orchestrator, llm, make_meeting):
        meeting = make_meeting(status="processing")
        job_id = orchestrator.send(SUMMARIZE, {"meetingId": meeting.id})
        orchestrator.drain()
        assert job_row(engine, job_id).status == "failed"
        assert llm.calls == []
        assert reload(session, Meeting, meeting.id).status == "processing"

    def test_fetch_failure_falls_back_to_sentinel(self, session, orchestrator, fetcher, make_meeting):
        fetcher.responses[TRANSCRIPT_URL] = RuntimeError("404")
        meeting = make_meeting(status="processing")
        orchestrator.send(TRANSCRIPTION_READY, {"meetingId": meeting.id, "transcriptUrl": TRANSCRIPT_URL})
        orchestrator.drain()

        assert fetcher.calls == [TRANSCRIPT_URL] * 3
        done = reload(session, Meeting, meeting.id)
        assert load_transcript(done.transcript).raw == FETCH_FAILED_TRANSCRIPT
        assert done.status == "completed"

    def test_missing_url_uses_no_transcript_sentinel(self, session, orchestrator, fetcher, make_meeting):
        meeting = make_meeting(status="processing")
        orchestrator.send(TRANSCRIPTION_READY, {"meetingId": meeting.id})
        orchestrator.drain()
        assert fetcher.calls == []
        assert load_transcript(reload(session, Meeting, meeting.id).transcript).raw == NO_TRANSCRIPT

    def test_inline_transcript_segments(self, session, orchestrator, make_meeting):
        meeting = make_meeting(status="processing")
        orchestrator.send(TRANSCRIPTION_READY, {
            "meetingId": meeting.id,
            "transcript": [{"speaker": "Alice", "text": "Um, so basically we agreed."}],
        })
        orchestrator.drain()
        transcript = load_transcript(reload(session, Meeting, meeting.id).transcript)
        assert transcript.entries[0].text == "we agreed."

    def test_summarization_failure_leaves_processing(self, engine, session, orchestrator, llm, make_meeting):
        llm.queue(*[LLMProviderError("timeout")] * 3)
        meeting = make_meeting(status="processing")
        store_transcript(session, meeting)
        job_id = orchestrator.send(SUMMARIZE, {"meetingId": meeting.id})
        orchestrator.drain()

        job = job_row(engine, job_id)
        assert job.status == "failed"
        assert job.attempts == 3
        assert step_row(engine, job_id, "generate-summary").attempts == 3
        assert step_row(engine, job_id, "load-transcript").attempts == 1
        done = reload(session, Meeting, meeting.id)
        assert done.status == "processing"
        assert done.summary is None

    def test_summarization_retry_then_success(self, engine, session, orchestrator, llm, make_meeting):
        llm.queue(LLMProviderError("rate limited"))
        meeting = make_meeting(status="processing")
        store_transcript(session, meeting)
        job_id = orchestrator.send(SUMMARIZE, {"meetingId": meeting.id})
        orchestrator.drain()
        assert job_row(engine, job_id).status == "completed"
        assert step_row(engine, job_id, "generate-summary").attempts == 2
        assert reload(session, Meeting, meeting.id).status == "completed"

    def test_unparseable_summary_still_completes(self, session, orchestrator, llm, make_meeting):
        llm.queue("definitely not json")
        meeting = make_meeting(status="processing")
        store_transcript(session, meeting)
        orchestrator.send(SUMMARIZE, {"meetingId": meeting.id})
        orchestrator.drain()

        done = reload(session, Meeting, meeting.id)
        assert done.status == "completed"
        summary = load_summary(done.summary)
        assert summary.parsed is False
        assert summary.key_points == []
        assert summary.sentiment.overall == "neutral"
        assert summary.sentiment.confidence == 0

    def test_cancelled_meeting_abandons_ingest(self, engine, session, orchestrator, make_meeting):
        meeting = make_meeting(status="cancelled")
        job_id = orchestrator.send(CALL_ENDED, {"meetingId": meeting.id})
        orchestrator.drain()
        assert job_row(engine, job_id).status == "abandoned"
        assert reload(session, Meeting, meeting.id).status == "cancelled"

    def test_cancelled_meeting_abandons_summary(self, engine, session, orchestrator, llm, make_meeting):
        meeting = make_meeting(status="cancelled")
        store_transcript(session, meeting)
        job_id = orchestrator.send(SUMMARIZE, {"meetingId": meeting.id})
        orchestrator.drain()
        assert job_row(engine, job_id).status == "abandoned"
        assert llm.calls == []

    def test_transcript_before_ingest_moves_meeting_to_processing(self, engine, session, orchestrator, make_meeting):
        meeting = make_meeting(status="active")
        transcription_id = orchestrator.send(TRANSCRIPTION_READY, {"meetingId": meeting.id, "transcript": "We agreed."})
        assert orchestrator.run_job(transcription_id) == "completed"

        stored = reload(session, Meeting, meeting.id)
        assert stored.status == "processing"
        assert load_transcript(stored.transcript).cleaned == "We agreed."

        ingest_id = orchestrator.send(CALL_ENDED, {"meetingId": meeting.id, "duration": 300, "participantsCount": 2})
        assert orchestrator.run_job(ingest_id) == "completed"
        orchestrator.drain()

        done = reload(session, Meeting, meeting.id)
        assert done.status == "completed"
        assert done.duration_seconds == 300
        assert done.participants_count == 2

    def test_transcript_kept_when_ingest_arrives_last(self, engine, session, orchestrator, make_meeting):
        meeting = make_meeting(status="active")
        transcription_id = orchestrator.send(TRANSCRIPTION_READY, {"meetingId": meeting.id, "transcript": "We agreed."})
        orchestrator.drain()
        assert job_row(engine, transcription_id).status == "completed"

        ingest_id = orchestrator.send(CALL_ENDED, {"meetingId": meeting.id})
        orchestrator.drain()

        done = reload(session, Meeting, meeting.id)
        assert done.status == "completed"
        assert load_transcript(done.transcript).cleaned == "We agreed."
        assert load_summary(done.summary) is not None
        assert job_row(engine, ingest_id).status == "abandoned"

    def test_transcript_before_call_started_waits(self, engine, session, orchestrator, make_meeting):
        meeting = make_meeting(status="upcoming")
        transcription_id = orchestrator.send(TRANSCRIPTION_READY, {"meetingId": meeting.id, "transcript": "We agreed."})
        assert orchestrator.run_job(transcription_id) == "pending"
        assert reload(session, Meeting, meeting.id).transcript is None
        assert reload(session, Meeting, meeting.id).status == "upcoming"

    def test_recording_and_summary_do_not_clobber(self, engine, session, orchestrator, llm, make_meeting):
        meeting = make_meeting(status="processing")
        meeting_id = meeting.id
        store_transcript(session, meeting)
        recording_id = orchestrator.send(RECORDING_READY, {"meetingId": meeting_id, "recordingUrl": "https://cdn/r.mp4"})
        summarize_id = orchestrator.send(SUMMARIZE, {"meetingId": meeting_id})

        def save_recording_mid_summary(messages):
            # The recording lands while the summary is being generated
            assert orchestrator.run_job(recording_id) == "completed"
            return SUMMARY_REPLY

        llm.queue(save_recording_mid_summary)
        assert orchestrator.run_job(summarize_id) == "completed"

        done = reload(session, Meeting, meeting_id)
        assert done.status == "completed"
        assert done.recording_url == "https://cdn/r.mp4"
        assert load_summary(done.summary).summary == "The team agreed on the launch plan."

    def test_recording_keeps_status(self, session, orchestrator, make_meeting):
        meeting = make_meeting(status="completed")
        orchestrator.send(RECORDING_READY, {"meetingId": meeting.id, "recordingUrl": "https://cdn/late.mp4"})
        orchestrator.drain()
        done = reload(session, Meeting, meeting.id)
        assert done.status == "completed"
        assert done.recording_url == "https://cdn/late.mp4"

    def test_jobs_endpoint_lists_steps(self, client, orchestrator, make_meeting):
        meeting = make_meeting(status="active")
        orchestrator.send(CALL_ENDED, {"meetingId": meeting.id})
        orchestrator.drain()
        resp = client.get(f"/meetings/{meeting.id}/jobs", headers=auth(USER))
        assert resp.status_code == 200
        jobs = resp.json()["jobs"]
        assert jobs[0]["name"] == CALL_ENDED
        assert jobs[0]["status"] == "completed"
        assert jobs[0]["steps"][0]["name"] == "set-processing"

    def test_job_detail_endpoint(self, client, orchestrator, make_meeting):
        meeting = make_meeting(status="active")
        other = make_meeting(status="active")
        job_id = orchestrator.send(CALL_ENDED, {"meetingId": meeting.id})
        orchestrator.drain()

        resp = client.get(f"/meetings/{meeting.id}/jobs/{job_id}", headers=auth(USER))
        assert resp.status_code == 200
        job = resp.json()
        assert job["id"] == job_id
        assert job["status"] == "completed"
        assert job["result"]["status"] == "processing"
        assert [s["name"] for s in job["steps"]] == ["set-processing"]

        assert client.get(f"/meetings/{other.id}/jobs/{job_id}", headers=auth(USER)).status_code == 404
        assert client.get(f"/meetings/{meeting.id}/jobs/missing", headers=auth(USER)).status_code == 404

    def test_get_job_unknown_id(self, orchestrator):
        assert orchestrator.get_job("missing") is None
