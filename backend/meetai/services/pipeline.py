"""Durable, retrying executor for background meeting jobs.

A job is a named event plus a JSON payload, persisted as a PipelineJob row.
Handlers split their work into named steps through ``ctx.step.run``; each
step's outcome is stored as a PipelineStep row, so a re-run of the job
replays completed steps from their stored output instead of repeating their
side effects. A failing step is retried with exponential backoff until it
has been attempted ``max_attempts`` times.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session

from meetai.config import Settings
from meetai.errors import JobAbandoned, NonRetriableError
from meetai.models.base import utcnow
from meetai.models.pipeline_job import PipelineJob, PipelineStep
from meetai.repositories.pipeline_jobs import PipelineJobsRepository

logger = logging.getLogger("meetai.pipeline")


class StepFailed(Exception):
    def __init__(self, step: str, attempt: int, cause: BaseException) -> None:
        super().__init__(f"step {step!r} failed on attempt {attempt}: {type(cause).__name__}: {cause}")
        self.step = step
        self.attempt = attempt
        self.cause = cause


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


class StepRunner:
    def __init__(self, orchestrator: "PipelineOrchestrator", job_id: str) -> None:
        self._orchestrator = orchestrator
        self._job_id = job_id

    def _begin(self, name: str) -> tuple[bool, Any, int]:
        with Session(self._orchestrator.engine) as session:
            repo = PipelineJobsRepository(session)
            step = repo.get_step(self._job_id, name)
            if step is not None and step.status == "completed":
                return True, _loads(step.output_json), step.attempts
            if step is None:
                step = PipelineStep(job_id=self._job_id, name=name)
            step.attempts += 1
            step.status = "running"
            repo.save_step(step)
            return False, None, step.attempts

    def _record(self, name: str, *, output: Any = None, error: Optional[str] = None) -> None:
        with Session(self._orchestrator.engine) as session:
            repo = PipelineJobsRepository(session)
            step = repo.get_step(self._job_id, name)
            if step is None:
                step = PipelineStep(job_id=self._job_id, name=name, attempts=1)
            if error is None:
                step.status = "completed"
                step.output_json = _dumps(output)
                step.last_error = None
            else:
                step.status = "failed"
                step.last_error = error
            repo.save_step(step)

    def run(self, name: str, fn: Callable[[], Any], fallback: Optional[Callable[[], Any]] = None) -> Any:
        """Run ``fn`` once per job, returning its JSON-round-tripped output.

        When the final allowed attempt fails and ``fallback`` is given, the
        fallback's value is recorded as the step output instead of failing.
        """
        done, output, attempt = self._begin(name)
        if done:
            logger.debug("Job %s step %s replayed", self._job_id, name)
            return output
        try:
            output = fn()
        except NonRetriableError as exc:
            self._record(name, error=str(exc))
            raise
        except Exception as exc:
            if fallback is not None and attempt >= self._orchestrator.max_attempts:
                logger.warning(
                    "Job %s step %s exhausted %d attempts (%s); using fallback",
                    self._job_id, name, attempt, exc,
                )
                output = fallback()
            else:
                self._record(name, error=f"{type(exc).__name__}: {exc}")
                raise StepFailed(name, attempt, exc) from exc
        self._record(name, output=output)
        return _loads(_dumps(output))

    def send_event(self, name: str, event_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Emit a follow-up job exactly once; the job row and step record commit together."""
        with Session(self._orchestrator.engine) as session:
            repo = PipelineJobsRepository(session)
            step = repo.get_step(self._job_id, name)
            if step is not None and step.status == "completed":
                return _loads(step.output_json)
            job = self._orchestrator.build_job(event_name, payload)
            repo.add(job, commit=False)
            if step is None:
                step = PipelineStep(job_id=self._job_id, name=name)
            step.attempts += 1
            step.status = "completed"
            step.output_json = _dumps({"jobId": job.id, "event": event_name})
            repo.save_step(step, commit=False)
            session.commit()
            result = {"jobId": job.id, "event": event_name}
        logger.info("Job %s emitted %s as job %s", self._job_id, event_name, result["jobId"])
        self._orchestrator.wake()
        return result


@dataclass
class JobContext:
    job_id: str
    name: str
    meeting_id: Optional[str]
    payload: Dict[str, Any]
    step: StepRunner


JobHandler = Callable[[JobContext], Any]


class PipelineOrchestrator:
    def __init__(self, engine: Engine, settings: Settings) -> None:
        self.engine = engine
        self.max_attempts = max(1, int(settings.pipeline_max_attempts))
        self.backoff_seconds = max(0.0, float(settings.pipeline_backoff_seconds))
        self.poll_seconds = max(0.05, float(settings.pipeline_poll_seconds))
        self.worker_count = max(0, int(settings.pipeline_workers))
        self._handlers: Dict[str, JobHandler] = {}
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._threads: List[threading.Thread] = []

    def register(self, event_name: str, handler: JobHandler) -> None:
        self._handlers[event_name] = handler

    @property
    def events(self) -> List[str]:
        return sorted(self._handlers)

    def build_job(self, event_name: str, payload: Dict[str, Any]) -> PipelineJob:
        if event_name not in self._handlers:
            raise ValueError(f"No handler registered for {event_name}")
        return PipelineJob(
            name=event_name,
            meeting_id=payload.get("meetingId"),
            payload_json=_dumps(payload),
        )

    def send(self, event_name: str, payload: Dict[str, Any]) -> str:
        job = self.build_job(event_name, payload)
        with Session(self.engine) as session:
            job = PipelineJobsRepository(session).add(job)
            job_id = job.id
        logger.info("Queued %s job %s for meeting %s", event_name, job_id, payload.get("meetingId"))
        self.wake()
        return job_id

    def wake(self) -> None:
        self._wake_event.set()

    def backoff_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** max(0, attempt - 1))

    def run_job(self, job_id: str) -> Optional[str]:
        """Run one pending job; returns its resulting status, or None if not claimed."""
        with Session(self.engine) as session:
            repo = PipelineJobsRepository(session)
            if not repo.claim(job_id):
                return None
            job = repo.get(job_id)
            if job is None:
                return None
            name, meeting_id, job_attempts = job.name, job.meeting_id, job.attempts
            payload = _loads(job.payload_json) or {}

        handler = self._handlers.get(name)
        if handler is None:
            return self._finish(job_id, "failed", error=f"No handler registered for {name}")

        ctx = JobContext(job_id=job_id, name=name, meeting_id=meeting_id, payload=payload, step=StepRunner(self, job_id))
        try:
            result = handler(ctx)
        except JobAbandoned as exc:
            logger.info("Job %s (%s) abandoned: %s", job_id, name, exc)
            return self._finish(job_id, "abandoned", error=str(exc))
        except NonRetriableError as exc:
            logger.error("Job %s (%s) failed permanently: %s", job_id, name, exc)
            return self._finish(job_id, "failed", error=str(exc))
        except StepFailed as exc:
            return self._retry_or_fail(job_id, name, exc.attempt, str(exc))
        except Exception as exc:
            logger.exception("Job %s (%s) raised outside a step", job_id, name)
            return self._retry_or_fail(job_id, name, job_attempts, f"{type(exc).__name__}: {exc}")
        logger.info("Job %s (%s) completed", job_id, name)
        return self._finish(job_id, "completed", result_json=_dumps(result))

    def _retry_or_fail(self, job_id: str, name: str, attempt: int, error: str) -> str:
        if attempt >= self.max_attempts:
            logger.error("Job %s (%s) failed after %d attempts: %s", job_id, name, attempt, error)
            return self._finish(job_id, "failed", error=error)
        delay = self.backoff_for(attempt)
        logger.warning("Job %s (%s) attempt %d failed, retrying in %.1fs: %s", job_id, name, attempt, delay, error)
        with Session(self.engine) as session:
            PipelineJobsRepository(session).reschedule(job_id, utcnow() + timedelta(seconds=delay), error)
        self.wake()
        return "pending"

    def _finish(self, job_id: str, status: str, *, result_json: Optional[str] = None, error: Optional[str] = None) -> str:
        with Session(self.engine) as session:
            PipelineJobsRepository(session).finish(job_id, status, result_json=result_json, error=error)
        return status

    def run_due(self, limit: int = 20) -> int:
        with Session(self.engine) as session:
            due = PipelineJobsRepository(session).due_ids(utcnow(), limit=limit)
        ran = 0
        for job_id in due:
            if self.run_job(job_id) is not None:
                ran += 1
        return ran

    def drain(self, max_rounds: int = 100) -> int:
        """Run due jobs inline until none are left (or ``max_rounds`` passes)."""
        total = 0
        for _ in range(max_rounds):
            ran = self.run_due()
            if not ran:
                break
            total += ran
        return total

    def recover(self) -> int:
        """Return jobs interrupted by a restart to the queue."""
        with Session(self.engine) as session:
            count = PipelineJobsRepository(session).requeue_running()
        if count:
            logger.info("Requeued %d interrupted pipeline jobs", count)
        return count

    def start(self) -> None:
        self.recover()
        if self._threads or self.worker_count == 0:
            return
        self._stop_event.clear()
        for i in range(self.worker_count):
            t = threading.Thread(target=self._worker_loop, name=f"PipelineWorker-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info("Pipeline started with %d workers", self.worker_count)

    def stop(self) -> None:
        if not self._threads:
            return
        self._stop_event.set()
        self._wake_event.set()
        for t in self._threads:
            t.join(timeout=5.0)
        self._threads = []
        logger.info("Pipeline stopped")

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                ran = self.run_due()
            except Exception:
                logger.exception("Pipeline worker iteration failed")
                ran = 0
            if not ran:
                self._wake_event.wait(self.poll_seconds)
                self._wake_event.clear()

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with Session(self.engine) as session:
            repo = PipelineJobsRepository(session)
            job = repo.get(job_id)
            if job is None:
                return None
            return _describe(job, repo.list_steps(job_id))

    def list_jobs(self, meeting_id: str) -> List[Dict[str, Any]]:
        with Session(self.engine) as session:
            repo = PipelineJobsRepository(session)
            return [_describe(job, repo.list_steps(job.id)) for job in repo.list_by_meeting(meeting_id)]


def _describe(job: PipelineJob, steps: List[PipelineStep]) -> Dict[str, Any]:
    return {
        "id": job.id,
        "name": job.name,
        "meetingId": job.meeting_id,
        "status": job.status,
        "attempts": job.attempts,
        "lastError": job.last_error,
        "result": _loads(job.result_json),
        "createdAt": job.created_at,
        "updatedAt": job.updated_at,
        "steps": [
            {"name": s.name, "status": s.status, "attempts": s.attempts, "lastError": s.last_error}
            for s in steps
        ],
    }
