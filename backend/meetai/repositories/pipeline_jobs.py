from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from sqlalchemy import update
from sqlmodel import Session, col, select

from meetai.models.base import utcnow
from meetai.models.pipeline_job import PipelineJob, PipelineStep


class PipelineJobsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, job: PipelineJob, commit: bool = True) -> PipelineJob:
        self.session.add(job)
        if commit:
            self.session.commit()
            self.session.refresh(job)
        return job

    def get(self, job_id: str) -> Optional[PipelineJob]:
        return self.session.get(PipelineJob, job_id)

    def list_by_meeting(self, meeting_id: str) -> list[PipelineJob]:
        statement = (
            select(PipelineJob)
            .where(PipelineJob.meeting_id == meeting_id)
            .order_by(col(PipelineJob.created_at).asc())
        )
        return list(self.session.exec(statement))

    def due_ids(self, now: datetime, limit: int = 20) -> list[str]:
        statement = (
            select(PipelineJob.id)
            .where(PipelineJob.status == "pending", col(PipelineJob.next_run_at) <= now)
            .order_by(col(PipelineJob.next_run_at).asc(), col(PipelineJob.created_at).asc())
            .limit(limit)
        )
        return list(self.session.exec(statement))

    def claim(self, job_id: str) -> bool:
        """Move a pending job to running; False if another worker got it first."""
        statement = (
            update(PipelineJob)
            .where(PipelineJob.id == job_id, PipelineJob.status == "pending")
            .values(status="running", attempts=PipelineJob.attempts + 1, updated_at=utcnow())
        )
        result = self.session.connection().execute(statement)
        self.session.commit()
        return result.rowcount == 1

    def finish(self, job_id: str, status: str, *, result_json: Optional[str] = None, error: Optional[str] = None) -> None:
        values: dict[str, Any] = {"status": status, "updated_at": utcnow()}
        if result_json is not None:
            values["result_json"] = result_json
        if error is not None:
            values["last_error"] = error
        self.session.connection().execute(update(PipelineJob).where(PipelineJob.id == job_id).values(**values))
        self.session.commit()

    def reschedule(self, job_id: str, run_at: datetime, error: str) -> None:
        statement = (
            update(PipelineJob)
            .where(PipelineJob.id == job_id)
            .values(status="pending", next_run_at=run_at, last_error=error, updated_at=utcnow())
        )
        self.session.connection().execute(statement)
        self.session.commit()

    def requeue_running(self) -> int:
        statement = update(PipelineJob).where(PipelineJob.status == "running").values(status="pending", updated_at=utcnow())
        result = self.session.connection().execute(statement)
        self.session.commit()
        return int(result.rowcount or 0)

    def get_step(self, job_id: str, name: str) -> Optional[PipelineStep]:
        statement = select(PipelineStep).where(PipelineStep.job_id == job_id, PipelineStep.name == name)
        return self.session.exec(statement).first()

    def list_steps(self, job_id: str) -> list[PipelineStep]:
        statement = select(PipelineStep).where(PipelineStep.job_id == job_id).order_by(col(PipelineStep.id).asc())
        return list(self.session.exec(statement))

    def save_step(self, step: PipelineStep, commit: bool = True) -> PipelineStep:
        step.updated_at = utcnow()
        self.session.add(step)
        if commit:
            self.session.commit()
            self.session.refresh(step)
        return step
