"""Database-backed history of scheduler job runs."""
from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import func
from sqlmodel import select

from ..errors import RepositoryError
from ..models import JobHistoryRecord
from ..schemas import JobHistoryModel
from .job_log_store import job_session


class JobHistoryStore:
    """Thread-safe record of job runs, one row per ``run_id``."""

    def __init__(self, engine) -> None:
        self._engine = engine
        self._lock = Lock()

    def start_run(self, job_name: str, *, provider_id: str | None = None) -> JobHistoryModel:
        """Create a running entry for a new run of ``job_name``."""

        record = JobHistoryRecord(
            run_id=uuid4().hex,
            job_name=job_name,
            status="running",
            provider_id=provider_id,
            started_at=datetime.utcnow(),
        )
        with self._lock, job_session(self._engine) as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return _to_model(record)

    def finish_run(
        self,
        run_id: str,
        *,
        status: str,
        result: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> JobHistoryModel:
        """Move a run into a terminal state."""

        with self._lock, job_session(self._engine) as session:
            record = session.get(JobHistoryRecord, run_id)
            if record is None:
                raise RepositoryError(f"Job run {run_id} not found")
            record.status = status
            record.finished_at = datetime.utcnow()
            if result is not None:
                record.result = result
            if error_message is not None:
                record.error_message = error_message
            session.add(record)
            session.commit()
            session.refresh(record)
            return _to_model(record)

    def get(self, run_id: str) -> JobHistoryModel | None:
        with job_session(self._engine) as session:
            record = session.get(JobHistoryRecord, run_id)
            return _to_model(record) if record else None

    def list(
        self,
        *,
        job_name: str | None = None,
        statuses: list[str] | None = None,
        limit: int = 50,
    ) -> list[JobHistoryModel]:
        """Return the most recent runs, newest first."""

        statement = select(JobHistoryRecord)
        if job_name:
            statement = statement.where(JobHistoryRecord.job_name == job_name)
        if statuses:
            statement = statement.where(JobHistoryRecord.status.in_(sorted(set(statuses))))
        statement = statement.order_by(JobHistoryRecord.started_at.desc()).limit(limit)
        with job_session(self._engine) as session:
            records: Iterable[JobHistoryRecord] = session.exec(statement)
            return [_to_model(record) for record in records]

    def last_executions(self) -> dict[str, tuple[datetime, str]]:
        """Latest finished run start time and status per job name."""

        latest = (
            select(JobHistoryRecord.job_name, func.max(JobHistoryRecord.started_at).label("started_at"))
            .where(JobHistoryRecord.finished_at.is_not(None))
            .group_by(JobHistoryRecord.job_name)
            .subquery()
        )
        statement = select(JobHistoryRecord.job_name, JobHistoryRecord.started_at, JobHistoryRecord.status).join(
            latest,
            (JobHistoryRecord.job_name == latest.c.job_name)
            & (JobHistoryRecord.started_at == latest.c.started_at),
        )
        with job_session(self._engine) as session:
            return {name: (started_at, status) for name, started_at, status in session.exec(statement)}

    def running_count(self, job_name: str) -> int:
        with job_session(self._engine) as session:
            return session.exec(
                select(func.count())
                .select_from(JobHistoryRecord)
                .where(JobHistoryRecord.job_name == job_name)
                .where(JobHistoryRecord.status == "running")
            ).one()

    def reset_in_progress(self, *, reason: str = "interrupted by restart") -> int:
        """Mark runs left ``running`` by a previous process as cancelled."""

        with self._lock, job_session(self._engine) as session:
            records = session.exec(
                select(JobHistoryRecord).where(JobHistoryRecord.status == "running")
            ).all()
            now = datetime.utcnow()
            for record in records:
                record.status = "cancelled"
                record.finished_at = now
                record.error_message = reason
                session.add(record)
            session.commit()
            return len(records)


def _to_model(record: JobHistoryRecord) -> JobHistoryModel:
    """Convert a JobHistoryRecord into the public response model."""

    duration_seconds: float | None = None
    if record.started_at and record.finished_at:
        duration_seconds = (record.finished_at - record.started_at).total_seconds()

    return JobHistoryModel(
        run_id=record.run_id,
        job_name=record.job_name,
        status=record.status,
        provider_id=record.provider_id,
        started_at=record.started_at,
        finished_at=record.finished_at,
        result=record.result,
        error_message=record.error_message,
        duration_seconds=duration_seconds,
    )
