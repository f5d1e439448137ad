"""Persistence helpers for job log events."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterable, Iterator

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from ..errors import RepositoryError
from ..models import JobLogRecord
from ..schemas import JobLogCreate, JobLogModel

LEVEL_ORDER = ("debug", "info", "warning", "error")


@contextmanager
def job_session(engine) -> Iterator[Session]:
    """Session whose SQLAlchemy failures surface as RepositoryError."""

    try:
        with Session(engine) as session:
            yield session
    except SQLAlchemyError as exc:
        raise RepositoryError(str(exc)) from exc


class JobLogStore:
    """Store and retrieve structured log events for job runs."""

    def __init__(self, engine) -> None:
        self._engine = engine

    def append(self, run_id: str, payload: JobLogCreate) -> JobLogModel:
        """Persist a new log event for a run."""

        record = JobLogRecord(
            run_id=run_id,
            level=payload.level,
            message=payload.message,
            context=payload.context,
        )
        with job_session(self._engine) as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            return _to_model(record)

    def list_for_run(
        self,
        run_id: str,
        *,
        limit: int = 100,
        min_level: str | None = None,
    ) -> list[JobLogModel]:
        """Return a run's events oldest first, optionally only from ``min_level`` up."""

        statement = select(JobLogRecord).where(JobLogRecord.run_id == run_id)
        if min_level is not None:
            levels = LEVEL_ORDER[LEVEL_ORDER.index(min_level):]
            statement = statement.where(JobLogRecord.level.in_(levels))
        statement = statement.order_by(JobLogRecord.created_at.asc(), JobLogRecord.id.asc()).limit(limit)
        with job_session(self._engine) as session:
            records: Iterable[JobLogRecord] = session.exec(statement)
            return [_to_model(record) for record in records]


def _to_model(record: JobLogRecord) -> JobLogModel:
    return JobLogModel(
        id=record.id,
        run_id=record.run_id,
        level=record.level,
        message=record.message,
        context=record.context,
        created_at=record.created_at,
    )
