"""Shared repository behaviour for SQLModel-backed stores."""
from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Any, Generic, Iterable, Iterator, TypeVar

from pydantic import BaseModel
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from ..errors import RepositoryError
from .ops import BulkWriteResult, Delete, Upsert

RecordT = TypeVar("RecordT", bound=SQLModel)
ModelT = TypeVar("ModelT", bound=BaseModel)


class RecordStore(Generic[RecordT, ModelT]):
    """Typed ``find_by / bulk_write / delete_by / upsert`` contract over one table.

    Queries are keyword filters: ``field=value`` tests equality (``None`` tests
    for NULL), ``field__in=[...]`` and ``field__not_in=[...]`` test membership.
    Bulk writes run in submission order inside a single transaction.
    """

    record_type: type[RecordT]
    model_type: type[ModelT]
    key_fields: tuple[str, ...]

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = Lock()

    def find_by(self, **query: Any) -> list[ModelT]:
        statement = self._where(select(self.record_type), query)
        with self._session() as session:
            return [self._to_model(record) for record in session.exec(statement)]

    def get(self, *key: Any) -> ModelT | None:
        with self._session() as session:
            record = self._get_record(session, key)
            return self._to_model(record) if record is not None else None

    def count(self, **query: Any) -> int:
        return len(self.find_by(**query))

    def delete_by(self, **query: Any) -> int:
        statement = self._where(select(self.record_type), query)
        with self._lock, self._session() as session:
            records = session.exec(statement).all()
            for record in records:
                session.delete(record)
            session.commit()
            return len(records)

    def upsert(self, key: tuple[Any, ...], doc: dict[str, Any]) -> ModelT:
        with self._lock, self._session() as session:
            record = self._apply_upsert(session, key, doc)
            session.commit()
            session.refresh(record)
            return self._to_model(record)

    def bulk_write(self, ops: Iterable[Any]) -> BulkWriteResult:
        result = BulkWriteResult()
        with self._lock, self._session() as session:
            for op in ops:
                self._apply(session, op, result)
                session.flush()
            session.commit()
        return result

    def _apply(self, session: Session, op: Any, result: BulkWriteResult) -> None:
        if isinstance(op, Upsert):
            self._apply_upsert(session, op.key, op.doc)
            result.upserted += 1
        elif isinstance(op, Delete):
            record = self._get_record(session, op.key)
            if record is not None:
                session.delete(record)
                result.deleted += 1
                result.deleted_keys.append(op.key)
        else:
            raise TypeError(f"{type(self).__name__} cannot apply {type(op).__name__}")

    def _apply_upsert(self, session: Session, key: tuple[Any, ...], doc: dict[str, Any]) -> RecordT:
        record = self._get_record(session, key)
        if record is None:
            record = self.record_type(**{**doc, **dict(zip(self.key_fields, key))})
        else:
            for name, value in doc.items():
                setattr(record, name, value)
        self._touch(record)
        session.add(record)
        return record

    def _touch(self, record: RecordT) -> None:
        """Hook for stores that stamp modification times."""

    def _get_record(self, session: Session, key: tuple[Any, ...]) -> RecordT | None:
        if len(key) != len(self.key_fields):
            raise ValueError(f"Expected key {self.key_fields}, got {key!r}")
        query = dict(zip(self.key_fields, key))
        return session.exec(self._where(select(self.record_type), query)).first()

    def _where(self, statement, query: dict[str, Any]):
        for name, value in query.items():
            field_name, _, operator = name.partition("__")
            column = getattr(self.record_type, field_name)
            if operator == "in":
                statement = statement.where(column.in_(list(value)))
            elif operator == "not_in":
                statement = statement.where(column.not_in(list(value)))
            elif operator:
                raise ValueError(f"Unsupported query operator: {name}")
            elif value is None:
                statement = statement.where(column.is_(None))
            else:
                statement = statement.where(column == value)
        return statement

    def _to_model(self, record: RecordT) -> ModelT:
        return self.model_type.model_validate(record, from_attributes=True)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self._engine) as session:
                yield session
        except SQLAlchemyError as exc:
            raise RepositoryError(f"{self.record_type.__tablename__}: {exc}") from exc
