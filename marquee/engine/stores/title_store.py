"""Persistence for unified catalog titles and their provider sources."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlmodel import Session, select

from ..models import TitleRecord
from ..schemas import TitleModel
from .base import RecordStore
from .ops import BulkWriteResult, RemoveTitleSource, UpsertTitleSource


def source_sort_key(source: dict[str, Any]) -> tuple[int, str]:
    return int(source.get("priority", 0)), str(source.get("provider_id", ""))


class TitleStore(RecordStore[TitleRecord, TitleModel]):
    """Titles keyed by ``title_key``.

    Besides plain upserts and deletes, ``bulk_write`` understands
    :class:`UpsertTitleSource` and :class:`RemoveTitleSource`. Sources are
    re-sorted by ``(priority, provider_id)`` after every change and a Title
    whose last source is removed is deleted in the same transaction.
    """

    record_type = TitleRecord
    model_type = TitleModel
    key_fields = ("title_key",)

    def sources_for_provider(self, provider_id: str) -> dict[str, dict[str, Any]]:
        """Map ``title_key`` to the source ``provider_id`` currently contributes."""

        found: dict[str, dict[str, Any]] = {}
        with self._session() as session:
            for record in session.exec(select(TitleRecord)):
                for source in record.sources:
                    if source.get("provider_id") == provider_id:
                        found[record.title_key] = source
                        break
        return found

    def remove_provider(self, provider_id: str, title_keys: set[str] | None = None) -> BulkWriteResult:
        """Drop a provider's sources, optionally limited to ``title_keys``."""

        contributed = self.sources_for_provider(provider_id)
        keys = sorted(contributed if title_keys is None else set(contributed) & set(title_keys))
        return self.bulk_write(RemoveTitleSource(key, provider_id) for key in keys)

    def delete_orphans(self) -> list[str]:
        """Delete Titles whose sources list is empty."""

        with self._lock, self._session() as session:
            orphans = [record for record in session.exec(select(TitleRecord)) if not record.sources]
            for record in orphans:
                session.delete(record)
            session.commit()
            return [record.title_key for record in orphans]

    def keys(self) -> set[str]:
        with self._session() as session:
            return set(session.exec(select(TitleRecord.title_key)))

    def _apply(self, session: Session, op: Any, result: BulkWriteResult) -> None:
        if isinstance(op, UpsertTitleSource):
            self._upsert_source(session, op)
            result.upserted += 1
        elif isinstance(op, RemoveTitleSource):
            self._remove_source(session, op, result)
        else:
            super()._apply(session, op, result)

    def _upsert_source(self, session: Session, op: UpsertTitleSource) -> None:
        record = session.get(TitleRecord, op.title_key)
        if record is None:
            snapshot = dict(op.snapshot)
            record = TitleRecord(
                title_key=op.title_key,
                mdb_id=int(snapshot["mdb_id"]),
                type=str(snapshot["type"]),
                title=str(snapshot.get("title") or op.title_key),
                snapshot=snapshot,
                sources=[],
            )
        provider_id = op.source["provider_id"]
        sources = [source for source in record.sources if source.get("provider_id") != provider_id]
        sources.append(dict(op.source))
        record.sources = sorted(sources, key=source_sort_key)
        record.updated_at = datetime.utcnow()
        session.add(record)

    def _remove_source(self, session: Session, op: RemoveTitleSource, result: BulkWriteResult) -> None:
        record = session.get(TitleRecord, op.title_key)
        if record is None:
            return
        remaining = [source for source in record.sources if source.get("provider_id") != op.provider_id]
        if len(remaining) == len(record.sources):
            return
        if remaining:
            record.sources = remaining
            record.updated_at = datetime.utcnow()
            session.add(record)
            result.upserted += 1
        else:
            session.delete(record)
            result.deleted += 1
            result.deleted_keys.append(op.title_key)

    def _touch(self, record: TitleRecord) -> None:
        record.updated_at = datetime.utcnow()
