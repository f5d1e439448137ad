"""Persistence for per-provider title records."""
from __future__ import annotations

from datetime import datetime

from sqlmodel import select

from ..models import ProviderTitleRecord
from ..schemas import ProviderTitleModel
from .base import RecordStore


class ProviderTitleStore(RecordStore[ProviderTitleRecord, ProviderTitleModel]):
    record_type = ProviderTitleRecord
    model_type = ProviderTitleModel
    key_fields = ("provider_id", "title_key")

    def reset_last_updated(self, provider_id: str) -> int:
        """Clear ``last_updated`` so every title of the provider is matched again."""

        statement = select(ProviderTitleRecord).where(ProviderTitleRecord.provider_id == provider_id)
        with self._lock, self._session() as session:
            records = session.exec(statement).all()
            for record in records:
                record.last_updated = None
                session.add(record)
            session.commit()
            return len(records)

    def _touch(self, record: ProviderTitleRecord) -> None:
        record.last_updated = datetime.utcnow()
