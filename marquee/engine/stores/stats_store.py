"""Persistence for catalog metrics snapshots."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlmodel import select

from ..models import ChannelRecord, ProviderTitleRecord, StatsRecord, TitleRecord
from ..schemas import StatsModel
from .base import RecordStore


class StatsStore(RecordStore[StatsRecord, StatsModel]):
    record_type = StatsRecord
    model_type = StatsModel
    key_fields = ("key",)

    def record(self, key: str, metrics: dict[str, Any]) -> StatsModel:
        return self.upsert((key,), {"metrics": metrics})

    def catalog_counts(self) -> dict[str, Any]:
        """Aggregate title, provider-title and channel counts."""

        with self._session() as session:
            title_rows = session.exec(
                select(TitleRecord.type, func.count()).group_by(TitleRecord.type).order_by(TitleRecord.type)
            ).all()
            provider_rows = session.exec(
                select(ProviderTitleRecord.provider_id, ProviderTitleRecord.type, func.count())
                .group_by(ProviderTitleRecord.provider_id, ProviderTitleRecord.type)
                .order_by(ProviderTitleRecord.provider_id, ProviderTitleRecord.type)
            ).all()
            matched = session.exec(
                select(func.count())
                .select_from(ProviderTitleRecord)
                .where(ProviderTitleRecord.mdb_id.is_not(None))
            ).one()
            ignored = session.exec(
                select(func.count())
                .select_from(ProviderTitleRecord)
                .where(ProviderTitleRecord.ignored_reason.is_not(None))
            ).one()
            channels = session.exec(select(func.count()).select_from(ChannelRecord)).one()

        per_provider: dict[str, dict[str, int]] = {}
        for provider_id, media_type, count in provider_rows:
            per_provider.setdefault(provider_id, {})[media_type] = count
        return {
            "titles": {media_type: count for media_type, count in title_rows},
            "provider_titles": per_provider,
            "matched": matched,
            "ignored": ignored,
            "channels": channels,
        }

    def _touch(self, record: StatsRecord) -> None:
        record.updated_at = datetime.utcnow()
