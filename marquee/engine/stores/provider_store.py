"""Persistence for provider configuration records."""
from __future__ import annotations

from datetime import datetime

from ..models import ProviderRecord
from ..schemas import ProviderConfig, ProviderDetails
from .base import RecordStore


class ProviderStore(RecordStore[ProviderRecord, ProviderConfig]):
    record_type = ProviderRecord
    model_type = ProviderConfig
    key_fields = ("id",)

    def save(self, provider: ProviderConfig) -> ProviderConfig:
        """Insert or replace the stored configuration for ``provider``."""

        return self.upsert(
            (provider.id,),
            {
                "kind": provider.kind,
                "priority": provider.priority,
                "enabled": provider.enabled,
                "deleted": provider.deleted,
                "config": provider.model_dump(mode="json"),
            },
        )

    def list_all(self) -> list[ProviderConfig]:
        return self.find_by()

    def update_details(self, provider_id: str, details: ProviderDetails) -> ProviderConfig | None:
        """Replace only the stored account details, leaving the rest of the config alone."""

        with self._lock, self._session() as session:
            record = self._get_record(session, (provider_id,))
            if record is None:
                return None
            record.config = {**record.config, "details": details.model_dump(mode="json")}
            self._touch(record)
            session.add(record)
            session.commit()
            session.refresh(record)
            return self._to_model(record)

    def _touch(self, record: ProviderRecord) -> None:
        record.updated_at = datetime.utcnow()

    def _to_model(self, record: ProviderRecord) -> ProviderConfig:
        return ProviderConfig.model_validate(
            {
                **record.config,
                "id": record.id,
                "kind": record.kind,
                "priority": record.priority,
                "enabled": record.enabled,
                "deleted": record.deleted,
            }
        )
