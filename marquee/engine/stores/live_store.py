"""Persistence for live TV channels and their programme guide."""
from __future__ import annotations

from typing import Iterable

from sqlalchemy import delete
from sqlmodel import select

from ..models import ChannelRecord, ProgramRecord
from ..schemas import ChannelModel, ProgramModel
from .base import RecordStore


class ProgramStore(RecordStore[ProgramRecord, ProgramModel]):
    record_type = ProgramRecord
    model_type = ProgramModel
    key_fields = ("provider_id", "channel_id", "start_ts")

    def replace_for_provider(self, provider_id: str, programs: Iterable[ProgramModel]) -> int:
        """Swap a provider's guide for ``programs`` in one transaction."""

        rows = [ProgramRecord(**program.model_dump()) for program in programs]
        with self._lock, self._session() as session:
            session.exec(delete(ProgramRecord).where(ProgramRecord.provider_id == provider_id))
            session.add_all(rows)
            session.commit()
        return len(rows)


class ChannelStore(RecordStore[ChannelRecord, ChannelModel]):
    record_type = ChannelRecord
    model_type = ChannelModel
    key_fields = ("provider_id", "channel_id")

    def replace_for_provider(self, provider_id: str, channels: Iterable[ChannelModel]) -> int:
        """Swap a provider's channel list; programmes of dropped channels go first."""

        rows = [ChannelRecord(**channel.model_dump()) for channel in channels]
        keep = {row.channel_id for row in rows}
        with self._lock, self._session() as session:
            session.exec(
                delete(ProgramRecord)
                .where(ProgramRecord.provider_id == provider_id)
                .where(ProgramRecord.channel_id.not_in(keep))
            )
            session.exec(delete(ChannelRecord).where(ChannelRecord.provider_id == provider_id))
            session.add_all(rows)
            session.commit()
        return len(rows)

    def keys(self) -> set[str]:
        """Watchlist keys (``live-<provider>-<channel>``) of every stored channel."""

        statement = select(ChannelRecord.provider_id, ChannelRecord.channel_id)
        with self._session() as session:
            return {f"live-{provider_id}-{channel_id}" for provider_id, channel_id in session.exec(statement)}
