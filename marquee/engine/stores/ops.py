"""Bulk write operations understood by the repository stores."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Upsert:
    key: tuple[Any, ...]
    doc: dict[str, Any]


@dataclass(frozen=True)
class Delete:
    key: tuple[Any, ...]


@dataclass(frozen=True)
class UpsertTitleSource:
    """Insert or replace one provider's source on a Title, creating the Title if needed."""

    title_key: str
    source: dict[str, Any]
    snapshot: dict[str, Any]


@dataclass(frozen=True)
class RemoveTitleSource:
    title_key: str
    provider_id: str


@dataclass
class BulkWriteResult:
    upserted: int = 0
    deleted: int = 0
    deleted_keys: list[Any] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.upserted + self.deleted
