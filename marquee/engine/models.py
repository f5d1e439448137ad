"""Database models for the catalog engine."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


class ProviderRecord(SQLModel, table=True):
    """Provider configuration as last written by the lifecycle manager."""

    __tablename__ = "providers"

    id: str = Field(primary_key=True, index=True)
    kind: str = Field(index=True)
    priority: int = Field(default=100)
    enabled: bool = Field(default=True, index=True)
    deleted: bool = Field(default=False, index=True)
    config: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class ProviderCategoryRecord(SQLModel, table=True):
    __tablename__ = "provider_categories"
    __table_args__ = (UniqueConstraint("provider_id", "type", "category_id"),)

    id: int | None = Field(default=None, primary_key=True)
    provider_id: str = Field(index=True)
    type: str = Field(index=True)
    category_id: str
    category_name: str
    category_key: str = Field(index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class ProviderTitleRecord(SQLModel, table=True):
    """A provider's view of one title, matched or not."""

    __tablename__ = "provider_titles"
    __table_args__ = (UniqueConstraint("provider_id", "title_key"),)

    id: int | None = Field(default=None, primary_key=True)
    provider_id: str = Field(index=True)
    title_key: str = Field(index=True)
    type: str = Field(index=True)
    title_id: str
    native_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    title: str
    year: int | None = Field(default=None)
    category_id: str | None = Field(default=None, index=True)
    streams: dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    mdb_id: int | None = Field(default=None, index=True)
    external_id: list[str] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    ignored_reason: str | None = Field(default=None)
    search_name: str | None = Field(default=None)
    item_signatures: dict[str, str] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )
    mdb: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    last_updated: datetime | None = Field(default=None, index=True)


class TitleRecord(SQLModel, table=True):
    """Unified catalog entry; ``sources`` is kept sorted by provider priority."""

    __tablename__ = "titles"

    title_key: str = Field(primary_key=True, index=True)
    mdb_id: int = Field(index=True)
    type: str = Field(index=True)
    title: str
    snapshot: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    sources: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class ChannelRecord(SQLModel, table=True):
    __tablename__ = "channels"
    __table_args__ = (UniqueConstraint("provider_id", "channel_id"),)

    id: int | None = Field(default=None, primary_key=True)
    provider_id: str = Field(index=True)
    channel_id: str = Field(index=True)
    name: str
    url: str
    tvg_id: str | None = Field(default=None, index=True)
    logo: str | None = Field(default=None)
    group_title: str | None = Field(default=None)


class ProgramRecord(SQLModel, table=True):
    __tablename__ = "programs"
    __table_args__ = (UniqueConstraint("provider_id", "channel_id", "start_ts"),)

    id: int | None = Field(default=None, primary_key=True)
    provider_id: str = Field(index=True)
    channel_id: str = Field(index=True)
    start_ts: datetime = Field(index=True)
    stop_ts: datetime | None = Field(default=None)
    title: str
    description: str | None = Field(default=None)


class JobHistoryRecord(SQLModel, table=True):
    """One run of a named job; a new row per run."""

    __tablename__ = "job_history"

    run_id: str = Field(primary_key=True, index=True)
    job_name: str = Field(index=True)
    status: str = Field(default="running", index=True)
    provider_id: str | None = Field(default=None, index=True)
    started_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    finished_at: datetime | None = Field(default=None, index=True)
    result: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    error_message: str | None = Field(default=None)


class JobLogRecord(SQLModel, table=True):
    """Structured log event associated with a job run."""

    __tablename__ = "job_logs"

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(index=True)
    level: str = Field(default="info", index=True)
    message: str
    context: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON, nullable=True)
    )
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class UserRecord(SQLModel, table=True):
    """Catalog user; the engine only touches the watchlist."""

    __tablename__ = "users"

    username: str = Field(primary_key=True)
    watchlist: dict[str, list[str]] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )


class StatsRecord(SQLModel, table=True):
    __tablename__ = "stats"

    key: str = Field(primary_key=True)
    metrics: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
