"""Pydantic models shared by the engine and exposed by its HTTP port."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

MEDIA_TYPES: tuple[str, ...] = ("movies", "tvshows")
SYNC_TYPES: tuple[str, ...] = ("movies", "tvshows", "live")

ProviderKind = Literal["m3u", "xtream"]
JobStatus = Literal["running", "completed", "failed", "cancelled"]


class RateLimitSpec(BaseModel):
    """Concurrency and rolling-window bound for one request bucket."""

    model_config = ConfigDict(frozen=True)

    concurrency: int = Field(
        default=10,
        ge=1,
        validation_alias=AliasChoices("concurrency", "concurrent", "concurrect"),
        description="Maximum in-flight requests, also the number of starts allowed per window.",
    )
    window_sec: float = Field(default=1.0, gt=0, description="Rolling window length in seconds.")


class CachePolicyRule(BaseModel):
    """One ``pattern -> ttl`` entry; a null TTL never expires."""

    pattern: str
    ttl_hours: float | None = Field(default=None, ge=0)


class ProviderDetails(BaseModel):
    """Account state reported by the provider's authentication endpoint."""

    expiration_date: datetime | None = None
    max_connections: int = 0
    active_connections: int = 0
    active: bool | None = None
    last_checked: datetime | None = None
    last_error: str | None = None


class ProviderConfig(BaseModel):
    """Typed provider record; unknown upstream fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    kind: ProviderKind
    base_url: str
    username: str | None = None
    password: str | None = None
    priority: int = Field(default=100, description="Smaller values win when sources are ordered.")
    enabled: bool = True
    deleted: bool = False
    sync_media_types: dict[str, bool] = Field(
        default_factory=lambda: {media_type: True for media_type in SYNC_TYPES}
    )
    enabled_categories: dict[str, list[str]] = Field(default_factory=dict)
    cleanup_rules: list[tuple[str, str]] = Field(default_factory=list)
    ignored_titles: list[str] = Field(default_factory=list)
    rate_limit: RateLimitSpec | None = Field(
        default=None,
        validation_alias=AliasChoices("rate_limit", "api_rate"),
    )
    playlist_urls: dict[str, str] = Field(default_factory=dict)
    epg_url: str | None = None
    details: ProviderDetails | None = None

    @field_validator("enabled_categories", mode="before")
    @classmethod
    def _normalize_category_keys(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        normalized: dict[str, list[str]] = {}
        for media_type, categories in value.items():
            prefix = f"{media_type}-"
            ids = []
            for category in categories or []:
                category = str(category)
                ids.append(category[len(prefix):] if category.startswith(prefix) else category)
            normalized[media_type] = ids
        return normalized

    @property
    def active(self) -> bool:
        return self.enabled and not self.deleted

    def type_enabled(self, media_type: str) -> bool:
        """Whether a media type should be synced; an empty category list disables it."""

        if not self.sync_media_types.get(media_type, True):
            return False
        categories = self.enabled_categories.get(media_type)
        return categories is None or len(categories) > 0

    def category_filter(self, media_type: str) -> frozenset[str] | None:
        categories = self.enabled_categories.get(media_type)
        if not categories:
            return None
        return frozenset(categories)

    def redacted(self) -> dict[str, Any]:
        payload = self.model_dump()
        if payload.get("password"):
            payload["password"] = "***"
        return payload


class ProviderTitleModel(BaseModel):
    """Stored provider-side title as returned by the repository."""

    model_config = ConfigDict(from_attributes=True)

    provider_id: str
    title_key: str
    type: str
    title_id: str
    native_ids: list[str] = Field(default_factory=list)
    title: str
    year: int | None = None
    category_id: str | None = None
    streams: dict[str, str] = Field(default_factory=dict)
    mdb_id: int | None = None
    external_id: list[str] | None = None
    ignored_reason: str | None = None
    search_name: str | None = None
    item_signatures: dict[str, str] = Field(default_factory=dict)
    mdb: dict[str, Any] | None = None
    last_updated: datetime | None = None


class TitleModel(BaseModel):
    """Unified catalog entry with ordered provider sources."""

    model_config = ConfigDict(from_attributes=True)

    title_key: str
    mdb_id: int
    type: str
    title: str
    snapshot: dict[str, Any] = Field(default_factory=dict)
    sources: list[dict[str, Any]] = Field(default_factory=list)
    updated_at: datetime | None = None


class CategoryModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider_id: str
    type: str
    category_id: str
    category_name: str
    category_key: str


class ChannelModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider_id: str
    channel_id: str
    name: str
    url: str
    tvg_id: str | None = None
    logo: str | None = None
    group_title: str | None = None


class ProgramModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider_id: str
    channel_id: str
    start_ts: datetime
    stop_ts: datetime | None = None
    title: str
    description: str | None = None


class UserModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    username: str
    watchlist: dict[str, list[str]] = Field(default_factory=dict)


class StatsModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    metrics: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime


class JobHistoryModel(BaseModel):
    """One persisted job run."""

    model_config = ConfigDict(from_attributes=True)

    run_id: str
    job_name: str
    status: JobStatus
    provider_id: str | None = None
    started_at: datetime
    finished_at: datetime | None = None
    result: dict[str, Any] | None = None
    error_message: str | None = None
    duration_seconds: float | None = None


class JobLogCreate(BaseModel):
    """Payload accepted when appending a job log event."""

    level: Literal["debug", "info", "warning", "error"] = Field(default="info")
    message: str = Field(..., min_length=1)
    context: dict[str, Any] | None = Field(default=None)


class JobLogModel(JobLogCreate):
    """Persisted job log event."""

    id: int
    run_id: str
    created_at: datetime


class JobStatusModel(BaseModel):
    """Scheduler view of one named job."""

    name: str
    state: Literal["idle", "running"]
    cron: str | None = None
    run_id: str | None = None
    provider_id: str | None = None
    last_execution: datetime | None = None
    last_status: JobStatus | None = None
    next_run: datetime | None = None
    blocked_by: list[str] = Field(default_factory=list)
    post_execute: list[str] = Field(default_factory=list)


class JobTriggerRequest(BaseModel):
    provider_id: str | None = Field(default=None, description="Restrict the run to one provider.")


class JobTriggerResponse(BaseModel):
    job_name: str
    run_id: str


class ProviderEventRequest(BaseModel):
    """Lifecycle event body; ``action`` is validated by the lifecycle manager."""

    action: str
    config: dict[str, Any] | None = None


class LifecycleResultModel(BaseModel):
    provider_id: str
    action: str
    actions: list[dict[str, Any]] = Field(default_factory=list)


class SchedulerHealth(BaseModel):
    running: bool
    jobs: int
    active: list[str] = Field(default_factory=list)


class HealthStatus(BaseModel):
    """Service health payload."""

    status: Literal["ok"] = Field(default="ok")
    version: str = Field(default="0.1.0", description="Semantic version of the engine.")
    scheduler: SchedulerHealth
    mdb_enabled: bool = False
