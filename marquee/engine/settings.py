"""Runtime configuration for the catalog engine."""
from __future__ import annotations

from typing import Any

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError
from .schemas import CachePolicyRule, RateLimitSpec
from .utils.paths import default_cache_dir, default_database_url


class EngineSettings(BaseSettings):
    """Environment-aware settings for the engine, its scheduler and HTTP port."""

    mdb_token: str | None = Field(
        default=None, description="Bearer token for the movie database; matching is disabled without it."
    )
    mdb_base_url: str = Field(default="https://api.themoviedb.org/3")
    mdb_language: str = Field(default="en-US")

    cache_dir: str = Field(
        default_factory=default_cache_dir, description="Root directory of the on-disk response cache."
    )
    cache_policy: list[CachePolicyRule] = Field(
        default_factory=list,
        description="Ordered pattern to TTL rules; unmatched entries never expire.",
    )
    cache_purge_enabled: bool = Field(
        default=True, description="When disabled the purger only reports what it would delete."
    )

    http_timeout_ms: int = Field(default=30_000, gt=0)
    http_max_attempts: int = Field(default=3, ge=1)
    http_backoff_base_sec: float = Field(default=0.5, ge=0)
    per_provider_rate: RateLimitSpec = Field(default_factory=RateLimitSpec)
    mdb_rate: RateLimitSpec = Field(default_factory=lambda: RateLimitSpec(concurrency=40, window_sec=1))

    job_flush_interval_ms: int = Field(default=5_000, gt=0)
    flush_max_failures: int = Field(default=3, ge=1)
    job_cron: dict[str, str] = Field(default_factory=dict)
    job_soft_timeout_sec: float = Field(default=7_200, ge=0, description="0 disables the soft timeout.")
    scheduler_enabled: bool = Field(default=True, description="Evaluate cron cadences in the background.")
    scheduler_tick_sec: float = Field(default=30, gt=0)

    match_workers: int = Field(default=8, ge=1)
    work_queue_size: int = Field(default=200, ge=1)
    cancel_check_interval: int = Field(default=100, ge=1)
    cleanup_debounce_sec: float = Field(default=60, ge=0)

    database_url: str = Field(default_factory=default_database_url)
    database_echo: bool = Field(default=False, description="Enable SQL echo for debugging queries.")
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)

    model_config = SettingsConfigDict(
        env_prefix="MARQUEE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    @field_validator("cache_policy", mode="before")
    @classmethod
    def _policy_from_mapping(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return [{"pattern": pattern, "ttl_hours": ttl} for pattern, ttl in value.items()]
        return value

    @property
    def http_timeout(self) -> float:
        return self.http_timeout_ms / 1000

    @property
    def flush_interval(self) -> float:
        return self.job_flush_interval_ms / 1000


def load_settings(**overrides: Any) -> EngineSettings:
    """Build settings from the environment, surfacing validation problems as ConfigError."""

    try:
        return EngineSettings(**overrides)
    except ValidationError as exc:
        raise ConfigError(f"Invalid engine configuration: {exc}") from exc
