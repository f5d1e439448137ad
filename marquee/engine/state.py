"""Composition root wiring settings, stores, services and jobs together."""
from __future__ import annotations

import logging

import httpx

from .db import create_engine_from_settings, init_database
from .errors import ConfigError
from .providers import adapter_class
from .providers.base import ProviderAdapter
from .schemas import ProviderConfig
from .services.cache_policy import CachePolicyEngine
from .services.cleanup import CleanupStores
from .services.disk_cache import DiskCache
from .services.http_client import HttpClient
from .services.jobs import (
    CachePurgeJob,
    CleanupJob,
    SyncLiveTvJob,
    SyncProviderCategoriesJob,
    SyncProviderDetailsJob,
    SyncProviderTitlesJob,
    UpdateMetricsJob,
)
from .services.lifecycle import ProviderChangeEvent, ProviderLifecycleManager
from .services.matching import MatchingEngine
from .services.mdb import MdbClient
from .services.registry import ProviderRegistry
from .services.scheduler import JobScheduler
from .settings import EngineSettings
from .stores.category_store import CategoryStore
from .stores.job_history_store import JobHistoryStore
from .stores.job_log_store import JobLogStore
from .stores.live_store import ChannelStore, ProgramStore
from .stores.provider_store import ProviderStore
from .stores.provider_title_store import ProviderTitleStore
from .stores.stats_store import StatsStore
from .stores.title_store import TitleStore
from .stores.user_store import UserStore
from .utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class EngineRuntime:
    """Owns every long-lived engine object; nothing here is a module global."""

    def __init__(self, settings: EngineSettings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self.engine = create_engine_from_settings(settings)
        init_database(self.engine)

        self.providers = ProviderStore(self.engine)
        self.categories = CategoryStore(self.engine)
        self.provider_titles = ProviderTitleStore(self.engine)
        self.titles = TitleStore(self.engine)
        self.channels = ChannelStore(self.engine)
        self.programs = ProgramStore(self.engine)
        self.users = UserStore(self.engine)
        self.stats = StatsStore(self.engine)
        self.job_history = JobHistoryStore(self.engine)
        self.job_logs = JobLogStore(self.engine)

        self.policy = CachePolicyEngine(settings.cache_policy)
        self.cache = DiskCache(settings.cache_dir, self.policy, purge_enabled=settings.cache_purge_enabled)
        self.http = HttpClient(settings, transport=transport)
        self.registry = ProviderRegistry(self.providers.list_all())

        self.mdb: MdbClient | None = None
        self.matcher: MatchingEngine | None = None
        if settings.mdb_token:
            self.mdb = MdbClient(settings, self.http, self.cache)
            self.matcher = MatchingEngine(self.mdb)
        else:
            logger.warning("No MDB token configured; titles will be stored unmatched")

        self.scheduler = JobScheduler(
            self.job_history,
            self.job_logs,
            soft_timeout=settings.job_soft_timeout_sec,
            tick_interval=settings.scheduler_tick_sec,
            cron_enabled=settings.scheduler_enabled,
        )
        self._register_jobs()

        self.lifecycle = ProviderLifecycleManager(
            self.registry,
            self.providers,
            self.provider_titles,
            self.scheduler,
            self.http,
            self.policy,
            self.cache,
            default_rate=settings.per_provider_rate,
            cleanup_debounce=settings.cleanup_debounce_sec,
        )
        for provider in self.registry.snapshot():
            if not provider.deleted:
                self.lifecycle.activate(provider)

    def adapter_for(self, provider: ProviderConfig, token: CancellationToken) -> ProviderAdapter:
        return adapter_class(provider.kind)(provider, self.http, self.cache, token=token)

    def _register_jobs(self) -> None:
        cleanup_stores = CleanupStores(
            providers=self.providers,
            provider_titles=self.provider_titles,
            titles=self.titles,
            categories=self.categories,
            channels=self.channels,
            programs=self.programs,
            users=self.users,
        )
        jobs = [
            SyncProviderTitlesJob(
                self.registry,
                self.adapter_for,
                self.matcher,
                provider_titles=self.provider_titles,
                titles=self.titles,
                categories=self.categories,
                settings=self.settings,
            ),
            SyncProviderCategoriesJob(self.registry, self.adapter_for, self.categories),
            SyncLiveTvJob(self.registry, self.adapter_for, channels=self.channels, programs=self.programs),
            SyncProviderDetailsJob(self.registry, self.adapter_for, self.providers, self._disable_provider),
            CleanupJob(cleanup_stores),
            CachePurgeJob(self.cache),
            UpdateMetricsJob(self.stats),
        ]
        names = {job.name for job in jobs}
        unknown = sorted(set(self.settings.job_cron) - names)
        if unknown:
            raise ConfigError(f"Cron overrides name unknown jobs: {', '.join(unknown)}")
        for job in jobs:
            self.scheduler.register(job, self.settings.job_cron.get(job.name))

    async def _disable_provider(self, provider_id: str) -> None:
        await self.lifecycle.on_change(ProviderChangeEvent(provider_id, "disabled"))

    async def start(self) -> None:
        await self.scheduler.start()

    async def stop(self) -> None:
        self.lifecycle.close()
        await self.scheduler.stop()
        await self.http.aclose()
        self.engine.dispose()
