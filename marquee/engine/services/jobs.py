"""Concrete scheduler jobs composing adapters, matching, saving and cleanup."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

from ..errors import FetchError, JobCancelled, JobFailed, UnknownProvider
from ..providers.base import ProviderAdapter
from ..schemas import MEDIA_TYPES, ProviderConfig, ProviderDetails
from ..settings import EngineSettings
from ..stores.category_store import CategoryStore
from ..stores.live_store import ChannelStore, ProgramStore
from ..stores.ops import Delete, Upsert
from ..stores.provider_store import ProviderStore
from ..stores.provider_title_store import ProviderTitleStore
from ..stores.stats_store import StatsStore
from ..stores.title_store import TitleStore
from ..utils.cancellation import CancellationToken
from .cleanup import CleanupEngine, CleanupStores
from .disk_cache import DiskCache
from .matching import MatchingEngine
from .processing import ProcessingManager
from .registry import ProviderRegistry
from .save_coordinator import Collection, SaveCoordinator
from .scheduler import Job, JobContext

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[ProviderConfig, CancellationToken], ProviderAdapter]

ERROR_RATIO_LIMIT = 0.5


def _providers_for(registry: ProviderRegistry, ctx: JobContext, media_type: str | None = None) -> list[ProviderConfig]:
    """Enabled providers, or the scoped one; a scope naming an unknown provider fails the run."""

    if ctx.provider_id is not None:
        try:
            providers = [registry.get(ctx.provider_id)]
        except UnknownProvider as exc:
            raise JobFailed(str(exc)) from exc
        providers = [provider for provider in providers if provider.active]
    else:
        providers = registry.enabled()
    if media_type is not None:
        providers = [provider for provider in providers if provider.type_enabled(media_type)]
    return providers


class SyncProviderTitlesJob(Job):
    """Run every enabled provider through its processing manager concurrently."""

    name = "sync_provider_titles"
    default_cron = "0 * * * *"
    blocked_by = ("cleanup",)
    post_execute = ("update_metrics",)

    def __init__(
        self,
        registry: ProviderRegistry,
        adapter_factory: AdapterFactory,
        matcher: MatchingEngine | None,
        *,
        provider_titles: ProviderTitleStore,
        titles: TitleStore,
        categories: CategoryStore,
        settings: EngineSettings,
    ) -> None:
        self._registry = registry
        self._adapter_factory = adapter_factory
        self._matcher = matcher
        self._provider_titles = provider_titles
        self._titles = titles
        self._categories = categories
        self._settings = settings

    async def run(self, ctx: JobContext) -> dict[str, Any]:
        providers = _providers_for(self._registry, ctx)
        await ctx.log.info("Syncing provider titles", providers=[provider.id for provider in providers])

        coordinator = SaveCoordinator(
            {
                Collection.CATEGORIES: self._categories,
                Collection.PROVIDER_TITLES: self._provider_titles,
                Collection.TITLES: self._titles,
            },
            interval=self._settings.flush_interval,
            max_failures=self._settings.flush_max_failures,
        )
        managers = [
            ProcessingManager(
                provider,
                self._adapter_factory(provider, ctx.token),
                self._matcher,
                coordinator,
                provider_titles=self._provider_titles,
                titles=self._titles,
                categories=self._categories,
                token=ctx.token,
                workers=self._settings.match_workers,
                queue_size=self._settings.work_queue_size,
                check_interval=self._settings.cancel_check_interval,
            )
            for provider in providers
        ]

        coordinator.start()
        try:
            outcomes = await asyncio.gather(*(manager.process() for manager in managers), return_exceptions=True)
        finally:
            flush = await coordinator.stop()

        failures: list[str] = []
        cancelled = ctx.token.cancelled
        for manager, outcome in zip(managers, outcomes):
            if isinstance(outcome, JobCancelled):
                cancelled = True
            elif isinstance(outcome, Exception):
                logger.error("[%s] Processing failed: %s", manager.provider.id, outcome, exc_info=outcome)
                failures.append(f"[{manager.provider.id}] {type(outcome).__name__}: {outcome}")
            elif isinstance(outcome, BaseException):
                raise outcome
            failures.extend(f"[{manager.provider.id}] {error}" for error in manager.report.fatal_errors)

        fetched = sum(manager.report.total("fetched") for manager in managers)
        errors = sum(manager.report.total("errors") for manager in managers)
        result = {
            "providers": {manager.provider.id: manager.report.as_dict() for manager in managers},
            "fetched": fetched,
            "matched": sum(manager.report.total("matched") for manager in managers),
            "ignored": sum(manager.report.total("ignored") for manager in managers),
            "errors": errors,
            "flush": flush.as_dict(),
        }
        for manager in managers:
            await ctx.log.info(
                f"[{manager.provider.id}] processed",
                fetched=manager.report.total("fetched"),
                matched=manager.report.total("matched"),
                errors=manager.report.total("errors"),
            )

        if cancelled:
            raise JobCancelled(ctx.token.reason or "cancelled", result=result)
        if flush.escalated or flush.pending:
            failures.append(f"{flush.pending} staged writes could not be saved")
        if fetched and errors > fetched * ERROR_RATIO_LIMIT:
            failures.append(f"{errors} of {fetched} titles failed")
        if failures:
            raise JobFailed("; ".join(failures), result=result)
        return result


class SyncProviderCategoriesJob(Job):
    """Refresh stored categories, dropping ones the provider no longer lists."""

    name = "sync_provider_categories"
    default_cron = "0 * * * *"

    def __init__(self, registry: ProviderRegistry, adapter_factory: AdapterFactory, categories: CategoryStore) -> None:
        self._registry = registry
        self._adapter_factory = adapter_factory
        self._categories = categories

    async def run(self, ctx: JobContext) -> dict[str, Any]:
        result: dict[str, Any] = {"providers": {}, "errors": []}
        attempted = 0
        for provider in _providers_for(self._registry, ctx):
            adapter = self._adapter_factory(provider, ctx.token)
            counts: dict[str, dict[str, int]] = {}
            for media_type in MEDIA_TYPES:
                if not provider.type_enabled(media_type):
                    continue
                ctx.token.check()
                attempted += 1
                try:
                    categories = await adapter.fetch_categories(media_type)
                except FetchError as exc:
                    result["errors"].append(f"[{provider.id}] {media_type}: {exc}")
                    await ctx.log.warning(f"[{provider.id}] {media_type} categories failed", error=str(exc))
                    continue
                counts[media_type] = await self._store(provider.id, media_type, categories)
            result["providers"][provider.id] = counts

        if attempted and len(result["errors"]) == attempted:
            raise JobFailed("Every category fetch failed", result=result)
        return result

    async def _store(self, provider_id: str, media_type: str, categories: list) -> dict[str, int]:
        stored = await asyncio.to_thread(self._categories.find_by, provider_id=provider_id, type=media_type)
        fetched_ids = {category.category_id for category in categories}
        ops: list[Any] = []
        for category in categories:
            key = (provider_id, media_type, category.category_id)
            ops.append(
                Upsert(
                    key,
                    {"category_name": category.name, "category_key": f"{media_type}-{category.category_id}"},
                )
            )
        for row in stored:
            if row.category_id not in fetched_ids:
                ops.append(Delete((provider_id, media_type, row.category_id)))
        written = await asyncio.to_thread(self._categories.bulk_write, ops)
        return {"upserted": written.upserted, "deleted": written.deleted}


class SyncLiveTvJob(Job):
    """Replace each provider's channels and programme guide."""

    name = "sync_live_tv"
    default_cron = "0 */6 * * *"

    def __init__(
        self,
        registry: ProviderRegistry,
        adapter_factory: AdapterFactory,
        *,
        channels: ChannelStore,
        programs: ProgramStore,
    ) -> None:
        self._registry = registry
        self._adapter_factory = adapter_factory
        self._channels = channels
        self._programs = programs

    async def run(self, ctx: JobContext) -> dict[str, Any]:
        result: dict[str, Any] = {"providers": {}, "errors": []}
        providers = _providers_for(self._registry, ctx, "live")
        for provider in providers:
            ctx.token.check()
            adapter = self._adapter_factory(provider, ctx.token)
            try:
                pairs = await adapter.fetch_live_channels()
            except FetchError as exc:
                result["errors"].append(f"[{provider.id}] {exc}")
                await ctx.log.warning(f"[{provider.id}] channel listing failed", error=str(exc))
                continue

            allowed = provider.category_filter("live")
            channels = [channel for channel, category_id in pairs if allowed is None or category_id in allowed]
            stored = await asyncio.to_thread(self._channels.replace_for_provider, provider.id, channels)
            summary = {"channels": stored, "programs": None}

            ctx.token.check()
            try:
                guide = await adapter.fetch_epg()
            except FetchError as exc:
                await ctx.log.warning(f"[{provider.id}] EPG fetch failed", error=str(exc))
            else:
                by_tvg = {channel.tvg_id: channel.channel_id for channel in channels if channel.tvg_id}
                programs = {}
                for program in guide:
                    channel_id = by_tvg.get(program.channel_id)
                    if channel_id is None:
                        continue
                    programs.setdefault(
                        (channel_id, program.start_ts), program.model_copy(update={"channel_id": channel_id})
                    )
                summary["programs"] = await asyncio.to_thread(
                    self._programs.replace_for_provider, provider.id, programs.values()
                )
            result["providers"][provider.id] = summary

        if providers and len(result["errors"]) == len(providers):
            raise JobFailed("Every channel listing failed", result=result)
        return result


class SyncProviderDetailsJob(Job):
    """Refresh account details and disable providers the upstream reports inactive."""

    name = "sync_provider_details"
    default_cron = "* * * * *"

    def __init__(
        self,
        registry: ProviderRegistry,
        adapter_factory: AdapterFactory,
        providers: ProviderStore,
        disable: Callable[[str], Awaitable[Any]],
    ) -> None:
        self._registry = registry
        self._adapter_factory = adapter_factory
        self._providers = providers
        self._disable = disable

    async def run(self, ctx: JobContext) -> dict[str, Any]:
        results: list[dict[str, Any]] = []
        disabled: list[str] = []
        for provider in _providers_for(self._registry, ctx):
            ctx.token.check()
            adapter = self._adapter_factory(provider, ctx.token)
            try:
                details = await adapter.fetch_account()
            except FetchError as exc:
                await ctx.log.warning(f"[{provider.id}] account check failed", error=str(exc))
                await self._save(provider.id, ProviderDetails(last_checked=datetime.utcnow(), last_error=str(exc)))
                results.append({"provider_id": provider.id, "success": False, "error": str(exc)})
                continue
            if details is None:
                continue

            await self._save(provider.id, details)
            results.append({"provider_id": provider.id, "success": True})
            if details.active is False:
                await ctx.log.warning(f"[{provider.id}] Provider reported inactive, disabling it")
                await self._disable(provider.id)
                disabled.append(provider.id)

        failures = sum(1 for entry in results if not entry["success"])
        result = {
            "providers_processed": len(results),
            "success_count": len(results) - failures,
            "failure_count": failures,
            "disabled": disabled,
            "results": results,
        }
        if results and failures == len(results):
            raise JobFailed("Every account check failed", result=result)
        return result

    async def _save(self, provider_id: str, details: ProviderDetails) -> None:
        saved = await asyncio.to_thread(self._providers.update_details, provider_id, details)
        if saved is not None:
            self._registry.refresh(saved)


class CleanupJob(Job):
    name = "cleanup"
    default_cron = "*/30 * * * *"
    blocked_by = ("sync_provider_titles",)

    def __init__(self, stores: CleanupStores) -> None:
        self._stores = stores

    async def run(self, ctx: JobContext) -> dict[str, Any]:
        async def follow_up(job_name: str) -> dict[str, Any]:
            ctx.request(job_name)
            return {"type": "trigger", "job": job_name, "status": "requested"}

        engine = CleanupEngine(self._stores, trigger=follow_up)
        report = await engine.run(ctx.token)
        return report.as_dict()


class CachePurgeJob(Job):
    name = "cache_purge"
    default_cron = "*/15 * * * *"

    def __init__(self, cache: DiskCache) -> None:
        self._cache = cache

    async def run(self, ctx: JobContext) -> dict[str, Any]:
        report = await asyncio.to_thread(self._cache.purge)
        return report.as_dict()


class UpdateMetricsJob(Job):
    name = "update_metrics"
    default_cron = "* * * * *"

    def __init__(self, stats: StatsStore) -> None:
        self._stats = stats

    async def run(self, ctx: JobContext) -> dict[str, Any]:
        counts = await asyncio.to_thread(self._stats.catalog_counts)
        await asyncio.to_thread(self._stats.record, "catalog", counts)
        return counts
