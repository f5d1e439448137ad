"""Removal of persisted rows invalidated by provider configuration changes."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable

from ..schemas import MEDIA_TYPES, ProviderConfig
from ..stores.category_store import CategoryStore
from ..stores.live_store import ChannelStore, ProgramStore
from ..stores.provider_store import ProviderStore
from ..stores.provider_title_store import ProviderTitleStore
from ..stores.title_store import TitleStore
from ..stores.user_store import UserStore
from ..utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

FOLLOW_UP_JOBS = ("sync_provider_titles", "sync_live_tv")


@dataclass
class CleanupReport:
    providers_removed: list[str] = field(default_factory=list)
    provider_titles_deleted: int = 0
    categories_deleted: int = 0
    channels_deleted: int = 0
    programs_deleted: int = 0
    sources_removed: int = 0
    titles_deleted: int = 0
    watchlist_entries_removed: int = 0
    triggered: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CleanupStores:
    providers: ProviderStore
    provider_titles: ProviderTitleStore
    titles: TitleStore
    categories: CategoryStore
    channels: ChannelStore
    programs: ProgramStore
    users: UserStore


class CleanupEngine:
    """Runs the cleanup steps in order, each committed before the next one reads.

    1. inactive (disabled or deleted) providers lose everything they own;
    2. disabled media types of active providers are removed;
    3. titles outside a non-empty enabled-category list are removed;
    4. Titles left without sources are deleted;
    5. watchlists drop references to vanished titles and channels;
    6. title and live syncs are triggered.
    """

    def __init__(
        self,
        stores: CleanupStores,
        *,
        trigger: Callable[[str], Awaitable[dict[str, Any]]] | None = None,
    ) -> None:
        self._stores = stores
        self._trigger = trigger

    async def run(self, token: CancellationToken | None = None) -> CleanupReport:
        token = token or CancellationToken()
        report = CleanupReport()
        providers = await asyncio.to_thread(self._stores.providers.list_all)

        for provider in providers:
            if not provider.active:
                token.check()
                await self._remove_provider(provider, report)

        for provider in providers:
            if provider.active:
                token.check()
                await self._remove_disabled_types(provider, report)

        for provider in providers:
            if provider.active:
                token.check()
                await self._remove_disabled_categories(provider, report)

        token.check()
        orphans = await asyncio.to_thread(self._stores.titles.delete_orphans)
        report.titles_deleted += len(orphans)

        token.check()
        title_keys = await asyncio.to_thread(self._stores.titles.keys)
        channel_keys = await asyncio.to_thread(self._stores.channels.keys)
        report.watchlist_entries_removed = await asyncio.to_thread(
            self._stores.users.prune_watchlists, title_keys, channel_keys
        )

        if self._trigger is not None:
            for job_name in FOLLOW_UP_JOBS:
                report.triggered.append(await self._trigger(job_name))

        logger.info(
            "Cleanup removed %d provider titles, %d sources, %d titles",
            report.provider_titles_deleted,
            report.sources_removed,
            report.titles_deleted,
        )
        return report

    async def _remove_provider(self, provider: ProviderConfig, report: CleanupReport) -> None:
        stores = self._stores
        removed = await asyncio.to_thread(stores.titles.remove_provider, provider.id)
        report.sources_removed += removed.total
        report.titles_deleted += removed.deleted
        report.provider_titles_deleted += await asyncio.to_thread(
            stores.provider_titles.delete_by, provider_id=provider.id
        )
        report.categories_deleted += await asyncio.to_thread(stores.categories.delete_by, provider_id=provider.id)
        await self._remove_live(provider, report)
        report.providers_removed.append(provider.id)
        logger.info("[%s] Removed all rows of inactive provider", provider.id)

    async def _remove_live(self, provider: ProviderConfig, report: CleanupReport) -> None:
        report.programs_deleted += await asyncio.to_thread(self._stores.programs.delete_by, provider_id=provider.id)
        report.channels_deleted += await asyncio.to_thread(self._stores.channels.delete_by, provider_id=provider.id)

    async def _remove_disabled_types(self, provider: ProviderConfig, report: CleanupReport) -> None:
        for media_type in MEDIA_TYPES:
            if provider.type_enabled(media_type):
                continue
            await self._remove_titles(provider, report, type=media_type)
            report.categories_deleted += await asyncio.to_thread(
                self._stores.categories.delete_by, provider_id=provider.id, type=media_type
            )
        if not provider.type_enabled("live"):
            await self._remove_live(provider, report)

    async def _remove_disabled_categories(self, provider: ProviderConfig, report: CleanupReport) -> None:
        for media_type in MEDIA_TYPES:
            allowed = provider.category_filter(media_type)
            if allowed is None:
                continue
            await self._remove_titles(provider, report, type=media_type, category_id__not_in=sorted(allowed))
        # Live category filters are applied by the live sync triggered afterwards.

    async def _remove_titles(self, provider: ProviderConfig, report: CleanupReport, **query: Any) -> None:
        stores = self._stores
        rows = await asyncio.to_thread(stores.provider_titles.find_by, provider_id=provider.id, **query)
        if not rows:
            return
        matched = {row.title_key for row in rows if row.mdb_id is not None}
        if matched:
            removed = await asyncio.to_thread(stores.titles.remove_provider, provider.id, matched)
            report.sources_removed += removed.total
            report.titles_deleted += removed.deleted
        report.provider_titles_deleted += await asyncio.to_thread(
            stores.provider_titles.delete_by,
            provider_id=provider.id,
            title_key__in=[row.title_key for row in rows],
        )
