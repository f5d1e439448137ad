"""Provider change events and the follow-up work each one requires."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from ..errors import UnknownProvider
from ..schemas import ProviderConfig, RateLimitSpec
from ..stores.provider_store import ProviderStore
from ..stores.provider_title_store import ProviderTitleStore
from .cache_policy import CachePolicyEngine
from .disk_cache import DiskCache
from .http_client import HttpClient, provider_bucket
from .registry import ProviderRegistry
from .scheduler import JobScheduler

logger = logging.getLogger(__name__)


class ProviderAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    ENABLED = "enabled"
    DISABLED = "disabled"
    DELETED = "deleted"
    CATEGORIES_CHANGED = "categories-changed"


@dataclass(frozen=True)
class ProviderChangeEvent:
    provider_id: str
    action: ProviderAction
    config: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        # Raises ValueError for actions outside the enum.
        object.__setattr__(self, "action", ProviderAction(self.action))


@dataclass
class LifecycleResult:
    provider_id: str
    action: str
    actions: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"provider_id": self.provider_id, "action": self.action, "actions": list(self.actions)}


class ProviderLifecycleManager:
    """Applies provider change events: persist, refresh, re-register and trigger jobs.

    Cleanups requested by events are debounced over a sliding window so a
    burst of changes produces one cleanup run.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        providers: ProviderStore,
        provider_titles: ProviderTitleStore,
        scheduler: JobScheduler,
        http: HttpClient,
        policy: CachePolicyEngine,
        cache: DiskCache,
        *,
        default_rate: RateLimitSpec,
        cleanup_debounce: float = 60,
    ) -> None:
        self._registry = registry
        self._providers = providers
        self._provider_titles = provider_titles
        self._scheduler = scheduler
        self._http = http
        self._policy = policy
        self._cache = cache
        self._default_rate = default_rate
        self._cleanup_debounce = cleanup_debounce
        self._cleanup_handle: asyncio.TimerHandle | None = None
        self._handlers: dict[ProviderAction, Callable[[ProviderChangeEvent, list], Awaitable[None]]] = {
            ProviderAction.CREATED: self._on_created,
            ProviderAction.UPDATED: self._on_updated,
            ProviderAction.ENABLED: self._on_enabled,
            ProviderAction.DISABLED: self._on_disabled,
            ProviderAction.DELETED: self._on_deleted,
            ProviderAction.CATEGORIES_CHANGED: self._on_categories_changed,
        }

    @property
    def cleanup_pending(self) -> bool:
        return self._cleanup_handle is not None

    async def on_change(self, event: ProviderChangeEvent) -> LifecycleResult:
        if event.action is not ProviderAction.CREATED and event.provider_id not in self._registry:
            raise UnknownProvider(event.provider_id)
        actions: list[dict[str, Any]] = []
        await self._handlers[event.action](event, actions)
        logger.info("[%s] Provider %s: %d follow-up actions", event.provider_id, event.action.value, len(actions))
        return LifecycleResult(provider_id=event.provider_id, action=event.action.value, actions=actions)

    def activate(self, provider: ProviderConfig) -> list[dict[str, Any]]:
        """Register the provider's rate bucket and cache rules."""

        spec = provider.rate_limit or self._default_rate
        bucket = provider_bucket(provider.id)
        self._http.register_bucket(bucket, spec)
        self._policy.register_provider(provider.id, provider.kind)
        return [
            {"type": "register-rate-bucket", "bucket": bucket, "concurrency": spec.concurrency, "window_sec": spec.window_sec},
            {"type": "register-cache-policy", "kind": provider.kind},
        ]

    def close(self) -> None:
        if self._cleanup_handle is not None:
            self._cleanup_handle.cancel()
            self._cleanup_handle = None

    # Handlers ---------------------------------------------------------

    async def _on_created(self, event: ProviderChangeEvent, actions: list) -> None:
        if event.config is None:
            raise UnknownProvider(event.provider_id)
        provider = await self._persist(event.provider_id, event.config, actions)
        actions.extend(self.activate(provider))
        if provider.active:
            actions.append(await self._scheduler.try_trigger("sync_provider_categories", provider_id=provider.id))
            actions.append(await self._scheduler.try_trigger("sync_provider_titles", provider_id=provider.id))

    async def _on_updated(self, event: ProviderChangeEvent, actions: list) -> None:
        provider = await self._persist(event.provider_id, event.config or {}, actions)
        actions.extend(self.activate(provider))
        if provider.active:
            actions.append(await self._scheduler.try_trigger("sync_provider_titles", provider_id=provider.id))
        else:
            actions.append(await self._schedule_cleanup())

    async def _on_enabled(self, event: ProviderChangeEvent, actions: list) -> None:
        provider = await self._persist(event.provider_id, {**(event.config or {}), "enabled": True}, actions)
        actions.extend(self.activate(provider))
        reset = await asyncio.to_thread(self._provider_titles.reset_last_updated, provider.id)
        actions.append({"type": "reset-last-updated", "titles": reset})
        actions.append(await self._scheduler.try_trigger("sync_provider_titles", provider_id=provider.id))

    async def _on_disabled(self, event: ProviderChangeEvent, actions: list) -> None:
        await self._persist(event.provider_id, {"enabled": False}, actions)
        actions.append(await self._schedule_cleanup())

    async def _on_deleted(self, event: ProviderChangeEvent, actions: list) -> None:
        provider = await self._persist(event.provider_id, {"deleted": True}, actions)
        self._policy.unregister_provider(provider.id)
        self._http.unregister_bucket(provider_bucket(provider.id))
        actions.append({"type": "unregister-cache-policy"})
        prefix = f"{provider.kind}/{provider.id}"
        cleared = await asyncio.to_thread(self._cache.clear_prefix, prefix)
        actions.append({"type": "clear-cache", "prefix": prefix, "cleared": cleared})
        actions.append(await self._schedule_cleanup())

    async def _on_categories_changed(self, event: ProviderChangeEvent, actions: list) -> None:
        changes = {}
        if event.config and "enabled_categories" in event.config:
            changes["enabled_categories"] = event.config["enabled_categories"]
        await self._persist(event.provider_id, changes, actions)
        actions.append(await self._schedule_cleanup())

    # Helpers ----------------------------------------------------------

    async def _persist(self, provider_id: str, changes: dict[str, Any], actions: list) -> ProviderConfig:
        base: dict[str, Any] = {}
        if provider_id in self._registry:
            base = self._registry.get(provider_id).model_dump()
            if "api_rate" in changes:
                base.pop("rate_limit", None)
        provider = ProviderConfig.model_validate({**base, **changes, "id": provider_id})
        saved = await asyncio.to_thread(self._providers.save, provider)
        self._registry.refresh(saved)
        actions.append({"type": "persist-config"})
        actions.append({"type": "refresh-registry", "enabled": saved.enabled, "deleted": saved.deleted})
        return saved

    async def _schedule_cleanup(self) -> dict[str, Any]:
        if self._cleanup_debounce <= 0:
            return await self._scheduler.try_trigger("cleanup")
        if self._cleanup_handle is not None:
            self._cleanup_handle.cancel()
        loop = asyncio.get_running_loop()
        self._cleanup_handle = loop.call_later(self._cleanup_debounce, self._fire_cleanup)
        return {"type": "schedule-cleanup", "delay_sec": self._cleanup_debounce}

    def _fire_cleanup(self) -> None:
        self._cleanup_handle = None
        self._scheduler.request("cleanup")
