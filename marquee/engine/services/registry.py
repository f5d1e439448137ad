"""In-memory provider registry owned by the engine runtime."""
from __future__ import annotations

from typing import Iterable

from ..errors import UnknownProvider
from ..schemas import ProviderConfig


class ProviderRegistry:
    """Point-in-time view of provider configurations keyed by id.

    Mutations replace whole entries so readers holding a previous
    :meth:`snapshot` keep a consistent view.
    """

    def __init__(self, providers: Iterable[ProviderConfig] = ()) -> None:
        self._providers: dict[str, ProviderConfig] = {}
        self.load(providers)

    def load(self, providers: Iterable[ProviderConfig]) -> None:
        self._providers = {provider.id: provider for provider in providers}

    def refresh(self, provider: ProviderConfig) -> None:
        providers = dict(self._providers)
        providers[provider.id] = provider
        self._providers = providers

    def remove(self, provider_id: str) -> ProviderConfig | None:
        providers = dict(self._providers)
        removed = providers.pop(provider_id, None)
        self._providers = providers
        return removed

    def get(self, provider_id: str) -> ProviderConfig:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise UnknownProvider(provider_id) from None

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def __len__(self) -> int:
        return len(self._providers)

    def snapshot(self) -> list[ProviderConfig]:
        """Every known provider, ordered by priority then id."""

        return sorted(self._providers.values(), key=lambda provider: (provider.priority, provider.id))

    def enabled(self) -> list[ProviderConfig]:
        return [provider for provider in self.snapshot() if provider.active]
