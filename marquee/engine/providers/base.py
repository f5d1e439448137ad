"""Shared adapter behaviour: cached fetches, title cleanup and ignore lists."""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import AsyncIterator

from ..schemas import ChannelModel, ProgramModel, ProviderConfig, ProviderDetails
from ..services.disk_cache import DiskCache
from ..services.http_client import HttpClient, provider_bucket
from ..utils.cancellation import CancellationToken
from ..utils.text import collapse_whitespace, split_title_year

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Category:
    type: str
    category_id: str
    name: str


@dataclass(frozen=True)
class RawTitle:
    """Provider title in canonical form, before matching.

    ``external_id`` is ``(kind, id)`` when the provider exposes a canonical
    identifier (``imdb`` or ``mdb``). ``details_ref`` is whatever the adapter
    needs to expand the title in :meth:`ProviderAdapter.fetch_details`.
    """

    type: str
    native_id: str
    name: str
    title: str
    year: int | None
    category_id: str
    streams: dict[str, str] = field(default_factory=dict)
    external_id: tuple[str, str] | None = None
    details_ref: str | None = None

    def signature(self) -> str:
        payload = json.dumps(asdict(self), sort_keys=True, ensure_ascii=False, default=list)
        return hashlib.sha1(payload.encode("utf-8")).hexdigest()


class ProviderAdapter(ABC):
    """Translate one provider's native payloads into canonical records."""

    kind: str

    def __init__(
        self,
        provider: ProviderConfig,
        http: HttpClient,
        cache: DiskCache,
        *,
        token: CancellationToken | None = None,
    ) -> None:
        self.provider = provider
        self._http = http
        self._cache = cache
        self._token = token or CancellationToken()
        self._bucket = provider_bucket(provider.id)
        self._rules = _compile_rules(provider)
        self._ignored = {value.casefold() for value in provider.ignored_titles}

    @abstractmethod
    async def fetch_categories(self, media_type: str) -> list[Category]:
        """Return the provider's categories for ``media_type``."""

    @abstractmethod
    def fetch_titles(self, media_type: str) -> AsyncIterator[RawTitle]:
        """Yield cleaned titles of ``media_type`` in upstream order."""

    async def fetch_details(self, raw: RawTitle) -> RawTitle:
        """Expand a title with per-title upstream data; most kinds need none."""

        return raw

    @abstractmethod
    async def fetch_live_channels(self) -> list[tuple[ChannelModel, str | None]]:
        """Return live channels paired with their category id."""

    async def fetch_epg(self) -> list[ProgramModel]:
        """Return programme entries keyed by ``tvg_id`` in ``channel_id``."""

        return []

    async def fetch_account(self) -> ProviderDetails | None:
        """Return account details where the kind exposes them."""

        return None

    def clean_title(self, name: str) -> tuple[str, int | None]:
        """Apply the provider's cleanup rules in order, then split off a year."""

        text = name
        for pattern, replacement in self._rules:
            text = pattern.sub(replacement, text)
        title, year = split_title_year(collapse_whitespace(text))
        return title, year

    def is_ignored(self, native_id: str, title: str) -> bool:
        return native_id.casefold() in self._ignored or title.casefold() in self._ignored

    async def _cached_fetch(self, key: str, url: str, params: dict[str, str] | None = None) -> bytes:
        data = await asyncio.to_thread(self._cache.get, key)
        if data is not None:
            return data
        data = await self._http.fetch(self._bucket, url, params=params, token=self._token)
        await asyncio.to_thread(self._cache.put, key, data)
        return data

    def _cache_key(self, *parts: str) -> str:
        return "/".join((self.kind, self.provider.id, *parts))


def _compile_rules(provider: ProviderConfig) -> list[tuple[re.Pattern[str], str]]:
    compiled = []
    for pattern, replacement in provider.cleanup_rules:
        try:
            compiled.append((re.compile(pattern), replacement))
        except re.error as exc:
            logger.warning("[%s] Skipping invalid cleanup rule %r: %s", provider.id, pattern, exc)
    return compiled
