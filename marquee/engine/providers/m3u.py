"""M3U playlist adapter."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator

from ..schemas import ChannelModel, ProgramModel
from ..utils.text import collapse_whitespace, short_hash
from .base import Category, ProviderAdapter, RawTitle
from .xmltv import parse_xmltv

logger = logging.getLogger(__name__)

UNCATEGORIZED = "uncategorized"

_ATTRIBUTE = re.compile(r'([A-Za-z0-9_-]+)="([^"]*)"')
_EPISODE = re.compile(r"^(?P<show>.*?)[\s._-]*S(?P<season>\d{1,2})\s*E(?P<episode>\d{1,4})\b", re.IGNORECASE)
_IMDB_ID = re.compile(r"^tt\d+$")


@dataclass(frozen=True)
class PlaylistEntry:
    name: str
    url: str
    attributes: dict[str, str]

    @property
    def group(self) -> str:
        return self.attributes.get("group-title", "").strip() or UNCATEGORIZED

    @property
    def tvg_id(self) -> str | None:
        return self.attributes.get("tvg-id", "").strip() or None


def parse_playlist(text: str) -> list[PlaylistEntry]:
    """Parse ``#EXTINF`` lines followed by their URL line."""

    entries: list[PlaylistEntry] = []
    pending: tuple[str, dict[str, str]] | None = None
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("#EXTINF"):
            body = line.split(":", 1)[1] if ":" in line else ""
            attributes = dict(_ATTRIBUTE.findall(body))
            residual = _ATTRIBUTE.sub("", body)
            name = residual.split(",", 1)[1] if "," in residual else ""
            name = collapse_whitespace(name) or attributes.get("tvg-name", "").strip()
            pending = (name, attributes)
            continue
        if line.startswith("#"):
            continue
        if pending is None:
            continue
        name, attributes = pending
        pending = None
        if name:
            entries.append(PlaylistEntry(name=name, url=line, attributes=attributes))
    return entries


def category_id_for(name: str) -> str:
    return short_hash(name.casefold())


class M3UAdapter(ProviderAdapter):
    """Flat playlist per media type; categories come from ``group-title``."""

    kind = "m3u"

    def playlist_url(self, media_type: str) -> str:
        template = self.provider.playlist_urls.get(media_type)
        if template is None:
            return f"{self.provider.base_url.rstrip('/')}/{media_type}.m3u"
        return template.format(
            username=self.provider.username or "",
            password=self.provider.password or "",
            type=media_type,
        )

    async def fetch_categories(self, media_type: str) -> list[Category]:
        seen: dict[str, Category] = {}
        for entry in await self._entries(media_type):
            category_id = category_id_for(entry.group)
            if category_id not in seen:
                seen[category_id] = Category(type=media_type, category_id=category_id, name=entry.group)
        return list(seen.values())

    async def fetch_titles(self, media_type: str) -> AsyncIterator[RawTitle]:
        entries = await self._entries(media_type)
        titles = self._series(entries) if media_type == "tvshows" else self._movies(entries)
        for raw in titles:
            if self.is_ignored(raw.native_id, raw.title):
                logger.debug("[%s] Ignoring %s", self.provider.id, raw.name)
                continue
            yield raw

    async def fetch_live_channels(self) -> list[tuple[ChannelModel, str | None]]:
        channels = []
        for entry in await self._entries("live"):
            channel_id = entry.tvg_id or short_hash(entry.url, 16)
            channel = ChannelModel(
                provider_id=self.provider.id,
                channel_id=channel_id,
                name=entry.name,
                url=entry.url,
                tvg_id=entry.tvg_id,
                logo=entry.attributes.get("tvg-logo") or None,
                group_title=entry.group,
            )
            channels.append((channel, category_id_for(entry.group)))
        return channels

    async def fetch_epg(self) -> list[ProgramModel]:
        if not self.provider.epg_url:
            return []
        data = await self._cached_fetch(self._cache_key("live", "epg"), self.provider.epg_url)
        return parse_xmltv(data, self.provider.id)

    async def _entries(self, media_type: str) -> list[PlaylistEntry]:
        data = await self._cached_fetch(self._cache_key(media_type, "playlist"), self.playlist_url(media_type))
        return parse_playlist(data.decode("utf-8", errors="replace"))

    def _movies(self, entries: list[PlaylistEntry]) -> list[RawTitle]:
        titles = []
        for entry in entries:
            title, year = self.clean_title(entry.name)
            tvg_id = entry.tvg_id
            external_id = ("imdb", tvg_id) if tvg_id and _IMDB_ID.match(tvg_id) else None
            titles.append(
                RawTitle(
                    type="movies",
                    native_id=tvg_id or short_hash(entry.url, 16),
                    name=entry.name,
                    title=title,
                    year=year,
                    category_id=category_id_for(entry.group),
                    streams={"main": entry.url},
                    external_id=external_id,
                )
            )
        return titles

    def _series(self, entries: list[PlaylistEntry]) -> list[RawTitle]:
        shows: dict[str, dict] = {}
        for entry in entries:
            match = _EPISODE.match(entry.name)
            if not match:
                logger.debug("[%s] No episode marker in %r", self.provider.id, entry.name)
                continue
            show_name = match.group("show").strip(" -._") or entry.name
            title, year = self.clean_title(show_name)
            native_id = short_hash(f"show:{title.casefold()}:{year or ''}", 16)
            show = shows.setdefault(
                native_id,
                {
                    "name": show_name,
                    "title": title,
                    "year": year,
                    "category_id": category_id_for(entry.group),
                    "streams": {},
                },
            )
            stream_id = f"S{int(match.group('season')):02d}-E{int(match.group('episode')):02d}"
            show["streams"].setdefault(stream_id, entry.url)

        return [
            RawTitle(
                type="tvshows",
                native_id=native_id,
                name=show["name"],
                title=show["title"],
                year=show["year"],
                category_id=show["category_id"],
                streams=dict(sorted(show["streams"].items())),
            )
            for native_id, show in shows.items()
        ]
