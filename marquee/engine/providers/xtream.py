"""Xtream Codes ``player_api.php`` adapter."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from ..errors import PermanentExternalError
from ..schemas import ChannelModel, ProgramModel, ProviderDetails
from ..services.http_client import decode_json
from .base import Category, ProviderAdapter, RawTitle
from .xmltv import parse_xmltv

logger = logging.getLogger(__name__)

# Per media type: (categories action, listing action, details action, details id param)
ACTIONS: dict[str, tuple[str, str, str | None, str | None]] = {
    "movies": ("get_vod_categories", "get_vod_streams", "get_vod_info", "vod_id"),
    "tvshows": ("get_series_categories", "get_series", "get_series_info", "series_id"),
    "live": ("get_live_categories", "get_live_streams", None, None),
}


def _external_id(item: dict[str, Any]) -> tuple[str, str] | None:
    for field_name in ("tmdb", "tmdb_id"):
        value = str(item.get(field_name) or "").strip()
        if value.isdigit() and int(value) > 0:
            return ("mdb", value)
    return None


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _year(item: dict[str, Any]) -> int | None:
    for field_name in ("year", "releaseDate", "releasedate", "release_date"):
        value = str(item.get(field_name) or "").strip()[:4]
        if value.isdigit() and 1900 <= int(value) <= 2100:
            return int(value)
    return None


def _expiration(value: Any) -> datetime | None:
    seconds = _as_int(value)
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


class XtreamAdapter(ProviderAdapter):
    """Per-type category and listing requests, per-series episode requests."""

    kind = "xtream"

    @property
    def api_url(self) -> str:
        return f"{self.provider.base_url.rstrip('/')}/player_api.php"

    def _params(self, action: str, **extra: str) -> dict[str, str]:
        return {
            "username": self.provider.username or "",
            "password": self.provider.password or "",
            "action": action,
            **extra,
        }

    def _stream_url(self, segment: str, stream_id: str, extension: str) -> str:
        return "/".join(
            (
                self.provider.base_url.rstrip("/"),
                segment,
                self.provider.username or "",
                self.provider.password or "",
                f"{stream_id}.{extension}",
            )
        )

    async def _api(self, key: str, action: str, **extra: str) -> Any:
        data = await self._cached_fetch(key, self.api_url, self._params(action, **extra))
        return decode_json(data, self.api_url)

    async def fetch_categories(self, media_type: str) -> list[Category]:
        action = ACTIONS[media_type][0]
        payload = await self._api(self._cache_key("categories", media_type), action)
        categories = []
        for item in payload or []:
            category_id = str(item.get("category_id") or "").strip()
            if not category_id:
                continue
            name = str(item.get("category_name") or category_id).strip()
            categories.append(Category(type=media_type, category_id=category_id, name=name))
        return categories

    async def fetch_titles(self, media_type: str) -> AsyncIterator[RawTitle]:
        action = ACTIONS[media_type][1]
        payload = await self._api(self._cache_key("streams", media_type), action)
        for item in payload or []:
            raw = self._raw_title(media_type, item)
            if raw is None:
                continue
            if self.is_ignored(raw.native_id, raw.title):
                logger.debug("[%s] Ignoring %s", self.provider.id, raw.name)
                continue
            yield raw

    def _raw_title(self, media_type: str, item: dict[str, Any]) -> RawTitle | None:
        id_field = "stream_id" if media_type == "movies" else "series_id"
        native_id = str(item.get(id_field) or "").strip()
        name = str(item.get("name") or "").strip()
        if not native_id or not name:
            logger.debug("[%s] Skipping malformed %s entry: %r", self.provider.id, media_type, item)
            return None
        title, year = self.clean_title(name)
        streams: dict[str, str] = {}
        if media_type == "movies":
            extension = str(item.get("container_extension") or "mp4")
            streams["main"] = self._stream_url("movie", native_id, extension)
        return RawTitle(
            type=media_type,
            native_id=native_id,
            name=name,
            title=title,
            year=year if year is not None else _year(item),
            category_id=str(item.get("category_id") or ""),
            streams=streams,
            external_id=_external_id(item),
            details_ref=native_id if media_type == "tvshows" else None,
        )

    async def fetch_details(self, raw: RawTitle) -> RawTitle:
        if raw.type != "tvshows" or raw.details_ref is None:
            return raw
        _categories, _listing, action, id_param = ACTIONS["tvshows"]
        payload = await self._api(
            self._cache_key("series", raw.details_ref), action, **{id_param: raw.details_ref}
        )
        if not isinstance(payload, dict):
            payload = {}
        episodes = payload.get("episodes") or {}
        if isinstance(episodes, list):
            # Some panels send a list of per-season lists.
            episodes = {str(index + 1): season for index, season in enumerate(episodes)}
        elif not isinstance(episodes, dict):
            episodes = {}

        streams: dict[str, str] = {}
        for season_key, season_episodes in episodes.items():
            if isinstance(season_episodes, dict):
                season_episodes = list(season_episodes.values())
            for episode in season_episodes or []:
                if not isinstance(episode, dict):
                    continue
                episode_id = str(episode.get("id") or "").strip()
                if not episode_id:
                    continue
                season = _as_int(episode.get("season") or season_key)
                number = _as_int(episode.get("episode_num"))
                extension = str(episode.get("container_extension") or "mp4")
                stream_key = f"S{season:02d}-E{number:02d}"
                streams.setdefault(stream_key, self._stream_url("series", episode_id, extension))

        info = payload.get("info")
        if not isinstance(info, dict):
            info = {}
        external_id = raw.external_id or _external_id(info)
        year = raw.year if raw.year is not None else _year(info)
        return RawTitle(
            type=raw.type,
            native_id=raw.native_id,
            name=raw.name,
            title=raw.title,
            year=year,
            category_id=raw.category_id,
            streams=dict(sorted(streams.items())),
            external_id=external_id,
            details_ref=raw.details_ref,
        )

    async def fetch_live_channels(self) -> list[tuple[ChannelModel, str | None]]:
        payload = await self._api(self._cache_key("live", "channels"), ACTIONS["live"][1])
        channels = []
        for item in payload or []:
            stream_id = str(item.get("stream_id") or "").strip()
            name = str(item.get("name") or "").strip()
            if not stream_id or not name:
                continue
            channel = ChannelModel(
                provider_id=self.provider.id,
                channel_id=stream_id,
                name=name,
                url=self._stream_url("live", stream_id, "ts"),
                tvg_id=str(item.get("epg_channel_id") or "").strip() or None,
                logo=str(item.get("stream_icon") or "").strip() or None,
                group_title=None,
            )
            channels.append((channel, str(item.get("category_id") or "") or None))
        return channels

    async def fetch_epg(self) -> list[ProgramModel]:
        url = self.provider.epg_url or f"{self.provider.base_url.rstrip('/')}/xmltv.php"
        params = {"username": self.provider.username or "", "password": self.provider.password or ""}
        data = await self._cached_fetch(self._cache_key("live", "epg"), url, params)
        return parse_xmltv(data, self.provider.id)

    async def fetch_account(self) -> ProviderDetails:
        """Read ``user_info`` from the bare ``player_api.php`` call; never cached."""

        params = {"username": self.provider.username or "", "password": self.provider.password or ""}
        data = await self._http.fetch(self._bucket, self.api_url, params=params, token=self._token)
        payload = decode_json(data, self.api_url)
        info = payload.get("user_info") if isinstance(payload, dict) else None
        if not isinstance(info, dict):
            raise PermanentExternalError(f"No user_info from {self.api_url}", kind="http4xx", url=self.api_url)

        status = str(info.get("status") or "").strip()
        if str(info.get("auth", "1")) == "0":
            active: bool | None = False
        elif status:
            active = status.casefold() == "active"
        else:
            active = None
        return ProviderDetails(
            expiration_date=_expiration(info.get("exp_date")),
            max_connections=_as_int(info.get("max_connections")),
            active_connections=_as_int(info.get("active_cons")),
            active=active,
            last_checked=datetime.utcnow(),
        )
