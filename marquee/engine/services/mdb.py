"""Movie database (TMDB-compatible) lookups through the rate limiter and cache."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import BaseModel, Field

from ..errors import PermanentExternalError
from ..settings import EngineSettings
from ..utils.cancellation import CancellationToken
from ..utils.text import short_hash
from .disk_cache import DiskCache
from .http_client import MDB_BUCKET, HttpClient, decode_json

logger = logging.getLogger(__name__)

MDB_TYPES = {"movies": "movie", "tvshows": "tv"}
EXTERNAL_SOURCES = {"imdb": "imdb_id", "tvdb": "tvdb_id"}


class MdbTitle(BaseModel):
    """Normalized MDB entry; stored as the Title snapshot."""

    mdb_id: int
    type: str
    title: str
    original_title: str | None = None
    alternative_titles: list[str] = Field(default_factory=list)
    release_date: str | None = None
    year: int | None = None
    popularity: float = 0.0
    overview: str | None = None
    poster: str | None = None
    backdrop: str | None = None

    @classmethod
    def from_payload(cls, media_type: str, payload: dict[str, Any]) -> "MdbTitle":
        if media_type == "movies":
            title = payload.get("title") or payload.get("original_title") or ""
            original = payload.get("original_title")
            release = payload.get("release_date") or None
        else:
            title = payload.get("name") or payload.get("original_name") or ""
            original = payload.get("original_name")
            release = payload.get("first_air_date") or None
        year = int(release[:4]) if release and release[:4].isdigit() else None
        return cls(
            mdb_id=int(payload["id"]),
            type=media_type,
            title=title,
            original_title=original,
            alternative_titles=_alternative_titles(payload),
            release_date=release,
            year=year,
            popularity=float(payload.get("popularity") or 0.0),
            overview=payload.get("overview") or None,
            poster=payload.get("poster_path") or None,
            backdrop=payload.get("backdrop_path") or None,
        )


class MdbSeason(BaseModel):
    season_number: int
    name: str | None = None
    air_date: str | None = None
    episode_count: int = 0
    episodes: list[dict[str, Any]] = Field(default_factory=list)


def _alternative_titles(payload: dict[str, Any]) -> list[str]:
    block = payload.get("alternative_titles") or {}
    entries = block.get("titles") or block.get("results") or []
    titles = [str(entry.get("title")) for entry in entries if entry.get("title")]
    titles.extend(str(value) for value in payload.get("alternative_names", []) if value)
    return titles


class MdbClient:
    """``find``, ``search``, ``details``, ``seasons`` and ``similar`` lookups."""

    def __init__(self, settings: EngineSettings, http: HttpClient, cache: DiskCache) -> None:
        if not settings.mdb_token:
            raise ValueError("An MDB token is required")
        self._base_url = settings.mdb_base_url.rstrip("/")
        self._language = settings.mdb_language
        self._headers = {
            "Authorization": f"Bearer {settings.mdb_token}",
            "Accept": "application/json",
        }
        self._http = http
        self._cache = cache

    async def find_by_external_id(
        self,
        id_kind: str,
        external_id: str,
        media_type: str,
        *,
        token: CancellationToken | None = None,
    ) -> list[MdbTitle]:
        if id_kind in {"mdb", "tmdb"}:
            try:
                return [await self.get_title(media_type, int(external_id), token=token)]
            except PermanentExternalError as exc:
                if exc.status == 404:
                    return []
                raise
        source = EXTERNAL_SOURCES.get(id_kind)
        if source is None:
            raise ValueError(f"Unsupported external id kind: {id_kind}")
        payload = await self._get(
            f"/find/{external_id}",
            f"mdb/find/{id_kind}/{external_id}",
            {"external_source": source},
            token=token,
        )
        results = payload.get(f"{MDB_TYPES[media_type]}_results") or []
        return [MdbTitle.from_payload(media_type, item) for item in results]

    async def search_title(
        self,
        media_type: str,
        name: str,
        year: int | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> list[MdbTitle]:
        kind = MDB_TYPES[media_type]
        params: dict[str, Any] = {"query": name, "include_adult": "false"}
        if year is not None:
            params["year" if kind == "movie" else "first_air_date_year"] = str(year)
        digest = short_hash(f"{name.casefold()}|{year or ''}|{self._language}", 16)
        payload = await self._get(f"/search/{kind}", f"mdb/search/{kind}/{digest}", params, token=token)
        return [MdbTitle.from_payload(media_type, item) for item in payload.get("results") or [] if "id" in item]

    async def get_title(
        self,
        media_type: str,
        mdb_id: int,
        *,
        token: CancellationToken | None = None,
    ) -> MdbTitle:
        kind = MDB_TYPES[media_type]
        payload = await self._get(
            f"/{kind}/{mdb_id}",
            f"mdb/{kind}/{mdb_id}",
            {"append_to_response": "alternative_titles"},
            token=token,
        )
        return MdbTitle.from_payload(media_type, payload)

    async def get_seasons(self, mdb_id: int, *, token: CancellationToken | None = None) -> list[MdbSeason]:
        show = await self._get(
            f"/tv/{mdb_id}",
            f"mdb/tv/{mdb_id}",
            {"append_to_response": "alternative_titles"},
            token=token,
        )
        seasons = []
        for entry in show.get("seasons") or []:
            number = entry.get("season_number")
            if number is None:
                continue
            detail = await self._get(
                f"/tv/{mdb_id}/season/{number}",
                f"mdb/tv/{mdb_id}/season/{number}",
                {},
                token=token,
            )
            seasons.append(
                MdbSeason(
                    season_number=int(number),
                    name=detail.get("name") or entry.get("name"),
                    air_date=detail.get("air_date") or entry.get("air_date"),
                    episode_count=int(entry.get("episode_count") or len(detail.get("episodes") or [])),
                    episodes=list(detail.get("episodes") or []),
                )
            )
        return seasons

    async def get_similar(
        self,
        media_type: str,
        mdb_id: int,
        *,
        token: CancellationToken | None = None,
    ) -> list[MdbTitle]:
        kind = MDB_TYPES[media_type]
        payload = await self._get(f"/{kind}/{mdb_id}/similar", f"mdb/{kind}/{mdb_id}/similar", {}, token=token)
        return [MdbTitle.from_payload(media_type, item) for item in payload.get("results") or [] if "id" in item]

    async def _get(
        self,
        path: str,
        cache_key: str,
        params: dict[str, Any],
        *,
        token: CancellationToken | None,
    ) -> dict[str, Any]:
        data = await asyncio.to_thread(self._cache.get, cache_key)
        if data is None:
            url = f"{self._base_url}{path}"
            data = await self._http.fetch(
                MDB_BUCKET,
                url,
                params={**params, "language": self._language},
                headers=self._headers,
                token=token,
            )
            await asyncio.to_thread(self._cache.put, cache_key, data)
        payload = decode_json(data, path)
        if not isinstance(payload, dict):
            raise PermanentExternalError(f"Unexpected MDB payload for {path}", kind="http4xx", url=path)
        return payload
