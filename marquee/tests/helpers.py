"""Fake upstream services and runtime helpers shared by the test-suite."""
from __future__ import annotations

import json
from typing import Any, Callable

import httpx

from marquee.engine.schemas import JobHistoryModel, ProviderConfig
from marquee.engine.state import EngineRuntime

MDB_HOST = "api.themoviedb.org"

MATRIX_RESULTS = [
    {"id": 603, "title": "The Matrix", "release_date": "1999-03-30", "popularity": 80.0},
    {"id": 604, "title": "Matrix", "release_date": "2000-01-01", "popularity": 3.0},
]

Handler = Callable[[httpx.Request], httpx.Response]


class FakeUpstream:
    """Routes requests by host, path and (for Xtream) ``action`` to canned handlers."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str, str | None], Handler] = {}
        self.requests: list[httpx.Request] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        action = request.url.params.get("action")
        handler = self.routes.get((request.url.host, request.url.path, action))
        if handler is None:
            handler = self.routes.get((request.url.host, request.url.path, None))
        if handler is None:
            return httpx.Response(404, json={"detail": "not found"})
        return handler(request)

    def route(self, host: str, path: str, handler: Handler, *, action: str | None = None) -> None:
        self.routes[(host, path, action)] = handler

    def json(self, host: str, path: str, payload: Any, *, action: str | None = None, status: int = 200) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.route(host, path, lambda request: httpx.Response(status, content=body), action=action)

    def text(self, host: str, path: str, text: str) -> None:
        self.route(host, path, lambda request: httpx.Response(200, text=text))

    def calls(self, host: str, path: str | None = None) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.url.host == host and (path is None or request.url.path == path)
        ]


def xtream_upstream(
    upstream: FakeUpstream,
    host: str,
    *,
    movies: list[dict[str, Any]] | None = None,
    movie_categories: list[dict[str, Any]] | None = None,
    series: list[dict[str, Any]] | None = None,
    series_info: dict[str, dict[str, Any]] | None = None,
    live: list[dict[str, Any]] | None = None,
    epg: str | None = None,
) -> None:
    """Register a complete ``player_api.php`` for one Xtream host."""

    path = "/player_api.php"
    upstream.json(
        host,
        path,
        movie_categories if movie_categories is not None else [{"category_id": "1", "category_name": "Action"}],
        action="get_vod_categories",
    )
    upstream.json(host, path, movies or [], action="get_vod_streams")
    upstream.json(host, path, [{"category_id": "7", "category_name": "Drama"}], action="get_series_categories")
    upstream.json(host, path, series or [], action="get_series")
    upstream.json(host, path, [{"category_id": "20", "category_name": "News"}], action="get_live_categories")
    upstream.json(host, path, live or [], action="get_live_streams")

    infos = series_info or {}

    def series_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=infos.get(request.url.params.get("series_id"), {}))

    upstream.route(host, path, series_handler, action="get_series_info")
    upstream.text(host, "/xmltv.php", epg or "<tv></tv>")


def mdb_upstream(
    upstream: FakeUpstream,
    *,
    movies: dict[str, list[dict[str, Any]]] | None = None,
    tv: dict[str, list[dict[str, Any]]] | None = None,
    details: dict[str, dict[str, Any]] | None = None,
) -> None:
    """Serve MDB searches keyed by query and title details keyed by ``movie/603`` paths."""

    def search(results: dict[str, list[dict[str, Any]]]) -> Handler:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"results": results.get(request.url.params.get("query"), [])})

        return handler

    upstream.route(MDB_HOST, "/3/search/movie", search(movies or {}))
    upstream.route(MDB_HOST, "/3/search/tv", search(tv or {}))
    for key, payload in (details or {}).items():
        upstream.json(MDB_HOST, f"/3/{key}", payload)


def register_provider(runtime: EngineRuntime, **config: Any) -> ProviderConfig:
    """Persist a provider and make it known to the runtime without triggering jobs."""

    config.setdefault("kind", "xtream")
    config.setdefault("username", "u")
    config.setdefault("password", "p")
    provider = ProviderConfig.model_validate(config)
    saved = runtime.providers.save(provider)
    runtime.registry.refresh(saved)
    runtime.lifecycle.activate(saved)
    return saved


async def run_job(runtime: EngineRuntime, name: str, *, provider_id: str | None = None) -> JobHistoryModel:
    """Trigger a job and wait for it and everything it chains into."""

    run_id = await runtime.scheduler.trigger_now(name, provider_id=provider_id)
    await runtime.scheduler.join()
    record = runtime.job_history.get(run_id)
    assert record is not None
    return record
