"""End-to-end catalog sync scenarios against fake provider and MDB upstreams."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import httpx

from marquee.engine.services.lifecycle import ProviderChangeEvent
from marquee.engine.settings import EngineSettings
from marquee.engine.state import EngineRuntime

from .helpers import (
    MATRIX_RESULTS,
    MDB_HOST,
    FakeUpstream,
    mdb_upstream,
    register_provider,
    run_job,
    xtream_upstream,
)

MATRIX_URL = "http://p1.example/movie/u/p/500.mp4"


def _run(
    settings: EngineSettings,
    upstream: FakeUpstream,
    scenario: Callable[[EngineRuntime], Awaitable[Any]],
) -> Any:
    async def main() -> Any:
        runtime = EngineRuntime(settings, transport=upstream.transport)
        try:
            return await scenario(runtime)
        finally:
            await runtime.stop()

    return asyncio.run(main())


def _matrix_provider(upstream: FakeUpstream, host: str, stream_id: int = 500) -> None:
    xtream_upstream(upstream, host, movies=[{"stream_id": stream_id, "name": "The Matrix (1999)", "category_id": "1"}])


def test_clear_match_creates_title_with_one_source(settings: EngineSettings, upstream: FakeUpstream) -> None:
    _matrix_provider(upstream, "p1.example")
    mdb_upstream(upstream, movies={"The Matrix": MATRIX_RESULTS})

    async def scenario(runtime: EngineRuntime) -> None:
        register_provider(runtime, id="p1", base_url="http://p1.example", priority=10)
        record = await run_job(runtime, "sync_provider_titles")

        assert record.status == "completed"
        assert record.result["matched"] == 1
        rows = runtime.provider_titles.find_by(provider_id="p1")
        assert [(row.title_key, row.mdb_id) for row in rows] == [("movies-603", 603)]
        assert rows[0].streams == {"main": MATRIX_URL}
        assert rows[0].last_updated is not None

        title = runtime.titles.get("movies-603")
        assert title.mdb_id == 603
        assert title.title == "The Matrix"
        assert title.sources == [{"provider_id": "p1", "priority": 10, "streams": {"main": MATRIX_URL}}]

        categories = {(row.type, row.category_id) for row in runtime.categories.find_by(provider_id="p1")}
        assert categories == {("movies", "1"), ("tvshows", "7")}
        assert runtime.stats.get("catalog").metrics["titles"] == {"movies": 1}

    _run(settings, upstream, scenario)


def test_ambiguous_search_stores_unmatched_row_only(settings: EngineSettings, upstream: FakeUpstream) -> None:
    """Two near-identical candidates leave the title unmatched instead of guessing."""

    _matrix_provider(upstream, "p1.example")
    mdb_upstream(
        upstream,
        movies={"The Matrix": [
            {"id": 701, "title": "The Matrixx", "release_date": "1999-01-01"},
            {"id": 702, "title": "Thee Matrix", "release_date": "1999-05-01"},
        ]},
    )

    async def scenario(runtime: EngineRuntime) -> None:
        register_provider(runtime, id="p1", base_url="http://p1.example")
        record = await run_job(runtime, "sync_provider_titles")

        assert record.status == "completed"
        assert record.result["ignored"] == 1
        rows = runtime.provider_titles.find_by(provider_id="p1")
        assert len(rows) == 1
        assert rows[0].title_key == "movies-unmatched-500"
        assert rows[0].mdb_id is None
        assert rows[0].ignored_reason == "no-mdb-match"
        assert rows[0].search_name == "The Matrix"
        assert runtime.titles.count() == 0

    _run(settings, upstream, scenario)


def test_sources_are_ordered_by_provider_priority(settings: EngineSettings, upstream: FakeUpstream) -> None:
    _matrix_provider(upstream, "p1.example")
    _matrix_provider(upstream, "p2.example", stream_id=900)
    mdb_upstream(upstream, movies={"The Matrix": MATRIX_RESULTS})

    async def scenario(runtime: EngineRuntime) -> None:
        register_provider(runtime, id="p1", base_url="http://p1.example", priority=10)
        register_provider(runtime, id="p2", base_url="http://p2.example", priority=5)
        await run_job(runtime, "sync_provider_titles")

        title = runtime.titles.get("movies-603")
        assert [source["provider_id"] for source in title.sources] == ["p2", "p1"]
        assert title.sources[0]["streams"] == {"main": "http://p2.example/movie/u/p/900.mp4"}

    _run(settings, upstream, scenario)


def test_unchanged_upstream_produces_no_writes(settings: EngineSettings, upstream: FakeUpstream) -> None:
    _matrix_provider(upstream, "p1.example")
    mdb_upstream(upstream, movies={"The Matrix": MATRIX_RESULTS})

    async def scenario(runtime: EngineRuntime) -> None:
        register_provider(runtime, id="p1", base_url="http://p1.example")
        first = await run_job(runtime, "sync_provider_titles")
        searches = len(upstream.calls(MDB_HOST))
        runtime.cache.clear_prefix("xtream/p1")
        second = await run_job(runtime, "sync_provider_titles")

        assert first.result["flush"]["written"]
        assert second.status == "completed"
        assert second.result["flush"]["written"] == {}
        assert second.result["providers"]["p1"]["types"]["movies"]["unchanged"] == 1
        assert len(upstream.calls(MDB_HOST)) == searches

    _run(settings, upstream, scenario)


def test_titles_missing_upstream_are_pruned(settings: EngineSettings, upstream: FakeUpstream) -> None:
    xtream_upstream(
        upstream,
        "p1.example",
        movies=[
            {"stream_id": 500, "name": "The Matrix (1999)", "category_id": "1"},
            {"stream_id": 501, "name": "Heat", "category_id": "1"},
        ],
    )
    mdb_upstream(upstream, movies={
        "The Matrix": MATRIX_RESULTS,
        "Heat": [{"id": 949, "title": "Heat", "release_date": "1995-12-15"}],
    })

    async def scenario(runtime: EngineRuntime) -> None:
        register_provider(runtime, id="p1", base_url="http://p1.example")
        await run_job(runtime, "sync_provider_titles")
        assert runtime.titles.keys() == {"movies-603", "movies-949"}

        _matrix_provider(upstream, "p1.example")
        runtime.cache.clear_prefix("xtream/p1")
        record = await run_job(runtime, "sync_provider_titles")

        assert record.result["providers"]["p1"]["types"]["movies"]["removed"] == 1
        assert [row.title_key for row in runtime.provider_titles.find_by(provider_id="p1")] == ["movies-603"]
        assert runtime.titles.keys() == {"movies-603"}

    _run(settings, upstream, scenario)


def test_category_filter_skips_titles(settings: EngineSettings, upstream: FakeUpstream) -> None:
    xtream_upstream(
        upstream,
        "p1.example",
        movies=[
            {"stream_id": 500, "name": "The Matrix (1999)", "category_id": "1"},
            {"stream_id": 501, "name": "Heat", "category_id": "2"},
        ],
    )
    mdb_upstream(upstream, movies={"The Matrix": MATRIX_RESULTS})

    async def scenario(runtime: EngineRuntime) -> None:
        register_provider(
            runtime, id="p1", base_url="http://p1.example", enabled_categories={"movies": ["movies-1"], "tvshows": []}
        )
        record = await run_job(runtime, "sync_provider_titles")

        movies = record.result["providers"]["p1"]["types"]["movies"]
        assert movies["skipped_category"] == 1
        assert "tvshows" not in record.result["providers"]["p1"]["types"]
        assert [row.title_key for row in runtime.provider_titles.find_by(provider_id="p1")] == ["movies-603"]
        assert upstream.calls(MDB_HOST, "/3/search/tv") == []

    _run(settings, upstream, scenario)


def test_without_mdb_token_titles_stay_unmatched(settings: EngineSettings, upstream: FakeUpstream) -> None:
    _matrix_provider(upstream, "p1.example")

    async def scenario(runtime: EngineRuntime) -> None:
        assert runtime.matcher is None
        register_provider(runtime, id="p1", base_url="http://p1.example")
        record = await run_job(runtime, "sync_provider_titles")

        assert record.status == "completed"
        rows = runtime.provider_titles.find_by(provider_id="p1")
        assert [row.ignored_reason for row in rows] == ["mdb-disabled"]
        assert upstream.calls(MDB_HOST) == []

    _run(settings.model_copy(update={"mdb_token": None}), upstream, scenario)


def test_failing_provider_does_not_stop_the_others(settings: EngineSettings, upstream: FakeUpstream) -> None:
    """One provider's outage fails the run but the healthy provider is still saved."""

    _matrix_provider(upstream, "p1.example")
    _matrix_provider(upstream, "p2.example")
    upstream.json("p1.example", "/player_api.php", {}, action="get_vod_categories", status=500)
    mdb_upstream(upstream, movies={"The Matrix": MATRIX_RESULTS})

    async def scenario(runtime: EngineRuntime) -> None:
        register_provider(runtime, id="p1", base_url="http://p1.example")
        register_provider(runtime, id="p2", base_url="http://p2.example")
        record = await run_job(runtime, "sync_provider_titles")

        assert record.status == "failed"
        assert "category fetch failed" in record.error_message
        assert runtime.provider_titles.find_by(provider_id="p1") == []
        assert [row.title_key for row in runtime.provider_titles.find_by(provider_id="p2")] == ["movies-603"]
        assert runtime.job_history.list(job_name="update_metrics") == []

    _run(settings, upstream, scenario)


def test_disable_and_delete_clean_up_titles_and_watchlists(settings: EngineSettings, upstream: FakeUpstream) -> None:
    _matrix_provider(upstream, "p1.example")
    _matrix_provider(upstream, "p2.example", stream_id=900)
    mdb_upstream(upstream, movies={"The Matrix": MATRIX_RESULTS})

    async def scenario(runtime: EngineRuntime) -> None:
        register_provider(runtime, id="p1", base_url="http://p1.example", priority=10)
        register_provider(runtime, id="p2", base_url="http://p2.example", priority=5)
        runtime.users.upsert(("alice",), {"watchlist": {"titles": ["movies-603"], "live": []}})
        await run_job(runtime, "sync_provider_titles")

        await runtime.lifecycle.on_change(ProviderChangeEvent("p1", "disabled"))
        await runtime.scheduler.join()

        assert runtime.provider_titles.find_by(provider_id="p1") == []
        assert [source["provider_id"] for source in runtime.titles.get("movies-603").sources] == ["p2"]
        assert runtime.users.get("alice").watchlist["titles"] == ["movies-603"]
        cleanup = runtime.job_history.list(job_name="cleanup")[0]
        assert cleanup.status == "completed"
        assert cleanup.result["providers_removed"] == ["p1"]
        assert [entry["job"] for entry in cleanup.result["triggered"]] == ["sync_provider_titles", "sync_live_tv"]
        assert len(runtime.job_history.list(job_name="sync_live_tv")) == 1

        await runtime.lifecycle.on_change(ProviderChangeEvent("p2", "deleted"))
        await runtime.scheduler.join()

        assert runtime.titles.get("movies-603") is None
        assert runtime.provider_titles.count() == 0
        assert runtime.users.get("alice").watchlist == {"titles": [], "live": []}
        assert runtime.providers.get("p2").deleted is True

    _run(settings, upstream, scenario)


def test_cancellation_keeps_staged_work(settings: EngineSettings, upstream: FakeUpstream) -> None:
    """Cancelling a large sync ends the run as cancelled after flushing what was staged."""

    movies = [{"stream_id": n, "name": f"Movie {n}", "category_id": "1"} for n in range(1, 10_001)]
    xtream_upstream(upstream, "p1.example", movies=movies)
    holder: list[EngineRuntime] = []
    searches = 0

    def search(request: httpx.Request) -> httpx.Response:
        nonlocal searches
        searches += 1
        if searches == 50:
            holder[0].scheduler.cancel("sync_provider_titles", "operator request")
        return httpx.Response(200, json={"results": []})

    upstream.route(MDB_HOST, "/3/search/movie", search)

    async def scenario(runtime: EngineRuntime) -> None:
        holder.append(runtime)
        register_provider(runtime, id="p1", base_url="http://p1.example")
        record = await run_job(runtime, "sync_provider_titles")

        assert record.status == "cancelled"
        assert record.error_message == "operator request"
        assert record.result["providers"]["p1"]["cancelled"] is True
        stored = runtime.provider_titles.count(provider_id="p1")
        assert 0 < stored < 10_000
        assert record.result["flush"]["written"]["provider_titles"] == stored
        assert runtime.scheduler.active() == []
        assert runtime.job_history.running_count("sync_provider_titles") == 0
        assert runtime.job_history.list(job_name="update_metrics") == []

    _run(settings, upstream, scenario)


def test_live_sync_filters_categories_and_maps_guide(settings: EngineSettings, upstream: FakeUpstream) -> None:
    epg = """<tv>
      <programme channel="news.uk" start="20240101120000 +0000"><title>Midday News</title></programme>
      <programme channel="news.uk" start="20240101120000 +0000"><title>Duplicate</title></programme>
      <programme channel="sports.uk" start="20240101120000 +0000"><title>Match</title></programme>
      <programme channel="unknown" start="20240101120000 +0000"><title>Orphan</title></programme>
    </tv>"""
    xtream_upstream(
        upstream,
        "p1.example",
        live=[
            {"stream_id": 31, "name": "News HD", "epg_channel_id": "news.uk", "category_id": "20"},
            {"stream_id": 32, "name": "Sports", "epg_channel_id": "sports.uk", "category_id": "21"},
        ],
        epg=epg,
    )

    async def scenario(runtime: EngineRuntime) -> None:
        register_provider(runtime, id="p1", base_url="http://p1.example", enabled_categories={"live": ["20"]})
        record = await run_job(runtime, "sync_live_tv")

        assert record.status == "completed"
        assert record.result["providers"]["p1"] == {"channels": 1, "programs": 1}
        assert [channel.channel_id for channel in runtime.channels.find_by(provider_id="p1")] == ["31"]
        programs = runtime.programs.find_by(provider_id="p1")
        assert [(program.channel_id, program.title) for program in programs] == [("31", "Midday News")]

    _run(settings, upstream, scenario)


def test_category_sync_replaces_stale_categories(settings: EngineSettings, upstream: FakeUpstream) -> None:
    xtream_upstream(
        upstream,
        "p1.example",
        movie_categories=[{"category_id": "1", "category_name": "Action"}, {"category_id": "2", "category_name": "Comedy"}],
    )

    async def scenario(runtime: EngineRuntime) -> None:
        register_provider(runtime, id="p1", base_url="http://p1.example")
        await run_job(runtime, "sync_provider_categories")
        upstream.json(
            "p1.example", "/player_api.php", [{"category_id": "1", "category_name": "Action Movies"}],
            action="get_vod_categories",
        )
        runtime.cache.clear_prefix("xtream/p1")
        record = await run_job(runtime, "sync_provider_categories")

        assert record.result["providers"]["p1"]["movies"] == {"upserted": 1, "deleted": 1}
        movies = runtime.categories.find_by(provider_id="p1", type="movies")
        assert [(row.category_id, row.category_name, row.category_key) for row in movies] == [
            ("1", "Action Movies", "movies-1")
        ]

    _run(settings, upstream, scenario)


def test_cache_purge_job_reports(settings: EngineSettings, upstream: FakeUpstream) -> None:
    async def scenario(runtime: EngineRuntime) -> None:
        runtime.cache.put("mdb/movie/603", b"{}")
        record = await run_job(runtime, "cache_purge")

        assert record.status == "completed"
        assert record.result["scanned"] == 1
        assert record.result["purged"] == 0

    _run(settings, upstream, scenario)


BREAKING_BAD = {"id": 1396, "name": "Breaking Bad", "first_air_date": "2008-01-20"}


def _mixed_provider(upstream: FakeUpstream, host: str) -> None:
    xtream_upstream(
        upstream,
        host,
        movies=[{"stream_id": 500, "name": "The Matrix (1999)", "category_id": "1"}],
        series=[{"series_id": 77, "name": "Breaking Bad", "category_id": "7"}],
        series_info={
            "77": {
                "info": {"releaseDate": "2008-01-20"},
                "episodes": {"1": [{"id": "9001", "episode_num": 1, "season": 1}]},
            }
        },
    )
    mdb_upstream(upstream, movies={"The Matrix": MATRIX_RESULTS}, tv={"Breaking Bad": [BREAKING_BAD]})


def _broken_searches(upstream: FakeUpstream, names: set[str]) -> None:
    """MDB answers these queries with ids that cannot be parsed."""

    def handler(request: httpx.Request) -> httpx.Response:
        query = request.url.params.get("query")
        if query in names:
            return httpx.Response(200, json={"results": [{"id": "not-a-number", "title": query}]})
        return httpx.Response(200, json={"results": MATRIX_RESULTS if query == "The Matrix" else []})

    upstream.route(MDB_HOST, "/3/search/movie", handler)


def test_half_of_titles_failing_still_completes(settings: EngineSettings, upstream: FakeUpstream) -> None:
    xtream_upstream(
        upstream,
        "p1.example",
        movies=[
            {"stream_id": 500, "name": "The Matrix (1999)", "category_id": "1"},
            {"stream_id": 501, "name": "Heat", "category_id": "1"},
        ],
    )
    _broken_searches(upstream, {"Heat"})

    async def scenario(runtime: EngineRuntime) -> None:
        register_provider(runtime, id="p1", base_url="http://p1.example")
        record = await run_job(runtime, "sync_provider_titles")

        assert record.status == "completed"
        assert record.result["errors"] == 1
        assert record.result["providers"]["p1"]["types"]["movies"]["errors"] == 1
        assert [row.title_key for row in runtime.provider_titles.find_by(provider_id="p1")] == ["movies-603"]

    _run(settings, upstream, scenario)


def test_most_titles_failing_fails_the_run(settings: EngineSettings, upstream: FakeUpstream) -> None:
    """More than half of the fetched titles erroring fails the run after saving the rest."""

    xtream_upstream(
        upstream,
        "p1.example",
        movies=[
            {"stream_id": 500, "name": "The Matrix (1999)", "category_id": "1"},
            {"stream_id": 501, "name": "Heat", "category_id": "1"},
            {"stream_id": 502, "name": "Ronin", "category_id": "1"},
        ],
    )
    _broken_searches(upstream, {"Heat", "Ronin"})

    async def scenario(runtime: EngineRuntime) -> None:
        register_provider(runtime, id="p1", base_url="http://p1.example")
        record = await run_job(runtime, "sync_provider_titles")

        assert record.status == "failed"
        assert "2 of 3 titles failed" in record.error_message
        assert record.result["errors"] == 2
        assert [row.title_key for row in runtime.provider_titles.find_by(provider_id="p1")] == ["movies-603"]
        assert runtime.titles.keys() == {"movies-603"}

    _run(settings, upstream, scenario)


def test_cleanup_removes_media_types_turned_off(settings: EngineSettings, upstream: FakeUpstream) -> None:
    _mixed_provider(upstream, "p1.example")

    async def scenario(runtime: EngineRuntime) -> None:
        provider = register_provider(runtime, id="p1", base_url="http://p1.example")
        await run_job(runtime, "sync_provider_titles")
        assert runtime.titles.keys() == {"movies-603", "tvshows-1396"}

        saved = runtime.providers.save(
            provider.model_copy(update={"sync_media_types": {"movies": False, "tvshows": True, "live": True}})
        )
        runtime.registry.refresh(saved)
        record = await run_job(runtime, "cleanup")

        assert record.status == "completed"
        assert record.result["providers_removed"] == []
        assert record.result["provider_titles_deleted"] == 1
        assert record.result["sources_removed"] == 1
        assert [row.title_key for row in runtime.provider_titles.find_by(provider_id="p1")] == ["tvshows-1396"]
        assert runtime.titles.keys() == {"tvshows-1396"}
        assert runtime.titles.get("tvshows-1396").sources[0]["provider_id"] == "p1"
        assert {row.type for row in runtime.categories.find_by(provider_id="p1")} == {"tvshows"}

    _run(settings, upstream, scenario)


def test_empty_category_list_disables_the_type(settings: EngineSettings, upstream: FakeUpstream) -> None:
    _mixed_provider(upstream, "p1.example")

    async def scenario(runtime: EngineRuntime) -> None:
        provider = register_provider(runtime, id="p1", base_url="http://p1.example", enabled_categories={"movies": []})
        assert provider.type_enabled("movies") is False
        assert provider.type_enabled("tvshows") is True

        titles = await run_job(runtime, "sync_provider_titles")
        categories = await run_job(runtime, "sync_provider_categories")

        assert list(titles.result["providers"]["p1"]["types"]) == ["tvshows"]
        assert runtime.titles.keys() == {"tvshows-1396"}
        assert list(categories.result["providers"]["p1"]) == ["tvshows"]
        assert {row.type for row in runtime.categories.find_by(provider_id="p1")} == {"tvshows"}
        actions = {request.url.params.get("action") for request in upstream.calls("p1.example")}
        assert "get_vod_streams" not in actions
        assert "get_vod_categories" not in actions

    _run(settings, upstream, scenario)
