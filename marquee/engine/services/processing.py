"""Per-provider enumerate, match and stage pipeline."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from ..errors import FetchError, JobCancelled, MatchRejection
from ..providers.base import ProviderAdapter, RawTitle
from ..schemas import MEDIA_TYPES, ProviderConfig, ProviderTitleModel
from ..stores.category_store import CategoryStore
from ..stores.ops import Delete, RemoveTitleSource, Upsert, UpsertTitleSource
from ..stores.provider_title_store import ProviderTitleStore
from ..stores.title_store import TitleStore
from ..utils.cancellation import CancellationToken
from .matching import MatchingEngine
from .save_coordinator import Collection, SaveCoordinator

logger = logging.getLogger(__name__)

MDB_DISABLED = "mdb-disabled"

# Fields compared against the stored row to decide whether a write is needed.
COMPARED_FIELDS = (
    "type",
    "title_id",
    "native_ids",
    "title",
    "year",
    "category_id",
    "streams",
    "mdb_id",
    "external_id",
    "ignored_reason",
    "search_name",
    "item_signatures",
    "mdb",
)


@dataclass
class TypeReport:
    categories: int = 0
    fetched: int = 0
    matched: int = 0
    ignored: int = 0
    unchanged: int = 0
    errors: int = 0
    skipped_category: int = 0
    removed: int = 0
    complete: bool = False
    fatal: str | None = None


@dataclass
class ProcessingReport:
    provider_id: str
    types: dict[str, TypeReport] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def fatal_errors(self) -> list[str]:
        return [f"{media_type}: {report.fatal}" for media_type, report in self.types.items() if report.fatal]

    def total(self, name: str) -> int:
        return sum(getattr(report, name) for report in self.types.values())

    def as_dict(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "cancelled": self.cancelled,
            "types": {media_type: asdict(report) for media_type, report in self.types.items()},
        }


class ProviderProcessor(Protocol):
    provider: ProviderConfig

    async def process(self) -> ProcessingReport:
        ...


@dataclass
class _Outcome:
    title_key: str
    mdb_id: int | None = None
    snapshot: dict[str, Any] | None = None
    ignored_reason: str | None = None
    search_name: str | None = None


@dataclass
class _WorkingTitle:
    """Merged state of every native item of one provider mapped to a title_key."""

    outcome: _Outcome
    parts: dict[str, RawTitle] = field(default_factory=dict)
    signatures: dict[str, str] = field(default_factory=dict)

    def doc(self, provider_id: str) -> dict[str, Any]:
        native_ids = sorted(self.parts)
        primary = self.parts[native_ids[0]]
        streams: dict[str, str] = {}
        for native_id in native_ids:
            for stream_id, url in self.parts[native_id].streams.items():
                streams.setdefault(stream_id, url)
        return {
            "provider_id": provider_id,
            "title_key": self.outcome.title_key,
            "type": primary.type,
            "title_id": primary.native_id,
            "native_ids": native_ids,
            "title": primary.title,
            "year": primary.year,
            "category_id": primary.category_id,
            "streams": dict(sorted(streams.items())),
            "mdb_id": self.outcome.mdb_id,
            "external_id": list(primary.external_id) if primary.external_id else None,
            "ignored_reason": self.outcome.ignored_reason,
            "search_name": self.outcome.search_name,
            "item_signatures": dict(sorted(self.signatures.items())),
            "mdb": self.outcome.snapshot,
        }


def _placeholder_key(raw: RawTitle) -> str:
    return f"{raw.type}-unmatched-{raw.native_id}"


def _same_row(doc: dict[str, Any], stored: ProviderTitleModel | None) -> bool:
    if stored is None or stored.last_updated is None:
        return False
    current = stored.model_dump()
    return all(doc[name] == current[name] for name in COMPARED_FIELDS)


class ProcessingManager:
    """Runs one provider through categories, titles and matching for one job run.

    The instance owns the provider's working set for the run. Writes are only
    staged on the shared :class:`SaveCoordinator`; staged documents equal to
    the stored ones are discarded so an unchanged upstream produces no writes.
    """

    def __init__(
        self,
        provider: ProviderConfig,
        adapter: ProviderAdapter,
        matcher: MatchingEngine | None,
        coordinator: SaveCoordinator,
        *,
        provider_titles: ProviderTitleStore,
        titles: TitleStore,
        categories: CategoryStore,
        token: CancellationToken,
        workers: int = 8,
        queue_size: int = 200,
        check_interval: int = 100,
        prune_missing: bool = True,
    ) -> None:
        self.provider = provider
        self._adapter = adapter
        self._matcher = matcher
        self._coordinator = coordinator
        self._provider_titles = provider_titles
        self._titles = titles
        self._categories = categories
        self._token = token
        self._workers = workers
        self._queue_size = queue_size
        self._check_interval = check_interval
        self._prune_missing = prune_missing
        self.report = ProcessingReport(provider_id=provider.id)

    async def process(self) -> ProcessingReport:
        report = self.report
        try:
            for media_type in MEDIA_TYPES:
                if not self.provider.type_enabled(media_type):
                    continue
                type_report = TypeReport()
                report.types[media_type] = type_report
                await self._process_type(media_type, type_report)
        except JobCancelled:
            report.cancelled = True
            raise
        await self._coordinator.flush()
        return report

    async def _process_type(self, media_type: str, report: TypeReport) -> None:
        provider_id = self.provider.id
        try:
            categories = await self._adapter.fetch_categories(media_type)
        except FetchError as exc:
            report.fatal = f"category fetch failed: {exc}"
            logger.error("[%s] %s categories: %s", provider_id, media_type, exc)
            return
        await self._stage_categories(media_type, categories)
        report.categories = len(categories)

        stored_rows = await asyncio.to_thread(
            self._provider_titles.find_by, provider_id=provider_id, type=media_type
        )
        stored_by_key = {row.title_key: row for row in stored_rows}
        stored_by_native = {native_id: row for row in stored_rows for native_id in row.native_ids}
        stored_sources = await asyncio.to_thread(self._titles.sources_for_provider, provider_id)
        run = _TypeRun(
            media_type=media_type,
            report=report,
            allowed=self.provider.category_filter(media_type),
            stored_by_key=stored_by_key,
            stored_by_native=stored_by_native,
            stored_sources=stored_sources,
        )

        try:
            await self._pipeline(run)
        except FetchError as exc:
            report.fatal = f"title listing failed: {exc}"
            logger.error("[%s] %s listing: %s", provider_id, media_type, exc)
            return

        report.complete = True
        if self._prune_missing:
            self._prune(run)
        logger.info(
            "[%s] %s: %d fetched, %d matched, %d ignored, %d unchanged, %d errors",
            provider_id,
            media_type,
            report.fetched,
            report.matched,
            report.ignored,
            report.unchanged,
            report.errors,
        )

    async def _stage_categories(self, media_type: str, categories: list) -> None:
        stored = await asyncio.to_thread(
            self._categories.find_by, provider_id=self.provider.id, type=media_type
        )
        stored_names = {row.category_id: row.category_name for row in stored}
        for category in categories:
            key = (self.provider.id, media_type, category.category_id)
            if stored_names.get(category.category_id) == category.name:
                self._coordinator.discard(Collection.CATEGORIES, key)
                continue
            self._coordinator.stage(
                Collection.CATEGORIES,
                key,
                Upsert(
                    key,
                    {
                        "category_name": category.name,
                        "category_key": f"{media_type}-{category.category_id}",
                    },
                ),
            )

    async def _pipeline(self, run: "_TypeRun") -> None:
        queue: asyncio.Queue[RawTitle | None] = asyncio.Queue(maxsize=self._queue_size)
        workers = [asyncio.create_task(self._worker(queue, run)) for _ in range(self._workers)]
        try:
            async for raw in self._adapter.fetch_titles(run.media_type):
                run.report.fetched += 1
                if run.report.fetched % self._check_interval == 0:
                    self._token.check()
                if run.allowed is not None and raw.category_id not in run.allowed:
                    run.report.skipped_category += 1
                    run.protect(raw.native_id)
                    continue
                await self._token.guard(queue.put(raw))
            for _ in workers:
                await self._token.guard(queue.put(None))
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

    async def _worker(self, queue: asyncio.Queue, run: "_TypeRun") -> None:
        while True:
            raw = await queue.get()
            if raw is None:
                return
            try:
                await self._handle(raw, run)
            except JobCancelled:
                raise
            except FetchError as exc:
                run.report.errors += 1
                run.protect(raw.native_id)
                logger.warning("[%s] Failed to process %r: %s", self.provider.id, raw.name, exc)
            except Exception:
                run.report.errors += 1
                run.protect(raw.native_id)
                logger.exception("[%s] Unexpected error processing %r", self.provider.id, raw.name)

    async def _handle(self, raw: RawTitle, run: "_TypeRun") -> None:
        detailed = await self._adapter.fetch_details(raw)
        signature = detailed.signature()
        prior = run.stored_by_native.get(detailed.native_id)

        if (
            prior is not None
            and prior.last_updated is not None
            and prior.item_signatures.get(detailed.native_id) == signature
        ):
            outcome = _Outcome(
                title_key=prior.title_key,
                mdb_id=prior.mdb_id,
                snapshot=prior.mdb,
                ignored_reason=prior.ignored_reason,
                search_name=prior.search_name,
            )
            run.report.unchanged += 1
        else:
            outcome = await self._match(detailed)

        if outcome.mdb_id is not None:
            run.report.matched += 1
        else:
            run.report.ignored += 1
        self._merge(detailed, signature, outcome, run)

    async def _match(self, raw: RawTitle) -> _Outcome:
        if self._matcher is None:
            return _Outcome(title_key=_placeholder_key(raw), ignored_reason=MDB_DISABLED, search_name=raw.title)
        try:
            result = await self._matcher.match(
                raw.type,
                raw.title,
                year=raw.year,
                external_id=raw.external_id,
                token=self._token,
            )
        except MatchRejection as rejection:
            return _Outcome(
                title_key=_placeholder_key(raw),
                ignored_reason=rejection.reason,
                search_name=rejection.searched_name or raw.title,
            )
        return _Outcome(
            title_key=result.title_key,
            mdb_id=result.mdb_id,
            snapshot=result.snapshot.model_dump(),
        )

    def _merge(self, raw: RawTitle, signature: str, outcome: _Outcome, run: "_TypeRun") -> None:
        working = run.working.get(outcome.title_key)
        if working is None:
            working = _WorkingTitle(outcome=outcome)
            run.working[outcome.title_key] = working
        working.parts[raw.native_id] = raw
        working.signatures[raw.native_id] = signature

        provider_id = self.provider.id
        doc = working.doc(provider_id)
        key = (provider_id, outcome.title_key)
        if _same_row(doc, run.stored_by_key.get(outcome.title_key)):
            self._coordinator.discard(Collection.PROVIDER_TITLES, key)
        else:
            body = {name: value for name, value in doc.items() if name not in ("provider_id", "title_key")}
            self._coordinator.stage(Collection.PROVIDER_TITLES, key, Upsert(key, body))

        if working.outcome.mdb_id is None:
            return
        source = {"provider_id": provider_id, "priority": self.provider.priority, "streams": doc["streams"]}
        source_key = (outcome.title_key, provider_id)
        if run.stored_sources.get(outcome.title_key) == source:
            self._coordinator.discard(Collection.TITLES, source_key)
        else:
            self._coordinator.stage(
                Collection.TITLES,
                source_key,
                UpsertTitleSource(
                    outcome.title_key,
                    source,
                    working.outcome.snapshot
                    or {"mdb_id": working.outcome.mdb_id, "type": run.media_type, "title": doc["title"]},
                ),
            )

    def _prune(self, run: "_TypeRun") -> None:
        """Stage deletion of stored rows no item of this run mapped to."""

        provider_id = self.provider.id
        keep = set(run.working) | run.protected_keys()
        for title_key, row in run.stored_by_key.items():
            if title_key in keep:
                continue
            self._coordinator.stage(
                Collection.PROVIDER_TITLES, (provider_id, title_key), Delete((provider_id, title_key))
            )
            if row.mdb_id is not None and title_key in run.stored_sources:
                self._coordinator.stage(
                    Collection.TITLES,
                    (title_key, provider_id),
                    RemoveTitleSource(title_key, provider_id),
                )
            run.report.removed += 1


@dataclass
class _TypeRun:
    media_type: str
    report: TypeReport
    allowed: frozenset[str] | None
    stored_by_key: dict[str, ProviderTitleModel]
    stored_by_native: dict[str, ProviderTitleModel]
    stored_sources: dict[str, dict[str, Any]]
    working: dict[str, _WorkingTitle] = field(default_factory=dict)
    protected_natives: set[str] = field(default_factory=set)

    def protect(self, native_id: str) -> None:
        self.protected_natives.add(native_id)

    def protected_keys(self) -> set[str]:
        return {
            self.stored_by_native[native_id].title_key
            for native_id in self.protected_natives
            if native_id in self.stored_by_native
        }
