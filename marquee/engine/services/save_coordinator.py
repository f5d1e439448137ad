"""Batched, periodically flushed repository writes for one job run."""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Hashable, Mapping

from ..errors import RepositoryError

logger = logging.getLogger(__name__)


class Collection(str, Enum):
    CATEGORIES = "provider_categories"
    PROVIDER_TITLES = "provider_titles"
    TITLES = "titles"


FLUSH_ORDER: tuple[Collection, ...] = (
    Collection.CATEGORIES,
    Collection.PROVIDER_TITLES,
    Collection.TITLES,
)


@dataclass
class FlushReport:
    written: dict[str, int] = field(default_factory=dict)
    flushes: int = 0
    failures: int = 0
    errors: list[str] = field(default_factory=list)
    pending: int = 0
    escalated: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "written": dict(self.written),
            "flushes": self.flushes,
            "failures": self.failures,
            "errors": list(self.errors[-10:]),
            "pending": self.pending,
            "escalated": self.escalated,
        }


class SaveCoordinator:
    """Pending writes grouped per collection, keyed per entity.

    Staging an operation for a key that already has a pending operation
    replaces it, so the last write for an entity wins. ``flush`` writes the
    collections in :data:`FLUSH_ORDER`, one bulk request each. A failed
    collection is merged back (newer staged operations win) together with
    every collection after it, and retried on the next flush; after
    ``max_failures`` consecutive failures the flush raises
    :class:`RepositoryError`.
    """

    def __init__(
        self,
        repositories: Mapping[Collection, Any],
        *,
        interval: float = 5.0,
        max_failures: int = 3,
    ) -> None:
        self._repositories = dict(repositories)
        self._interval = interval
        self._max_failures = max_failures
        self._pending: dict[Collection, OrderedDict[Hashable, Any]] = {
            collection: OrderedDict() for collection in FLUSH_ORDER
        }
        self._flush_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._stopping = False
        self._consecutive_failures = 0
        self.report = FlushReport()

    @property
    def pending_count(self) -> int:
        return sum(len(batch) for batch in self._pending.values())

    def pending(self, collection: Collection) -> list[Any]:
        return list(self._pending[collection].values())

    def stage(self, collection: Collection, key: Hashable, op: Any) -> None:
        batch = self._pending[collection]
        batch.pop(key, None)
        batch[key] = op

    def discard(self, collection: Collection, key: Hashable) -> None:
        self._pending[collection].pop(key, None)

    async def flush(self) -> int:
        """Write everything pending; returns the number of operations written."""

        async with self._flush_lock:
            batches = {collection: self._pending[collection] for collection in FLUSH_ORDER}
            self._pending = {collection: OrderedDict() for collection in FLUSH_ORDER}
            written: dict[str, int] = {}
            failed_at: int | None = None
            error: RepositoryError | None = None

            for index, collection in enumerate(FLUSH_ORDER):
                batch = batches[collection]
                if not batch:
                    continue
                repository = self._repositories[collection]
                try:
                    await asyncio.to_thread(repository.bulk_write, list(batch.values()))
                except RepositoryError as exc:
                    failed_at, error = index, exc
                    break
                except asyncio.CancelledError:
                    # The write may still finish in its thread; replaying it is idempotent.
                    for remaining in FLUSH_ORDER[index:]:
                        self._merge_back(remaining, batches[remaining])
                    self._record_written(written)
                    self.report.pending = self.pending_count
                    raise
                written[collection.value] = len(batch)

            self._record_written(written)

            if error is not None:
                for collection in FLUSH_ORDER[failed_at:]:
                    self._merge_back(collection, batches[collection])
                self._consecutive_failures += 1
                self.report.failures += 1
                self.report.errors.append(str(error))
                logger.error(
                    "Flush failed (%d consecutive), %d operations kept: %s",
                    self._consecutive_failures,
                    self.pending_count,
                    error,
                )
                if self._consecutive_failures >= self._max_failures:
                    self.report.escalated = True
                    raise RepositoryError(
                        f"Flush failed {self._consecutive_failures} times in a row: {error}"
                    ) from error
            else:
                self._consecutive_failures = 0

            self.report.pending = self.pending_count
            return sum(written.values())

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self._run(), name="save-coordinator")

    async def stop(self) -> FlushReport:
        """Stop the periodic flush and perform a final best-effort flush.

        A periodic flush already writing is allowed to finish before the loop
        is cancelled.
        """

        self._stopping = True
        if self._task is not None:
            async with self._flush_lock:
                self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        try:
            await self.flush()
        except RepositoryError as exc:
            logger.error("Final flush failed, %d operations dropped: %s", self.pending_count, exc)
        self.report.pending = self.pending_count
        return self.report

    async def _run(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self._interval)
            if self._stopping:
                return
            try:
                await self.flush()
            except RepositoryError as exc:
                logger.error("Periodic flush escalated: %s", exc)
                return

    def _record_written(self, written: dict[str, int]) -> None:
        if not written:
            return
        self.report.flushes += 1
        for name, count in written.items():
            self.report.written[name] = self.report.written.get(name, 0) + count

    def _merge_back(self, collection: Collection, batch: OrderedDict[Hashable, Any]) -> None:
        newer = self._pending[collection]
        merged: OrderedDict[Hashable, Any] = OrderedDict(
            (key, op) for key, op in batch.items() if key not in newer
        )
        merged.update(newer)
        self._pending[collection] = merged
