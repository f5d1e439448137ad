"""On-disk response cache keyed by logical path, with a TTL purger."""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import quote, unquote

from ..utils.paths import ensure_directory
from .cache_policy import CachePolicyEngine

logger = logging.getLogger(__name__)

ENTRY_SUFFIX = ".cache"


@dataclass
class PurgeReport:
    scanned: int = 0
    purged: int = 0
    directories_removed: int = 0
    errors: int = 0
    dry_run: bool = False
    expired: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "scanned": self.scanned,
            "purged": self.purged,
            "directories_removed": self.directories_removed,
            "errors": self.errors,
            "dry_run": self.dry_run,
            "expired": self.expired[:50],
        }


def _encode_segment(segment: str) -> str:
    encoded = quote(segment, safe="-_.~")
    if encoded in {".", ".."}:
        encoded = encoded.replace(".", "%2E")
    return encoded


class DiskCache:
    """Stores bytes under ``<root>/<segment>/.../<last>.cache``.

    Readers tolerate entries vanishing underneath them, and writers go through
    a temporary file plus :func:`os.replace` so a reader never sees a partial
    entry.
    """

    def __init__(self, root: str, policy: CachePolicyEngine, *, purge_enabled: bool = True) -> None:
        self._root = ensure_directory(root)
        self._policy = policy
        self._purge_enabled = purge_enabled

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: str) -> Path:
        segments = [segment for segment in key.strip("/").split("/") if segment]
        if not segments:
            raise ValueError("Cache key must not be empty")
        encoded = [_encode_segment(segment) for segment in segments]
        return self._root.joinpath(*encoded[:-1], encoded[-1] + ENTRY_SUFFIX)

    def key_for(self, path: Path) -> str:
        relative = path.relative_to(self._root)
        parts = list(relative.parts)
        parts[-1] = parts[-1][: -len(ENTRY_SUFFIX)]
        return "/".join(unquote(part) for part in parts)

    def get(self, key: str, *, now: float | None = None) -> bytes | None:
        """Return the cached bytes, or ``None`` when missing or expired."""

        path = self.path_for(key)
        try:
            stat = path.stat()
            if self._expired(key, stat.st_mtime, now):
                return None
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def put(self, key: str, data: bytes) -> None:
        path = self.path_for(key)
        for attempt in range(2):
            path.parent.mkdir(parents=True, exist_ok=True)
            try:
                handle = tempfile.NamedTemporaryFile(dir=path.parent, prefix=".", suffix=".tmp", delete=False)
                break
            except FileNotFoundError:
                # A concurrent purge removed the emptied directory.
                if attempt:
                    raise
        try:
            with handle:
                handle.write(data)
            os.replace(handle.name, path)
        except BaseException:
            Path(handle.name).unlink(missing_ok=True)
            raise

    def clear_prefix(self, prefix: str) -> bool:
        """Remove every entry below ``prefix`` (``xtream/<provider>`` for instance)."""

        segments = [_encode_segment(segment) for segment in prefix.strip("/").split("/") if segment]
        if not segments:
            raise ValueError("Refusing to clear the cache root")
        target = self._root.joinpath(*segments)
        if not target.exists():
            return False
        shutil.rmtree(target, ignore_errors=True)
        logger.info("Cleared cache subtree %s", prefix)
        return True

    def purge(self, *, now: float | None = None) -> PurgeReport:
        """Delete entries older than their TTL and prune empty directories."""

        report = PurgeReport(dry_run=not self._purge_enabled)
        for directory, _dirnames, filenames in os.walk(self._root, topdown=False):
            for filename in filenames:
                if not filename.endswith(ENTRY_SUFFIX):
                    continue
                path = Path(directory) / filename
                report.scanned += 1
                key = self.key_for(path)
                try:
                    mtime = path.stat().st_mtime
                except FileNotFoundError:
                    continue
                if not self._expired(key, mtime, now):
                    continue
                report.expired.append(key)
                if report.dry_run:
                    continue
                try:
                    path.unlink()
                    report.purged += 1
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    report.errors += 1
                    logger.warning("Failed to purge cache entry %s: %s", key, exc)
            if not report.dry_run and Path(directory) != self._root:
                report.directories_removed += _remove_if_empty(Path(directory))
        if report.dry_run:
            logger.info("Cache purge dry run: %d of %d entries expired", len(report.expired), report.scanned)
        else:
            logger.info("Cache purge removed %d of %d entries", report.purged, report.scanned)
        return report

    def _expired(self, key: str, mtime: float, now: float | None) -> bool:
        ttl_hours = self._policy.ttl_for(key)
        if ttl_hours is None:
            return False
        age = (time.time() if now is None else now) - mtime
        return age > ttl_hours * 3600


def _remove_if_empty(directory: Path) -> int:
    try:
        directory.rmdir()
    except OSError:
        # Not empty, or a writer recreated it.
        return 0
    return 1
