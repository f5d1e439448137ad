"""Resolve provider titles to MDB ids."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from rapidfuzz.distance import Levenshtein

from ..errors import MatchRejection, PermanentExternalError
from ..utils.cancellation import CancellationToken
from ..utils.text import normalize_for_match
from .mdb import MdbClient, MdbTitle

logger = logging.getLogger(__name__)

TAU_ACCEPT = 0.90
TAU_MARGIN = 0.05
YEAR_TOLERANCE = 1
NO_MATCH = "no-mdb-match"
_EPSILON = 1e-9


@dataclass(frozen=True)
class MatchResult:
    mdb_id: int
    title_key: str
    snapshot: MdbTitle
    score: float
    method: str


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: MdbTitle
    score: float

    def sort_key(self) -> tuple[float, float, str, int]:
        return (
            -self.score,
            -self.candidate.popularity,
            self.candidate.release_date or "9999-99-99",
            self.candidate.mdb_id,
        )


def title_key(media_type: str, mdb_id: int) -> str:
    return f"{media_type}-{mdb_id}"


def similarity(left: str, right: str) -> float:
    """Levenshtein ratio of the normalized strings, in ``[0, 1]``."""

    a, b = normalize_for_match(left), normalize_for_match(right)
    if not a or not b:
        return 0.0
    return Levenshtein.normalized_similarity(a, b)


def score_candidate(name: str, candidate: MdbTitle) -> float:
    names = [candidate.title, candidate.original_title or "", *candidate.alternative_titles]
    return max(similarity(name, value) for value in names if value) if any(names) else 0.0


def rank_candidates(name: str, candidates: list[MdbTitle], year: int | None) -> list[ScoredCandidate]:
    """Score eligible candidates and order them best first, one entry per MDB id."""

    scored = []
    for candidate in candidates:
        if year is not None and (candidate.year is None or abs(candidate.year - year) > YEAR_TOLERANCE):
            continue
        scored.append(ScoredCandidate(candidate, score_candidate(name, candidate)))
    scored.sort(key=ScoredCandidate.sort_key)

    unique: list[ScoredCandidate] = []
    seen: set[int] = set()
    for entry in scored:
        if entry.candidate.mdb_id in seen:
            continue
        seen.add(entry.candidate.mdb_id)
        unique.append(entry)
    return unique


def select_candidate(ranked: list[ScoredCandidate]) -> ScoredCandidate | None:
    if not ranked:
        return None
    best = ranked[0]
    if best.score + _EPSILON < TAU_ACCEPT:
        return None
    if len(ranked) > 1 and best.score - ranked[1].score + _EPSILON < TAU_MARGIN:
        return None
    return best


class MatchingEngine:
    """Direct external-id lookup first, then a scored title search. Never guesses."""

    def __init__(self, mdb: MdbClient) -> None:
        self._mdb = mdb

    async def match(
        self,
        media_type: str,
        name: str,
        *,
        year: int | None = None,
        external_id: tuple[str, str] | None = None,
        token: CancellationToken | None = None,
    ) -> MatchResult:
        if external_id is not None:
            direct = await self._match_external(media_type, external_id, token)
            if direct is not None:
                return direct

        try:
            candidates = await self._mdb.search_title(media_type, name, year, token=token)
            if not candidates and year is not None:
                candidates = await self._mdb.search_title(media_type, name, None, token=token)
        except PermanentExternalError as exc:
            logger.info("MDB search for %r rejected: %s", name, exc)
            raise MatchRejection(NO_MATCH, name) from exc

        chosen = select_candidate(rank_candidates(name, candidates, year))
        if chosen is None:
            raise MatchRejection(NO_MATCH, name)
        mdb_id = chosen.candidate.mdb_id
        return MatchResult(
            mdb_id=mdb_id,
            title_key=title_key(media_type, mdb_id),
            snapshot=chosen.candidate,
            score=chosen.score,
            method="search",
        )

    async def _match_external(
        self,
        media_type: str,
        external_id: tuple[str, str],
        token: CancellationToken | None,
    ) -> MatchResult | None:
        id_kind, value = external_id
        try:
            found = await self._mdb.find_by_external_id(id_kind, value, media_type, token=token)
        except PermanentExternalError as exc:
            logger.debug("External id %s:%s lookup failed: %s", id_kind, value, exc)
            return None
        unique = {entry.mdb_id: entry for entry in found}
        if len(unique) != 1:
            return None
        snapshot = next(iter(unique.values()))
        return MatchResult(
            mdb_id=snapshot.mdb_id,
            title_key=title_key(media_type, snapshot.mdb_id),
            snapshot=snapshot,
            score=1.0,
            method="external-id",
        )
