"""Title normalization helpers shared by adapters and the matcher."""
from __future__ import annotations

import hashlib
import re
import unicodedata

_YEAR_SUFFIX = re.compile(
    r"^(?P<title>.*?)\s*(?:\((?P<paren>(?:19|20)\d{2})\)|\[(?P<bracket>(?:19|20)\d{2})\]|[-–]\s*(?P<dash>(?:19|20)\d{2}))\s*$"
)
_NON_WORD = re.compile(r"[\W_]+")
_WHITESPACE = re.compile(r"\s+")


def collapse_whitespace(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def split_title_year(value: str) -> tuple[str, int | None]:
    """Split a trailing ``(1999)``, ``[1999]`` or ``- 1999`` from a display name."""

    value = collapse_whitespace(value)
    match = _YEAR_SUFFIX.match(value)
    if not match:
        return value, None
    title = match.group("title").strip(" -–.")
    if not title:
        return value, None
    year = match.group("paren") or match.group("bracket") or match.group("dash")
    return title, int(year)


def strip_accents(value: str) -> str:
    normalized = unicodedata.normalize("NFKD", value)
    return "".join(char for char in normalized if not unicodedata.combining(char))


def normalize_for_match(value: str) -> str:
    """Case-fold, strip accents and collapse punctuation to single spaces."""

    folded = strip_accents(value).casefold()
    return collapse_whitespace(_NON_WORD.sub(" ", folded))


def short_hash(value: str, length: int = 12) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:length]
