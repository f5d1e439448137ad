"""Pattern to TTL rules used by the disk cache."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from ..errors import ConfigError
from ..schemas import CachePolicyRule

_PLACEHOLDER = re.compile(r"^\{[A-Za-z_][A-Za-z0-9_]*\}$")

# Provider-scoped rules registered when a provider is configured.
PROVIDER_RULES: dict[str, tuple[tuple[str, float | None], ...]] = {
    "xtream": (
        ("xtream/{provider}/categories/{type}", 24),
        ("xtream/{provider}/streams/{type}", 6),
        ("xtream/{provider}/series/{series_id}", 24),
        ("xtream/{provider}/live/{name}", 6),
    ),
    "m3u": (
        ("m3u/{provider}/{type}/{name}", 6),
    ),
}


@dataclass(frozen=True)
class CompiledRule:
    pattern: str
    ttl_hours: float | None
    segments: tuple[str | None, ...]

    def matches(self, parts: tuple[str, ...]) -> bool:
        if len(parts) != len(self.segments):
            return False
        return all(
            segment is None or segment == part
            for segment, part in zip(self.segments, parts)
        )


def compile_rule(pattern: str, ttl_hours: float | None) -> CompiledRule:
    """Compile ``a/{name}/c`` into literal segments and one-segment wildcards."""

    parts = pattern.strip("/").split("/")
    if not pattern.strip("/") or any(part == "" for part in parts):
        raise ConfigError(f"Invalid cache policy pattern: {pattern!r}")
    segments: list[str | None] = []
    for part in parts:
        if _PLACEHOLDER.match(part):
            segments.append(None)
        elif "{" in part or "}" in part:
            raise ConfigError(f"Invalid placeholder in cache policy pattern: {pattern!r}")
        else:
            segments.append(part)
    return CompiledRule(pattern=pattern, ttl_hours=ttl_hours, segments=tuple(segments))


class CachePolicyEngine:
    """Ordered rule list; the first matching rule decides the TTL.

    User rules always come before provider-scoped rules. An unmatched path
    returns ``None``, meaning the entry never expires.
    """

    def __init__(self, rules: Iterable[CachePolicyRule] = ()) -> None:
        self._user_rules = tuple(compile_rule(rule.pattern, rule.ttl_hours) for rule in rules)
        self._provider_rules: dict[str, tuple[CompiledRule, ...]] = {}
        self._rules = self._user_rules

    @property
    def rules(self) -> tuple[CompiledRule, ...]:
        return self._rules

    def ttl_for(self, key: str) -> float | None:
        parts = tuple(key.strip("/").split("/"))
        for rule in self._rules:
            if rule.matches(parts):
                return rule.ttl_hours
        return None

    def register_provider(self, provider_id: str, kind: str) -> None:
        templates = PROVIDER_RULES.get(kind, ())
        self._provider_rules[provider_id] = tuple(
            compile_rule(pattern.replace("{provider}", provider_id), ttl)
            for pattern, ttl in templates
        )
        self._rebuild()

    def unregister_provider(self, provider_id: str) -> None:
        if self._provider_rules.pop(provider_id, None) is not None:
            self._rebuild()

    def _rebuild(self) -> None:
        provider_rules = tuple(
            rule for provider_id in sorted(self._provider_rules) for rule in self._provider_rules[provider_id]
        )
        self._rules = self._user_rules + provider_rules
