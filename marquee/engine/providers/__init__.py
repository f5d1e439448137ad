"""Provider adapters by kind."""

from .base import Category, ProviderAdapter, RawTitle
from .m3u import M3UAdapter
from .xtream import XtreamAdapter

ADAPTERS: dict[str, type[ProviderAdapter]] = {
    M3UAdapter.kind: M3UAdapter,
    XtreamAdapter.kind: XtreamAdapter,
}


def adapter_class(kind: str) -> type[ProviderAdapter]:
    try:
        return ADAPTERS[kind]
    except KeyError as exc:
        raise ValueError(f"Unsupported provider kind: {kind}") from exc


__all__ = [
    "ADAPTERS",
    "Category",
    "M3UAdapter",
    "ProviderAdapter",
    "RawTitle",
    "XtreamAdapter",
    "adapter_class",
]
