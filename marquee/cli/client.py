"""HTTP client helpers for the Marquee CLI."""
from __future__ import annotations

import httpx

USER_AGENT = "marquee-cli/0.1.0"


def create_client(base_url: str, *, timeout: float = 10.0, transport: httpx.BaseTransport | None = None) -> httpx.Client:
    """Return an HTTPX client for the engine API rooted at ``base_url``.

    Trailing slashes are dropped so ``--api-base http://host:8000/`` and the
    bare form build identical request URLs.
    """

    return httpx.Client(
        base_url=base_url.rstrip("/"),
        timeout=timeout,
        transport=transport,
        headers={"Accept": "application/json", "User-Agent": USER_AGENT},
    )
