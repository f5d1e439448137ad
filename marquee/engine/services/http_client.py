"""Rate-limited outbound HTTP with per-bucket concurrency and rolling windows."""
from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Any, Mapping

import httpx

from ..errors import FetchError, PermanentExternalError, TransientExternalError
from ..schemas import RateLimitSpec
from ..settings import EngineSettings
from ..utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

MDB_BUCKET = "mdb"
RETRYABLE_STATUS = {408, 429}


def provider_bucket(provider_id: str) -> str:
    return f"provider:{provider_id}"


class RateLimiter:
    """At most ``N`` requests in flight and at most ``N`` starts per ``W`` seconds."""

    def __init__(self, spec: RateLimitSpec) -> None:
        self.spec = spec
        self._semaphore = asyncio.Semaphore(spec.concurrency)
        self._starts: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self, token: CancellationToken) -> None:
        await token.guard(self._semaphore.acquire())
        try:
            await self._reserve_start(token)
        except BaseException:
            self._semaphore.release()
            raise

    def release(self) -> None:
        self._semaphore.release()

    async def _reserve_start(self, token: CancellationToken) -> None:
        loop = asyncio.get_running_loop()
        while True:
            async with self._lock:
                now = loop.time()
                while self._starts and now - self._starts[0] >= self.spec.window_sec:
                    self._starts.popleft()
                if len(self._starts) < self.spec.concurrency:
                    self._starts.append(now)
                    return
                delay = self.spec.window_sec - (now - self._starts[0])
            await token.sleep(max(delay, 0.0))


class HttpClient:
    """Fetches bytes through named buckets, retrying transient failures.

    Unknown provider buckets fall back to ``per_provider_rate``. 5xx, 408, 429,
    timeouts and transport errors are retried with exponential backoff; other
    4xx responses raise :class:`PermanentExternalError` immediately.
    """

    def __init__(
        self,
        settings: EngineSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._default_spec = settings.per_provider_rate
        self._timeout = settings.http_timeout
        self._max_attempts = settings.http_max_attempts
        self._backoff_base = settings.http_backoff_base_sec
        self._client = httpx.AsyncClient(
            timeout=self._timeout,
            transport=transport,
            follow_redirects=True,
            headers={"User-Agent": "marquee/0.1"},
        )
        self._limiters: dict[str, RateLimiter] = {}
        self.register_bucket(MDB_BUCKET, settings.mdb_rate)

    def register_bucket(self, name: str, spec: RateLimitSpec) -> None:
        current = self._limiters.get(name)
        if current is None or current.spec != spec:
            self._limiters[name] = RateLimiter(spec)

    def unregister_bucket(self, name: str) -> None:
        self._limiters.pop(name, None)

    def bucket_spec(self, name: str) -> RateLimitSpec:
        return self._limiter(name).spec

    async def fetch(
        self,
        bucket: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        token: CancellationToken | None = None,
    ) -> bytes:
        token = token or CancellationToken()
        limiter = self._limiter(bucket)
        attempt = 0
        while True:
            attempt += 1
            await limiter.acquire(token)
            try:
                response = await token.guard(self._client.get(url, params=params, headers=headers))
            except httpx.TimeoutException as exc:
                error: FetchError = TransientExternalError(
                    f"Timed out fetching {url}", kind="transient", url=url
                )
                error.__cause__ = exc
            except httpx.TransportError as exc:
                error = TransientExternalError(f"Transport error fetching {url}: {exc}", kind="transport", url=url)
                error.__cause__ = exc
            else:
                if response.status_code < 400:
                    return response.content
                error = _status_error(url, response.status_code)
            finally:
                limiter.release()

            if isinstance(error, PermanentExternalError) or attempt >= self._max_attempts:
                raise error
            delay = self._backoff_base * (2 ** (attempt - 1))
            logger.warning(
                "Retrying %s in %.2fs after %s (attempt %d/%d)",
                url,
                delay,
                error.kind,
                attempt,
                self._max_attempts,
            )
            await token.sleep(delay)

    async def fetch_json(self, bucket: str, url: str, **kwargs: Any) -> Any:
        payload = await self.fetch(bucket, url, **kwargs)
        return decode_json(payload, url)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _limiter(self, bucket: str) -> RateLimiter:
        limiter = self._limiters.get(bucket)
        if limiter is None:
            limiter = RateLimiter(self._default_spec)
            self._limiters[bucket] = limiter
        return limiter


def decode_json(payload: bytes, url: str | None = None) -> Any:
    try:
        return json.loads(payload)
    except ValueError as exc:
        raise PermanentExternalError(f"Invalid JSON from {url}", kind="http4xx", url=url) from exc


def _status_error(url: str, status: int) -> FetchError:
    if status >= 500:
        return TransientExternalError(f"HTTP {status} from {url}", kind="http5xx", url=url, status=status)
    if status in RETRYABLE_STATUS:
        return TransientExternalError(f"HTTP {status} from {url}", kind="transient", url=url, status=status)
    return PermanentExternalError(f"HTTP {status} from {url}", kind="http4xx", url=url, status=status)
