from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx

from .errors import TransientIOError
from .utils import normalize_url

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def _is_supported_http_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


@dataclass
class FetchedPage:
    requested_url: str
    final_url: str
    status_code: int
    body: str
    content_type: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300 and bool(self.body)


class DomainRateLimiter:
    def __init__(self, requests_per_second: float) -> None:
        self.interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        self._next_allowed: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def wait(self, url: str) -> None:
        if self.interval <= 0:
            return
        domain = self._domain_key(url)
        lock = self._locks.setdefault(domain, asyncio.Lock())
        async with lock:
            now = asyncio.get_running_loop().time()
            next_allowed = self._next_allowed.get(domain, now)
            if next_allowed > now:
                await asyncio.sleep(next_allowed - now)
            self._next_allowed[domain] = asyncio.get_running_loop().time() + self.interval

    @staticmethod
    def _domain_key(url: str) -> str:
        host = (urlparse(url).hostname or "").lower()
        if not host:
            return ""
        parts = host.split(".")
        if len(parts) <= 2:
            return host
        return ".".join(parts[-2:])


class AsyncHttpHelper:
    def __init__(
        self,
        timeout_seconds: int,
        per_domain_rps: float,
        max_redirects: int = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        timeout = httpx.Timeout(timeout_seconds, connect=min(4, timeout_seconds))
        limits = httpx.Limits(max_connections=50, max_keepalive_connections=20)
        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            limits=limits,
            headers={
                "User-Agent": "TalentRadar/1.0 (job listing aggregator)",
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "bg,en;q=0.8",
            },
            max_redirects=max_redirects,
            transport=transport,
        )
        self.rate_limiter = DomainRateLimiter(per_domain_rps)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _stream_with_retries(self, url: str, max_bytes: int) -> tuple[httpx.Response, bytes]:
        """GET with retries, reading at most ``max_bytes`` of a readable body."""
        last_exc: Exception | None = None
        for attempt in range(3):
            try:
                await self.rate_limiter.wait(url)
                async with self.client.stream("GET", url) as response:
                    retryable = response.status_code in RETRYABLE_STATUS and attempt < 2
                    if not retryable:
                        body = b""
                        if response.status_code < 400 and _is_readable(response.headers.get("content-type", "")):
                            body = await _read_capped(response, max_bytes)
                        return response, body
                await asyncio.sleep((2**attempt) * 0.4)
            except (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout) as exc:
                last_exc = exc
                if attempt < 2:
                    await asyncio.sleep((2**attempt) * 0.4)
                    continue
                raise
        assert last_exc is not None
        raise last_exc

    async def fetch_page(self, url: str, max_bytes: int = 1_500_000) -> FetchedPage:
        """GET a page; transport faults, timeouts and retryable statuses raise TransientIOError."""
        normalized = normalize_url(url)
        if not normalized or not _is_supported_http_url(normalized):
            return FetchedPage(url, normalized, 0, "")

        try:
            response, raw = await self._stream_with_retries(normalized, max_bytes)
        except httpx.TimeoutException as exc:
            raise TransientIOError(f"timeout fetching {normalized}: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientIOError(f"transport error fetching {normalized}: {exc}") from exc

        if response.status_code in RETRYABLE_STATUS:
            raise TransientIOError(f"{normalized} answered {response.status_code}")

        body = raw.decode(response.encoding or "utf-8", errors="replace")
        logger.debug("fetched %s (%s, %s bytes)", normalized, response.status_code, len(raw))
        return FetchedPage(
            requested_url=normalized,
            final_url=str(response.url),
            status_code=response.status_code,
            body=body,
            content_type=response.headers.get("content-type", ""),
        )


def _is_readable(content_type: str) -> bool:
    return not content_type or any(kind in content_type for kind in ("html", "xml", "json"))


async def _read_capped(response: httpx.Response, max_bytes: int) -> bytes:
    chunks: list[bytes] = []
    total = 0
    async for chunk in response.aiter_bytes():
        if not chunk:
            continue
        chunks.append(chunk)
        total += len(chunk)
        if total >= max_bytes:
            break
    return b"".join(chunks)[:max_bytes]
