from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlencode, urlparse

from ..errors import TransientIOError
from ..http_client import AsyncHttpHelper
from .base import CompanyProfileResult, ListingPage, ScrapeOptions
from .common import (
    dedupe_listings,
    has_next_page_link,
    parse_itemlist_urls,
    parse_jobposting_jsonld,
    parse_organization_page,
)

logger = logging.getLogger(__name__)


class JsonLdSiteAdapter:
    """Job site adapter driven by schema.org JobPosting / ItemList markup.

    Listing pages either embed JobPosting objects directly or publish an
    ItemList of detail URLs; with ``include_details`` the detail pages are
    fetched and parsed as well. Transport faults propagate as
    TransientIOError so the calling task can be retried; per-page parse
    problems are reported in ``ListingPage.errors``.
    """

    def __init__(
        self,
        site_key: str,
        base_url: str,
        http: AsyncHttpHelper,
        listings_path: str = "/jobs",
        max_html_bytes: int = 1_500_000,
        detail_concurrency: int = 4,
    ) -> None:
        self.site_key = site_key
        self.base_url = base_url.rstrip("/")
        self.listings_path = listings_path
        self.http = http
        self.max_html_bytes = max_html_bytes
        self._detail_semaphore = asyncio.Semaphore(detail_concurrency)
        self._host = (urlparse(self.base_url).hostname or "").lower()

    def can_handle(self, url: str) -> bool:
        host = (urlparse(url).hostname or "").lower()
        bare = self._host[4:] if self._host.startswith("www.") else self._host
        return bool(host) and (host == bare or host.endswith(f".{bare}"))

    def listing_page_url(self, page: int) -> str:
        query = urlencode({"page": page}) if page > 1 else ""
        url = f"{self.base_url}{self.listings_path}"
        return f"{url}?{query}" if query else url

    async def scrape_listings(self, options: ScrapeOptions) -> ListingPage:
        page_url = self.listing_page_url(options.page)
        fetched = await self.http.fetch_page(page_url, max_bytes=self.max_html_bytes)
        result = ListingPage(page=options.page)
        if not fetched.ok:
            result.errors.append(f"listing page {page_url} returned status {fetched.status_code}")
            return result

        listings = parse_jobposting_jsonld(fetched.final_url, fetched.body, self.site_key)
        detail_urls = parse_itemlist_urls(fetched.final_url, fetched.body)

        if options.include_details and detail_urls:
            known = {listing.detail_url for listing in listings}
            pending = [url for url in detail_urls if url not in known][: max(0, options.limit - len(listings))]
            outcomes = await asyncio.gather(
                *(self._scrape_detail(url) for url in pending),
                return_exceptions=True,
            )
            for url, outcome in zip(pending, outcomes):
                if isinstance(outcome, TransientIOError):
                    result.errors.append(f"detail {url}: {outcome}")
                elif isinstance(outcome, Exception):
                    result.errors.append(f"detail {url}: {type(outcome).__name__}: {outcome}")
                else:
                    listings.extend(outcome)

        listings = dedupe_listings(listings)
        result.total_found = max(len(listings), len(detail_urls))
        result.listings = listings[: options.limit]
        result.has_next_page = has_next_page_link(fetched.body) or len(listings) > options.limit
        if not result.listings and not result.errors:
            result.errors.append(f"no JobPosting markup found on {page_url}")
        logger.info(
            "%s page %s: %s listing(s), %s error(s)",
            self.site_key,
            options.page,
            len(result.listings),
            len(result.errors),
        )
        return result

    async def _scrape_detail(self, url: str):
        async with self._detail_semaphore:
            fetched = await self.http.fetch_page(url, max_bytes=self.max_html_bytes)
        if not fetched.ok:
            return []
        return parse_jobposting_jsonld(fetched.final_url, fetched.body, self.site_key)

    async def scrape_company_profile(self, url: str) -> CompanyProfileResult:
        try:
            fetched = await self.http.fetch_page(url, max_bytes=self.max_html_bytes)
        except TransientIOError as exc:
            return CompanyProfileResult(success=False, error=str(exc))
        if not fetched.ok:
            return CompanyProfileResult(success=False, error=f"status {fetched.status_code}")
        page = parse_organization_page(fetched.final_url, fetched.body)
        if page is None:
            return CompanyProfileResult(success=False, error="no company information found")
        return CompanyProfileResult(success=True, data=page)
