from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from ..models import RawCompanyPage, RawListing


@dataclass
class ScrapeOptions:
    limit: int = 50
    page: int = 1
    include_details: bool = False


@dataclass
class ListingPage:
    listings: list[RawListing] = field(default_factory=list)
    total_found: int = 0
    has_next_page: bool = False
    page: int = 1
    errors: list[str] = field(default_factory=list)


@dataclass
class CompanyProfileResult:
    success: bool
    data: RawCompanyPage | None = None
    error: str | None = None


class SiteAdapter(Protocol):
    site_key: str

    def can_handle(self, url: str) -> bool:
        ...

    async def scrape_listings(self, options: ScrapeOptions) -> ListingPage:
        ...

    async def scrape_company_profile(self, url: str) -> CompanyProfileResult:
        ...
