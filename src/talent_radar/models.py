from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

WORK_MODELS = ("remote", "hybrid", "office", "unknown")
EXPERIENCE_LEVELS = ("junior", "mid", "senior")

TASK_KINDS = ("scrape-site", "extract-ai", "process-batch", "health-check")


@dataclass
class RawListing:
    title: str
    company_name: str
    detail_url: str
    source_site: str
    native_id: str = ""
    location_text: str = ""
    work_model_text: str = ""
    salary_text: str = ""
    posted_date_text: str = ""
    technology_hints: list[str] = field(default_factory=list)
    full_text: str = ""
    company_website: str = ""
    company_profile_url: str = ""


@dataclass
class RawCompanyPage:
    url: str
    name: str
    website: str = ""
    location: str = ""
    industry: str = ""
    description: str = ""
    raw_content: str = ""


@dataclass
class Salary:
    min: int | None = None
    max: int | None = None
    currency: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.min is None and self.max is None


@dataclass
class NormalizedListing:
    title: str
    company_name: str
    detail_url: str
    source_site: str
    native_id: str
    location: str = ""
    work_model: str = "unknown"
    salary: Salary = field(default_factory=Salary)
    experience_level: str | None = None
    posted_at: datetime | None = None
    technologies: list[str] = field(default_factory=list)
    description: str = ""
    company_website: str = ""


@dataclass(frozen=True)
class SourceSighting:
    last_seen_at: datetime
    url: str
    native_id: str


@dataclass
class CanonicalListing:
    id: int | None
    title: str
    company_name: str
    company_id: int | None = None
    location: str = ""
    work_model: str = "unknown"
    technologies: list[str] = field(default_factory=list)
    salary: Salary = field(default_factory=Salary)
    experience_level: str | None = None
    posted_at: datetime | None = None
    description: str = ""
    status: str = "active"
    created_at: datetime | None = None
    updated_at: datetime | None = None
    scraped_sites: dict[str, SourceSighting] = field(default_factory=dict)

    @property
    def external_ids(self) -> dict[str, str]:
        return {site: s.native_id for site, s in self.scraped_sites.items() if s.native_id}

    def record_sighting(self, site: str, url: str, native_id: str, seen_at: datetime) -> None:
        # Only the given site's entry is touched; other sources keep their provenance.
        self.scraped_sites[site] = SourceSighting(last_seen_at=seen_at, url=url, native_id=native_id)


@dataclass
class Company:
    id: int | None
    name: str
    website: str = ""
    original_website: str = ""
    location: str = ""
    industry: str = ""
    description: str = ""
    aliases: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def has_alias(self, name: str) -> bool:
        wanted = name.strip().lower()
        return any(alias.strip().lower() == wanted for alias in self.aliases)

    def add_alias(self, name: str) -> bool:
        if not name.strip() or self.has_alias(name):
            return False
        self.aliases.append(name.strip())
        return True


@dataclass
class CompanySource:
    company_id: int
    source_site: str
    source_url: str
    last_scraped_at: datetime
    is_valid: bool = True
    content_hash: str | None = None
    raw_content: str | None = None
    invalid_reason: str | None = None


@dataclass
class CompanySourceData:
    company_id: int
    source_site: str
    source_url: str
    raw_content: str | None = None
    is_valid: bool = True


@dataclass
class CacheDecision:
    should_refetch: bool
    reason: str
    existing_source: CompanySource | None = None


@dataclass
class DuplicateMatch:
    listing_id: int
    score: float
    reasons: list[str]
    should_merge: bool
    exact: bool = False


@dataclass
class CompanyMatch:
    company_id: int
    score: float
    reasons: list[str]
    should_merge: bool
    exact: bool = False


@dataclass
class ScrapeRun:
    id: int
    run_type: str
    started_at: str
    finished_at: str | None = None
    ok: bool | None = None
    stats: dict[str, Any] = field(default_factory=dict)


@dataclass
class CompanyData:
    name: str
    website: str = ""
    location: str = ""
    industry: str = ""
    description: str = ""
