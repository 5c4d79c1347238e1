from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from .adapters.base import ScrapeOptions, SiteAdapter
from .adapters.registry import AdapterRegistry
from .companies import CompanyMatcher
from .config import Settings
from .db import Repository, finish_run, start_run
from .duplicates import DuplicateDetector
from .errors import DataFaultError, IngestError
from .extraction_client import VacancyExtraction
from .http_client import AsyncHttpHelper
from .models import EXPERIENCE_LEVELS, WORK_MODELS, CompanyData, CompanySourceData, RawListing, Salary
from .normalize import TechPatternTable, normalize_listing
from .pipeline import AiProcessingPipeline, PipelineOptions
from .scheduler import Scheduler
from .source_cache import CompanySourceCache
from .task_queue import Task
from .utils import utc_now

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 20


@dataclass
class ScrapeStats:
    source: str
    pages: int = 0
    listings_found: int = 0
    created: int = 0
    merged_exact: int = 0
    merged_fuzzy: int = 0
    companies_created: int = 0
    companies_rejected: int = 0
    profiles_fetched: int = 0
    profiles_cached: int = 0
    errors: list[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append(message)

    def as_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


class TaskHandlers:
    """Orchestrates adapters, identity resolution and extraction for each task kind."""

    def __init__(
        self,
        settings: Settings,
        repo: Repository,
        registry: AdapterRegistry,
        http: AsyncHttpHelper,
        source_cache: CompanySourceCache,
        duplicates: DuplicateDetector,
        companies: CompanyMatcher,
        pipeline: AiProcessingPipeline,
        scheduler: Scheduler,
        tech_patterns: TechPatternTable | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.repo = repo
        self.registry = registry
        self.http = http
        self.source_cache = source_cache
        self.duplicates = duplicates
        self.companies = companies
        self.pipeline = pipeline
        self.scheduler = scheduler
        self.tech_patterns = tech_patterns or TechPatternTable.default()
        self.clock = clock

    def as_mapping(self) -> dict[str, Callable[[Task], Any]]:
        return {
            "scrape-site": self.scrape_site,
            "extract-ai": self.extract_ai,
            "process-batch": self.process_batch,
            "health-check": self.health_check,
        }

    # scrape-site

    async def scrape_site(self, task: Task) -> dict[str, Any]:
        site = task.payload.get("source", "")
        adapter = self.registry.get(site)
        if adapter is None:
            raise DataFaultError(f"no adapter registered for {site!r}")
        if not self.registry.is_enabled(site):
            logger.info("site %s is not enabled, skipping scrape", site)
            return {"source": site, "skipped": True}

        include_details = bool(task.payload.get("options", {}).get("include_details", False))
        stats = ScrapeStats(source=site)
        run_id = start_run(self.repo.conn, f"scrape:{site}")
        try:
            await self._scrape_pages(adapter, include_details, stats)
        except Exception as exc:
            stats.add_error(f"{type(exc).__name__}: {exc}")
            finish_run(self.repo.conn, run_id, ok=False, stats=stats.as_dict())
            raise
        finish_run(self.repo.conn, run_id, ok=True, stats=stats.as_dict())
        logger.info(
            "scrape of %s finished: %s found, %s created, %s merged, %s error(s)",
            site,
            stats.listings_found,
            stats.created,
            stats.merged_exact + stats.merged_fuzzy,
            len(stats.errors),
        )
        return stats.as_dict()

    async def _scrape_pages(self, adapter: SiteAdapter, include_details: bool, stats: ScrapeStats) -> None:
        profiles_seen: set[str] = set()
        for page_number in range(1, max(self.settings.max_pages, 1) + 1):
            page = await adapter.scrape_listings(
                ScrapeOptions(
                    limit=self.settings.listings_per_page,
                    page=page_number,
                    include_details=include_details,
                )
            )
            stats.pages += 1
            stats.listings_found += len(page.listings)
            for error in page.errors:
                stats.add_error(error)

            for raw in page.listings:
                try:
                    await self._ingest_listing(adapter, raw, stats, profiles_seen)
                except IngestError as exc:
                    logger.warning("could not ingest %s: %s", raw.detail_url, exc)
                    stats.add_error(f"{raw.detail_url}: {exc}")

            if not page.has_next_page:
                break

    async def _ingest_listing(
        self,
        adapter: SiteAdapter,
        raw: RawListing,
        stats: ScrapeStats,
        profiles_seen: set[str],
    ) -> None:
        listing = normalize_listing(raw, self.tech_patterns, clock=self.clock)
        if not listing.title or not listing.company_name:
            raise DataFaultError("listing is missing a title or company name")

        resolution = await self.companies.find_or_create(
            CompanyData(name=listing.company_name, website=listing.company_website)
        )
        company_id = None
        if resolution.company is None:
            stats.companies_rejected += 1
        else:
            company_id = resolution.company.id
            if resolution.created:
                stats.companies_created += 1
            profile_url = raw.company_profile_url
            if profile_url and profile_url not in profiles_seen:
                profiles_seen.add(profile_url)
                await self._refresh_company_profile(adapter, company_id, profile_url, stats)

        outcome = await self.duplicates.resolve(listing, company_id=company_id)
        if outcome.action == "created":
            stats.created += 1
        elif outcome.action == "merged-exact":
            stats.merged_exact += 1
        else:
            stats.merged_fuzzy += 1

    async def _refresh_company_profile(
        self,
        adapter: SiteAdapter,
        company_id: int,
        profile_url: str,
        stats: ScrapeStats,
    ) -> None:
        decision = await self.source_cache.should_refetch(company_id, adapter.site_key, profile_url)
        if not decision.should_refetch:
            stats.profiles_cached += 1
            logger.debug("company %s profile on %s reused: %s", company_id, adapter.site_key, decision.reason)
            return

        logger.info("fetching company %s profile on %s: %s", company_id, adapter.site_key, decision.reason)
        result = await adapter.scrape_company_profile(profile_url)
        if not result.success or result.data is None:
            stats.add_error(f"company profile {profile_url}: {result.error}")
            if decision.existing_source is not None:
                await self.source_cache.mark_invalid(company_id, adapter.site_key, result.error)
            else:
                await self.source_cache.save(
                    CompanySourceData(company_id, adapter.site_key, profile_url, is_valid=False)
                )
            return

        stats.profiles_fetched += 1
        page = result.data
        changed = await self.source_cache.has_content_changed(company_id, adapter.site_key, page.raw_content)
        await self.source_cache.save(
            CompanySourceData(
                company_id=company_id,
                source_site=adapter.site_key,
                source_url=profile_url,
                raw_content=page.raw_content,
            )
        )
        if not changed:
            logger.debug("company %s profile on %s unchanged since last fetch", company_id, adapter.site_key)
        elif page.name:
            await self.companies.merge(
                company_id,
                CompanyData(
                    name=page.name,
                    website=page.website,
                    location=page.location,
                    industry=page.industry,
                    description=page.description,
                ),
            )

    # extract-ai

    def _pipeline_options(self, payload: dict[str, Any]) -> PipelineOptions:
        return PipelineOptions(
            max_retries=self.settings.ai_max_retries,
            confidence_threshold=self.settings.ai_confidence_threshold,
            quality_threshold=float(payload.get("quality_threshold", self.settings.ai_quality_threshold)),
        )

    async def extract_ai(self, task: Task) -> dict[str, Any]:
        payload = task.payload
        source_url = payload.get("source_url", "")
        if not self.pipeline.client.is_configured():
            logger.warning("extraction client not configured, skipping %s", source_url)
            return {"success": False, "source_url": source_url, "errors": ["extraction client not configured"]}

        result = await self.pipeline.process(payload.get("content", ""), source_url, self._pipeline_options(payload))
        vacancy_id = payload.get("vacancy_id")
        updated = False
        if result.success and result.data is not None and vacancy_id:
            updated = self._apply_extraction(int(vacancy_id), result.data)

        return {
            "success": result.success,
            "source_url": source_url,
            "vacancy_id": vacancy_id,
            "vacancy_updated": updated,
            "quality_score": result.metadata.quality_score,
            "confidence_score": result.metadata.confidence_score,
            "cache_hit": result.metadata.cache_hit,
            "retry_count": result.metadata.retry_count,
            "data": result.data.as_dict() if result.data else None,
            "errors": result.errors,
            "warnings": result.warnings,
        }

    def _apply_extraction(self, vacancy_id: int, data: VacancyExtraction) -> bool:
        listing = self.repo.get_listing(vacancy_id)
        if listing is None:
            logger.warning("vacancy %s not found, extraction result not applied", vacancy_id)
            return False

        if data.description and not listing.description:
            listing.description = data.description
        if data.location and not listing.location:
            listing.location = data.location
        if data.work_model in WORK_MODELS and listing.work_model == "unknown":
            listing.work_model = data.work_model
        if data.experience_level in EXPERIENCE_LEVELS and listing.experience_level is None:
            listing.experience_level = data.experience_level
        if listing.salary.is_empty and (data.salary_min or data.salary_max):
            listing.salary = Salary(
                int(data.salary_min) if data.salary_min else None,
                int(data.salary_max) if data.salary_max else None,
                data.currency,
            )
        seen = {t.lower() for t in listing.technologies}
        for tech in data.technologies:
            if tech.lower() not in seen:
                listing.technologies.append(tech)
                seen.add(tech.lower())

        self.repo.update_listing(listing, now=self.clock())
        return True

    # process-batch

    async def process_batch(self, task: Task) -> dict[str, Any]:
        payload = task.payload
        batch_id = payload.get("batch_id") or task.batch_id
        urls = list(payload.get("urls", []))
        options = payload.get("options", {})
        max_concurrent = max(int(options.get("max_concurrent", 2)), 1)
        delay = float(options.get("delay_between_requests", 1.0))
        enable_ai = bool(options.get("enable_ai_extraction", True))

        semaphore = asyncio.Semaphore(max_concurrent)
        summary: dict[str, Any] = {
            "batch_id": batch_id,
            "total_urls": len(urls),
            "processed": 0,
            "successful": 0,
            "failed": 0,
            "queued_extractions": [],
            "errors": [],
        }

        async def fetch_one(index: int, url: str) -> None:
            async with semaphore:
                if index >= max_concurrent and delay > 0:
                    await asyncio.sleep(delay)
                try:
                    page = await self.http.fetch_page(url, max_bytes=self.settings.max_html_bytes)
                except IngestError as exc:
                    summary["failed"] += 1
                    summary["errors"].append({"url": url, "error": str(exc)})
                    return
                finally:
                    summary["processed"] += 1

            if not page.ok:
                summary["failed"] += 1
                summary["errors"].append({"url": url, "error": f"status {page.status_code}"})
                return
            summary["successful"] += 1
            if enable_ai:
                task_id = self.scheduler.schedule_ai_extraction(
                    content=page.body,
                    source_url=page.final_url,
                    priority=task.priority,
                    batch_id=batch_id,
                    quality_threshold=options.get("quality_threshold"),
                )
                summary["queued_extractions"].append(task_id)

        outcomes = await asyncio.gather(*(fetch_one(i, url) for i, url in enumerate(urls)), return_exceptions=True)
        for url, outcome in zip(urls, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("batch %s: %s raised %s", batch_id, url, outcome)
                summary["failed"] += 1
                summary["errors"].append({"url": url, "error": f"{type(outcome).__name__}: {outcome}"})
        logger.info(
            "batch %s fetched %s/%s url(s), queued %s extraction(s)",
            batch_id,
            summary["successful"],
            len(urls),
            len(summary["queued_extractions"]),
        )
        return summary

    # health-check

    async def health_check(self, task: Task) -> dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": self.clock(),
            "queue": self.scheduler.queue_health(),
            "pipeline": self.pipeline.health_status(),
            "listings": self.repo.count_listings(),
            "companies": self.repo.count_companies(),
            "company_sources": await self.source_cache.stats(),
        }
