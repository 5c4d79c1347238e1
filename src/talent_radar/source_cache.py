from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from .config import DEFAULT_SOURCE_TTL_HOURS, TtlTable
from .db import Repository
from .models import CacheDecision, CompanySource, CompanySourceData
from .utils import stable_hash, utc_now

logger = logging.getLogger(__name__)


def _format_hours(hours: float) -> str:
    return f"{hours:g}h"


class CompanySourceCache:
    """Decides whether a cached company page is stale and records every scrape attempt."""

    def __init__(
        self,
        repo: Repository,
        ttl: TtlTable | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repo = repo
        self.ttl = ttl or TtlTable(DEFAULT_SOURCE_TTL_HOURS)
        self.clock = clock

    def with_ttl_overrides(self, overrides: dict[str, float]) -> None:
        self.ttl = self.ttl.with_overrides(overrides)

    async def should_refetch(
        self,
        company_id: int,
        source_site: str,
        source_url: str,
        force: bool = False,
    ) -> CacheDecision:
        try:
            existing = self.repo.get_company_source(company_id, source_site)
            if existing is None:
                return CacheDecision(True, "No existing source found")

            if force:
                return CacheDecision(True, "Force flag enabled - bypassing TTL", existing)

            if existing.source_url != source_url:
                return CacheDecision(True, "Source URL has changed", existing)

            if not existing.is_valid:
                return CacheDecision(True, "Source was marked as invalid", existing)

            ttl_hours = self.ttl.hours_for(source_site)
            expires_at = existing.last_scraped_at + timedelta(hours=ttl_hours)
            now = self.clock()
            if now > expires_at:
                return CacheDecision(
                    True,
                    f"TTL expired ({_format_hours(ttl_hours)} limit exceeded)",
                    existing,
                )

            remaining = round((expires_at - now).total_seconds() / 3600)
            return CacheDecision(False, f"Within TTL window (expires in {remaining}h)", existing)
        except Exception as exc:
            logger.error("cache check failed for company %s source %s: %s", company_id, source_site, exc)
            return CacheDecision(True, f"Cache check failed: {exc}")

    async def save(self, data: CompanySourceData) -> CompanySource:
        source = CompanySource(
            company_id=data.company_id,
            source_site=data.source_site,
            source_url=data.source_url,
            last_scraped_at=self.clock(),
            is_valid=data.is_valid,
            content_hash=stable_hash(data.raw_content) if data.raw_content else None,
            raw_content=data.raw_content,
        )
        self.repo.upsert_company_source(source)
        logger.info(
            "saved company source %s for company %s (valid=%s)",
            data.source_site,
            data.company_id,
            data.is_valid,
        )
        return source

    async def mark_invalid(self, company_id: int, source_site: str, reason: str | None = None) -> bool:
        updated = self.repo.mark_company_source_invalid(company_id, source_site, reason)
        logger.warning(
            "marked company source %s for company %s invalid: %s",
            source_site,
            company_id,
            reason or "no reason given",
        )
        return updated

    async def has_content_changed(self, company_id: int, source_site: str, new_content: str) -> bool:
        try:
            existing = self.repo.get_company_source(company_id, source_site)
        except Exception as exc:
            logger.error("content hash lookup failed for company %s: %s", company_id, exc)
            return True
        if existing is None or not existing.content_hash:
            return True
        return existing.content_hash != stable_hash(new_content)

    async def sources_for_company(self, company_id: int) -> list[CompanySource]:
        return self.repo.list_company_sources(company_id)

    async def cleanup_older_than(self, days: int = 90) -> int:
        cutoff = self.clock() - timedelta(days=days)
        removed = self.repo.delete_company_sources(cutoff)
        logger.info("cleaned up %s company source(s) older than %s days or invalid", removed, days)
        return removed

    async def stats(self) -> dict:
        stats = self.repo.company_source_stats()
        stats["ttl_hours"] = self.ttl.as_dict()
        return stats
