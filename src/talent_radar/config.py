from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from dotenv import load_dotenv

from .errors import ConfigurationError


TRUE_VALUES = {"1", "true", "yes", "y", "on"}

DEFAULT_SOURCE_TTL_HOURS = {
    "dev.bg": 24 * 30,
    "company_website": 24 * 7,
    "default": 24 * 14,
}

DEFAULT_SITE_BASE_URLS = {
    "dev.bg": "https://dev.bg",
    "jobs.bg": "https://www.jobs.bg",
}


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in TRUE_VALUES


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_list(value: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None or not value.strip():
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _as_json_mapping(name: str, value: str | None) -> dict:
    if value is None or not value.strip():
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"{name} must be a JSON object: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ConfigurationError(f"{name} must be a JSON object")
    return parsed


class TtlTable:
    """Per-source-type cache lifetimes in hours. Immutable; extend with with_overrides()."""

    def __init__(self, hours: Mapping[str, float], version: int = 1) -> None:
        if "default" not in hours:
            raise ConfigurationError("TTL table requires a 'default' entry")
        self._hours = MappingProxyType({str(k): float(v) for k, v in hours.items()})
        self.version = version

    def hours_for(self, source_site: str) -> float:
        return self._hours.get(source_site, self._hours["default"])

    def with_overrides(self, overrides: Mapping[str, float]) -> "TtlTable":
        merged = dict(self._hours)
        merged.update(overrides)
        return TtlTable(merged, version=self.version + 1)

    def as_dict(self) -> dict[str, float]:
        return dict(self._hours)


@dataclass(frozen=True)
class MatchThresholds:
    # Tuning constants observed in production; calibrate before relying on them.
    min_match: float = 0.6
    merge: float = 0.8


@dataclass(frozen=True)
class DuplicateWeights:
    title: float = 0.35
    company: float = 0.30
    location: float = 0.10
    technologies: float = 0.15
    posted_date: float = 0.10


@dataclass(frozen=True)
class CompanyWeights:
    name: float = 0.5
    alias: float = 0.3
    location: float = 0.1
    industry: float = 0.1
    domain_match_score: float = 0.95
    fuzzy_ceiling: float = 0.9
    containment_score: float = 0.85


@dataclass
class Settings:
    db_path: Path

    scraper_enabled: bool
    enabled_sites: tuple[str, ...]
    site_base_urls: dict[str, str]
    request_timeout_seconds: int
    per_domain_rps: float
    max_html_bytes: int
    max_pages: int
    listings_per_page: int

    worker_concurrency: int
    handler_timeout_seconds: float
    keep_completed_tasks: int
    keep_failed_tasks: int
    task_retention_days: int

    source_ttl: TtlTable
    duplicate_thresholds: MatchThresholds
    company_thresholds: MatchThresholds
    duplicate_weights: DuplicateWeights
    company_weights: CompanyWeights
    duplicate_lookback_days: int

    ai_extraction_enabled: bool
    ai_api_key: str
    ai_base_url: str
    ai_model: str
    ai_timeout_seconds: float
    ai_max_retries: int
    ai_confidence_threshold: float
    ai_quality_threshold: float
    ai_enable_caching: bool
    ai_cache_expiry_hours: int
    ai_max_content_length: int

    @property
    def ai_configured(self) -> bool:
        return bool(self.ai_api_key)

    def validate(self) -> None:
        if self.ai_extraction_enabled and not self.ai_api_key:
            raise ConfigurationError("AI extraction is enabled but OPENAI_API_KEY is not set")
        if self.worker_concurrency < 1:
            raise ConfigurationError("WORKER_CONCURRENCY must be at least 1")
        unknown = [site for site in self.enabled_sites if site not in self.site_base_urls]
        if unknown:
            raise ConfigurationError(f"no base URL configured for site(s): {', '.join(unknown)}")


def load_settings() -> Settings:
    load_dotenv(override=False)

    ttl_overrides = _as_json_mapping("SOURCE_TTL_HOURS", os.getenv("SOURCE_TTL_HOURS"))
    site_urls = dict(DEFAULT_SITE_BASE_URLS)
    site_urls.update(_as_json_mapping("SITE_BASE_URLS", os.getenv("SITE_BASE_URLS")))

    return Settings(
        db_path=Path(os.getenv("DB_PATH", "state/talent_radar.sqlite")),
        scraper_enabled=_as_bool(os.getenv("SCRAPER_ENABLED"), True),
        enabled_sites=_as_list(os.getenv("SCRAPER_ENABLED_SITES"), ("dev.bg", "jobs.bg")),
        site_base_urls=site_urls,
        request_timeout_seconds=_as_int(os.getenv("REQUEST_TIMEOUT_SECONDS"), 30),
        per_domain_rps=_as_float(os.getenv("PER_DOMAIN_RPS"), 0.5),
        max_html_bytes=_as_int(os.getenv("MAX_HTML_BYTES"), 1_500_000),
        max_pages=_as_int(os.getenv("SCRAPER_MAX_PAGES"), 10),
        listings_per_page=_as_int(os.getenv("SCRAPER_PAGE_LIMIT"), 50),
        worker_concurrency=_as_int(os.getenv("WORKER_CONCURRENCY"), 4),
        handler_timeout_seconds=_as_float(os.getenv("HANDLER_TIMEOUT_SECONDS"), 600.0),
        keep_completed_tasks=_as_int(os.getenv("KEEP_COMPLETED_TASKS"), 50),
        keep_failed_tasks=_as_int(os.getenv("KEEP_FAILED_TASKS"), 25),
        task_retention_days=_as_int(os.getenv("TASK_RETENTION_DAYS"), 7),
        source_ttl=TtlTable(DEFAULT_SOURCE_TTL_HOURS).with_overrides(ttl_overrides),
        duplicate_thresholds=MatchThresholds(
            min_match=_as_float(os.getenv("DUPLICATE_MIN_MATCH_THRESHOLD"), 0.6),
            merge=_as_float(os.getenv("FUZZY_MATCH_THRESHOLD"), 0.8),
        ),
        company_thresholds=MatchThresholds(
            min_match=_as_float(os.getenv("COMPANY_MIN_MATCH_THRESHOLD"), 0.6),
            merge=_as_float(os.getenv("COMPANY_MATCH_THRESHOLD"), 0.8),
        ),
        duplicate_weights=DuplicateWeights(),
        company_weights=CompanyWeights(),
        duplicate_lookback_days=_as_int(os.getenv("DUPLICATE_LOOKBACK_DAYS"), 30),
        ai_extraction_enabled=_as_bool(os.getenv("AI_EXTRACTION_ENABLED"), False),
        ai_api_key=os.getenv("OPENAI_API_KEY", ""),
        ai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        ai_model=os.getenv("AI_MODEL_DEFAULT", "gpt-4o-mini"),
        ai_timeout_seconds=_as_float(os.getenv("AI_TIMEOUT_SECONDS"), 60.0),
        ai_max_retries=_as_int(os.getenv("AI_MAX_RETRIES"), 2),
        ai_confidence_threshold=_as_float(os.getenv("AI_CONFIDENCE_THRESHOLD"), 50.0),
        ai_quality_threshold=_as_float(os.getenv("AI_QUALITY_THRESHOLD"), 60.0),
        ai_enable_caching=_as_bool(os.getenv("AI_ENABLE_CACHING"), True),
        ai_cache_expiry_hours=_as_int(os.getenv("AI_CACHE_EXPIRY_HOURS"), 24),
        ai_max_content_length=_as_int(os.getenv("AI_MAX_CONTENT_LENGTH"), 10_000),
    )
