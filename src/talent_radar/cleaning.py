from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field, replace
from types import MappingProxyType

from bs4 import BeautifulSoup

from .content import strip_tags_fallback, truncate_at_word

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleaningProfile:
    name: str
    description: str
    remove: tuple[str, ...]
    preserve: tuple[str, ...]
    content_containers: tuple[str, ...]
    remove_patterns: tuple[re.Pattern, ...]
    max_length: int
    min_length: int


@dataclass
class CleaningResult:
    cleaned_text: str
    cleaned_html: str
    original_length: int
    cleaned_length: int
    applied_profile: str
    processing_time_ms: float
    removed_elements: list[str] = field(default_factory=list)
    preserved_elements: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


STANDARD = CleaningProfile(
    name="standard",
    description="Balanced cleaning for job vacancy and general content",
    remove=(
        "nav", "header", "footer", "aside", "script", "style", "noscript", "iframe",
        ".sidebar", ".menu", ".navigation", ".breadcrumb",
        ".social", ".share", ".follow", ".subscribe", '[class*="social"]',
        ".ad", ".ads", ".advertisement", ".sponsored", '[class*="ad-"]', '[class*="promo"]',
        ".comments", ".reviews", '[class*="comment"]', '[class*="review"]',
        ".cookie", ".popup", ".modal", ".overlay", '[class*="cookie"]',
        "form:not(.application-form)", "button:not(.apply-button)", 'input:not([type="hidden"])',
    ),
    preserve=(
        "main", "article", ".content", ".main-content", '[role="main"]',
        ".job-description", ".job-details", ".job-requirements", ".responsibilities",
        ".company-info", ".salary", ".compensation", ".benefits",
    ),
    content_containers=("main", "article", ".content", ".main-content", "body"),
    remove_patterns=(
        re.compile(r"privacy policy|cookie policy|terms of service|we use cookies|accept.*?cookies", re.IGNORECASE),
        re.compile(r"follow us|share this|subscribe.*?newsletter|join.*?mailing list", re.IGNORECASE),
        re.compile(r"click here|read more|view all|show more|load more", re.IGNORECASE),
        re.compile(r"home\s*[>|]\s*|breadcrumb|skip to|go to", re.IGNORECASE),
    ),
    max_length=15_000,
    min_length=100,
)

AGGRESSIVE = CleaningProfile(
    name="aggressive",
    description="Maximum cleaning for extraction with minimal noise",
    remove=(
        "nav", "header", "footer", "aside", "form", "script", "style", "noscript",
        "iframe", "object", "embed", "video", "audio", "button", "input", "select", "textarea",
        ".sidebar", ".menu", ".social", ".ad", ".ads", ".comments", ".cookie", ".popup",
    ),
    preserve=("main", "article", "p", "h1", "h2", "h3", "ul", "ol", "li"),
    content_containers=("main", "article", ".content", "body"),
    remove_patterns=(
        re.compile(r"©.*?\d{4}|copyright.*?\d{4}|all rights reserved", re.IGNORECASE),
        re.compile(r"powered by|built with|click here|read more", re.IGNORECASE),
    ),
    max_length=10_000,
    min_length=50,
)

DEFAULT_PROFILES = MappingProxyType({STANDARD.name: STANDARD, AGGRESSIVE.name: AGGRESSIVE})


class HtmlCleaner:
    def __init__(self, profiles=DEFAULT_PROFILES) -> None:
        self.profiles = MappingProxyType(dict(profiles))

    def available_profiles(self) -> list[str]:
        return list(self.profiles)

    def profile(self, name: str, **overrides) -> tuple[CleaningProfile, str | None]:
        base = self.profiles.get(name)
        warning = None
        if base is None:
            warning = f"Unknown cleaning profile: {name}, using standard profile"
            logger.warning("unknown cleaning profile %r, using standard", name)
            base = self.profiles["standard"]
        if overrides:
            base = replace(base, **overrides)
        return base, warning

    def clean(self, html: str, profile_name: str = "standard", **overrides) -> CleaningResult:
        started = time.perf_counter()
        profile, warning = self.profile(profile_name, **overrides)
        warnings = [warning] if warning else []
        try:
            soup = BeautifulSoup(html, "lxml")
            removed: list[str] = []
            for selector in profile.remove:
                for element in soup.select(selector):
                    removed.append(element.name or selector)
                    element.decompose()

            preserved = [element.name for selector in profile.preserve for element in soup.select(selector)]

            text = self._container_text(soup, profile)
            for pattern in profile.remove_patterns:
                text = pattern.sub(" ", text)
            text = truncate_at_word(re.sub(r"\s+", " ", text).strip(), profile.max_length)
            cleaned_html = str(soup)
        except Exception as exc:
            logger.error("cleaning with profile %s failed: %s", profile.name, exc)
            fallback = strip_tags_fallback(html)
            return CleaningResult(
                cleaned_text=fallback,
                cleaned_html=html,
                original_length=len(html),
                cleaned_length=len(html),
                applied_profile="fallback",
                processing_time_ms=(time.perf_counter() - started) * 1000,
                warnings=[*warnings, f"Cleaning failed, used tag stripping: {exc}"],
            )

        return CleaningResult(
            cleaned_text=text,
            cleaned_html=cleaned_html,
            original_length=len(html),
            cleaned_length=len(text),
            applied_profile=profile.name,
            processing_time_ms=(time.perf_counter() - started) * 1000,
            removed_elements=sorted(set(removed)),
            preserved_elements=sorted(set(preserved)),
            warnings=warnings,
        )

    @staticmethod
    def _container_text(soup: BeautifulSoup, profile: CleaningProfile) -> str:
        for selector in profile.content_containers:
            container = soup.select_one(selector)
            if container is None:
                continue
            text = container.get_text(" ", strip=True)
            if len(text) >= profile.min_length:
                return text
        body = soup.body or soup
        return body.get_text(" ", strip=True)
