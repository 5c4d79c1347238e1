from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime

from bs4 import BeautifulSoup

from .utils import utc_now

logger = logging.getLogger(__name__)

TITLE_SELECTORS = (
    "h1",
    "title",
    '[data-testid*="title"]',
    '[class*="title"]',
    '[class*="heading"]',
    ".job-title",
    ".position-title",
    "h2",
)

ALWAYS_REMOVE = (
    "script",
    "style",
    "noscript",
    "iframe",
    "object",
    "embed",
    "form",
    "input",
    "button",
    "select",
    "textarea",
    ".advertisement",
    ".ads",
    ".social-share",
    ".comments",
    ".footer",
    ".sidebar",
    '[class*="cookie"]',
    '[class*="popup"]',
    '[class*="modal"]',
    '[id*="cookie"]',
    '[id*="popup"]',
    '[id*="modal"]',
)

AGGRESSIVE_REMOVE = (
    "nav",
    "header",
    "aside",
    ".navigation",
    ".menu",
    ".breadcrumb",
    ".related",
    ".recommended",
    ".tags",
    ".share",
    ".author",
    ".date",
    ".meta",
    '[class*="social"]',
    '[class*="share"]',
    '[class*="follow"]',
    '[class*="subscribe"]',
)

MAIN_CONTENT_SELECTORS = (
    "main",
    "article",
    '[role="main"]',
    ".main-content",
    ".content",
    ".job-description",
    ".job-details",
    ".vacancy-description",
    ".position-description",
    '[class*="description"]',
    '[class*="content"]',
    '[id*="description"]',
    '[id*="content"]',
)

NOISE_PATTERNS = (
    re.compile(r"\b(cookies?|privacy policy|terms of service|gdpr|accept|decline)\b", re.IGNORECASE),
    re.compile(r"\b(subscribe|newsletter|follow us|social media)\b", re.IGNORECASE),
    re.compile(r"\b(share|like|tweet|facebook|linkedin|twitter)\b", re.IGNORECASE),
    re.compile(r"\b(advertisement|sponsored|promoted)\b", re.IGNORECASE),
    re.compile(r"\s*\([^)]*\)\s*"),
)

LANGUAGE_WORDS = {
    "en": {
        "the", "and", "for", "are", "but", "not", "you", "all", "can", "our",
        "with", "will", "have", "this", "that", "your", "from", "team", "work",
    },
    "bg": {
        "за", "от", "до", "на", "или", "като", "може", "има", "това", "тази",
        "този", "който", "която", "което", "един", "една", "много", "добре",
        "сме", "със", "опит", "работа", "екип",
    },
    "de": {
        "der", "die", "das", "und", "ist", "sie", "ich", "mit", "den", "auf",
        "für", "von", "dem", "des", "ein", "eine", "aber", "auch", "nach",
    },
}

MIN_BLOCK_CHARS = 100


@dataclass
class ExtractionOptions:
    max_content_length: int = 50_000
    remove_images: bool = True
    remove_links: bool = False
    aggressive: bool = False
    extract_metadata: bool = True


@dataclass
class ContentMetadata:
    original_length: int
    cleaned_length: int
    compression_ratio: float
    extracted_at: datetime
    source_url: str
    detected_language: str = "unknown"
    has_structured_data: bool = False
    content_sections: list[str] = field(default_factory=list)


@dataclass
class ContentExtractionResult:
    title: str | None
    content: str
    cleaned_content: str
    metadata: ContentMetadata


@dataclass
class ContentQuality:
    score: int
    issues: list[str]
    is_valid: bool


def _collapse(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def truncate_at_word(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    truncated = text[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.8:
        truncated = truncated[:last_space]
    return f"{truncated}..."


def strip_tags_fallback(html: str) -> str:
    text = re.sub(r"<script[^>]*>[\s\S]*?</script>", "", html or "", flags=re.IGNORECASE)
    text = re.sub(r"<style[^>]*>[\s\S]*?</style>", "", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    return _collapse(text)


def detect_language(text: str) -> str:
    words = re.findall(r"\w+", (text or "").lower()[:1000])
    best = "unknown"
    best_hits = 0
    for language, vocabulary in LANGUAGE_WORDS.items():
        hits = sum(1 for word in words if word in vocabulary)
        if hits > best_hits:
            best, best_hits = language, hits
    return best if best_hits > 5 else "unknown"


class ContentExtractor:
    """Isolates the substantive text of a job page from navigation and page chrome."""

    def extract(
        self,
        html: str,
        source_url: str,
        options: ExtractionOptions | None = None,
    ) -> ContentExtractionResult:
        opts = options or ExtractionOptions()
        try:
            soup = BeautifulSoup(html, "lxml")
            title = self._title(soup)
            structure = self._sections(soup) if opts.extract_metadata else []
            structured = self._has_structured_data(soup) if opts.extract_metadata else False
            self._remove_unwanted(soup, opts)
            content = self._main_content(soup)
            cleaned = self._clean(content, opts)
        except Exception as exc:
            logger.error("content extraction failed for %s: %s", source_url, exc)
            fallback = strip_tags_fallback(html)
            return ContentExtractionResult(
                title=None,
                content=fallback,
                cleaned_content=fallback[: opts.max_content_length],
                metadata=ContentMetadata(
                    original_length=len(html or ""),
                    cleaned_length=len(fallback),
                    compression_ratio=len(fallback) / max(len(html or ""), 1),
                    extracted_at=utc_now(),
                    source_url=source_url,
                    content_sections=["fallback"],
                ),
            )

        metadata = ContentMetadata(
            original_length=len(html),
            cleaned_length=len(cleaned),
            compression_ratio=len(cleaned) / max(len(html), 1),
            extracted_at=utc_now(),
            source_url=source_url,
            detected_language=detect_language(cleaned) if opts.extract_metadata else "unknown",
            has_structured_data=structured,
            content_sections=structure,
        )
        logger.debug(
            "extracted %s chars from %s (ratio %.3f)",
            metadata.cleaned_length,
            source_url,
            metadata.compression_ratio,
        )
        return ContentExtractionResult(title=title, content=content, cleaned_content=cleaned, metadata=metadata)

    @staticmethod
    def _title(soup: BeautifulSoup) -> str | None:
        for selector in TITLE_SELECTORS:
            element = soup.select_one(selector)
            if element is None:
                continue
            text = _collapse(element.get_text(" ", strip=True))
            if 5 < len(text) < 200:
                return text
        return None

    @staticmethod
    def _remove_unwanted(soup: BeautifulSoup, opts: ExtractionOptions) -> None:
        selectors = list(ALWAYS_REMOVE)
        if opts.remove_images:
            selectors.append("img")
        if opts.aggressive:
            selectors.extend(AGGRESSIVE_REMOVE)
        for selector in selectors:
            for element in soup.select(selector):
                element.decompose()

    @staticmethod
    def _main_content(soup: BeautifulSoup) -> str:
        for selector in MAIN_CONTENT_SELECTORS:
            element = soup.select_one(selector)
            if element is not None:
                text = _collapse(element.get_text(" ", strip=True))
                if len(text) > MIN_BLOCK_CHARS:
                    return text

        largest = ""
        for element in soup.find_all(["div", "section", "article"]):
            text = _collapse(element.get_text(" ", strip=True))
            if len(text) > len(largest) and len(text) > MIN_BLOCK_CHARS:
                largest = text
        if largest:
            return largest

        body = soup.body or soup
        return _collapse(body.get_text(" ", strip=True))

    @staticmethod
    def _clean(content: str, opts: ExtractionOptions) -> str:
        cleaned = _collapse(content)
        for pattern in NOISE_PATTERNS:
            cleaned = pattern.sub(" ", cleaned)
        if opts.remove_links:
            cleaned = re.sub(r"https?://\S+", "", cleaned)
            cleaned = re.sub(r"\S+@\S+\.\S+", "", cleaned)
        cleaned = _collapse(cleaned)
        return truncate_at_word(cleaned, opts.max_content_length)

    @staticmethod
    def _sections(soup: BeautifulSoup) -> list[str]:
        sections = []
        if soup.find(["h1", "h2", "h3"]):
            sections.append("headings")
        if soup.find(["ul", "ol"]):
            sections.append("lists")
        if soup.find("table"):
            sections.append("tables")
        if len(soup.find_all("p")) > 5:
            sections.append("paragraphs")
        return sections

    @staticmethod
    def _has_structured_data(soup: BeautifulSoup) -> bool:
        return bool(
            soup.find("script", attrs={"type": "application/ld+json"})
            or soup.find(attrs={"itemscope": True})
            or soup.select_one('meta[property^="og:"]')
        )

    @staticmethod
    def validate_quality(result: ContentExtractionResult) -> ContentQuality:
        issues: list[str] = []
        score = 100
        text = result.cleaned_content

        if len(text) < 50:
            issues.append("Content too short")
            score -= 30
        if result.metadata.compression_ratio < 0.1:
            issues.append("Low content density (too much markup)")
            score -= 20
        if not result.title:
            issues.append("No title extracted")
            score -= 15
        if len(result.metadata.content_sections) < 2:
            issues.append("Limited content structure")
            score -= 10

        words = text.split()
        if words and len({w.lower() for w in words}) / len(words) < 0.3:
            issues.append("High content repetition")
            score -= 25

        score = max(0, score)
        return ContentQuality(score=score, issues=issues, is_valid=score >= 50)
