from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Callable, Iterable, Mapping

from dateutil import parser as date_parser

from .models import NormalizedListing, RawListing, Salary
from .utils import clean_whitespace, utc_now

CURRENCY_MARKERS = (
    ("лева", "BGN"),
    ("лв", "BGN"),
    ("bgn", "BGN"),
    ("€", "EUR"),
    ("eur", "EUR"),
    ("$", "USD"),
    ("usd", "USD"),
    ("£", "GBP"),
    ("gbp", "GBP"),
)

EXPERIENCE_KEYWORDS = (
    ("senior", "senior"),
    ("lead", "senior"),
    ("principal", "senior"),
    ("architect", "senior"),
    ("expert", "senior"),
    ("head", "senior"),
    ("chief", "senior"),
    ("director", "senior"),
    ("staff", "senior"),
    ("junior", "junior"),
    ("graduate", "junior"),
    ("entry", "junior"),
    ("intern", "junior"),
    ("internship", "junior"),
    ("trainee", "junior"),
    ("beginner", "junior"),
    ("стажант", "junior"),
    ("mid", "mid"),
    ("middle", "mid"),
    ("intermediate", "mid"),
    ("regular", "mid"),
)

EXPERIENCE_YEAR_PATTERNS = (
    (re.compile(r"(?<![\d\-–])(?:7|8|9|10|1[1-9])\s*\+?\s*years?", re.IGNORECASE), "senior"),
    (re.compile(r"(?<![\d\-–])[3-6]\s*(?:[-–]\s*\d+\s*)?\+?\s*years?", re.IGNORECASE), "mid"),
    (re.compile(r"(?<![\d\-–])[0-2]\s*(?:[-–]\s*\d+\s*)?\+?\s*years?", re.IGNORECASE), "junior"),
)

WORK_MODEL_MARKERS = (
    ("hybrid", ("hybrid", "хибрид")),
    ("remote", ("remote", "telecommute", "work from home", "wfh", "дистанционно", "от вкъщи")),
    ("office", ("on-site", "onsite", "on site", "office", "офис")),
)

DEFAULT_TECH_PATTERNS = {
    "java": r"\bjava\b(?!\s*script)",
    "spring": r"\bspring(?:\s*boot)?\b",
    "hibernate": r"\bhibernate\b",
    "maven": r"\bmaven\b",
    "gradle": r"\bgradle\b",
    "mysql": r"\bmysql\b",
    "postgresql": r"\bpostgres(?:ql)?\b",
    "docker": r"\bdocker\b",
    "kubernetes": r"\bkubernetes\b|\bk8s\b",
    "aws": r"\baws\b",
    "azure": r"\bazure\b",
    "git": r"\bgit\b",
    "jenkins": r"\bjenkins\b",
    "junit": r"\bjunit\b",
    "rest": r"\brest(?:ful)?\b",
    "microservices": r"\bmicro-?services?\b",
    "react": r"\breact(?:\.?js)?\b",
    "angular": r"\bangular\b",
    "vue": r"\bvue(?:\.?js)?\b",
    "node": r"\bnode(?:\.?js)?\b",
    "typescript": r"\btypescript\b",
    "javascript": r"\bjavascript\b",
    "python": r"\bpython\b",
    "django": r"\bdjango\b",
    "flask": r"\bflask\b",
    "c#": r"(?<!\w)c#(?!\w)",
    ".net": r"(?<!\w)\.net\b",
    "go": r"\bgolang\b",
    "php": r"\bphp\b",
    "mongodb": r"\bmongo(?:db)?\b",
    "redis": r"\bredis\b",
    "elasticsearch": r"\belastic(?:search)?\b",
    "kafka": r"\bkafka\b",
    "rabbitmq": r"\brabbit(?:mq)?\b",
}


class TechPatternTable:
    """Technology name -> regex table. Immutable; extend() returns a new table."""

    def __init__(self, patterns: Mapping[str, str], version: int = 1) -> None:
        self._sources = MappingProxyType(dict(patterns))
        self._compiled = {name: re.compile(p, re.IGNORECASE) for name, p in patterns.items()}
        self.version = version

    @classmethod
    def default(cls) -> "TechPatternTable":
        return cls(DEFAULT_TECH_PATTERNS)

    def extend(self, patterns: Mapping[str, str]) -> "TechPatternTable":
        merged = dict(self._sources)
        merged.update({name.lower(): pattern for name, pattern in patterns.items()})
        return TechPatternTable(merged, version=self.version + 1)

    def names(self) -> list[str]:
        return sorted(self._sources)

    def detect(self, text: str, existing: Iterable[str] = ()) -> list[str]:
        found: list[str] = []
        seen: set[str] = set()
        for tech in existing:
            key = clean_whitespace(tech).lower()
            if key and key not in seen:
                seen.add(key)
                found.append(key)
        for name, pattern in self._compiled.items():
            if name not in seen and pattern.search(text or ""):
                seen.add(name)
                found.append(name)
        return found


def detect_currency(text: str) -> str | None:
    lowered = (text or "").lower()
    for marker, code in CURRENCY_MARKERS:
        if marker in lowered:
            return code
    return None


def parse_salary(text: str) -> Salary:
    """Parse "3 000 - 5 000 лв" style text into whole-unit bounds."""
    if not text or not text.strip():
        return Salary()
    amounts = []
    for chunk in re.findall(r"\d[\d\s.,]*\d|\d", text):
        digits = re.sub(r"[\s.,]", "", chunk)
        if digits:
            amounts.append(int(digits))
    if not amounts:
        return Salary()
    currency = detect_currency(text)
    if len(amounts) == 1:
        return Salary(amounts[0], amounts[0], currency)
    low, high = sorted(amounts[:2])
    return Salary(low, high, currency)


def classify_work_model(text: str) -> str:
    lowered = (text or "").lower()
    for model, markers in WORK_MODEL_MARKERS:
        if any(marker in lowered for marker in markers):
            return model
    return "unknown"


def classify_experience(title: str, text: str = "") -> str | None:
    lowered = (title or "").lower()
    for keyword, level in EXPERIENCE_KEYWORDS:
        if re.search(rf"(?<!\w){re.escape(keyword)}(?!\w)", lowered):
            return level
    for source in (lowered, (text or "").lower()):
        for pattern, level in EXPERIENCE_YEAR_PATTERNS:
            if pattern.search(source):
                return level
    return None


def parse_posted_date(text: str, now: datetime | None = None) -> datetime | None:
    value = clean_whitespace(text).lower()
    if not value:
        return None
    now = now or utc_now()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if value in {"today", "днес"}:
        return today
    if value in {"yesterday", "вчера"}:
        return today - timedelta(days=1)
    ago = re.search(r"(\d+)\s*(?:days?|дни|ден)\s*(?:ago)?", value)
    if ago and ("ago" in value or "преди" in value):
        return today - timedelta(days=int(ago.group(1)))
    try:
        parsed = date_parser.parse(text, dayfirst=True, fuzzy=True)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    if parsed.year < 1990 or parsed > now + timedelta(days=1):
        return None
    return parsed


def normalize_listing(
    raw: RawListing,
    tech_patterns: TechPatternTable | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> NormalizedListing:
    table = tech_patterns or TechPatternTable.default()
    full_text = clean_whitespace(raw.full_text)
    return NormalizedListing(
        title=clean_whitespace(raw.title),
        company_name=clean_whitespace(raw.company_name),
        detail_url=raw.detail_url,
        source_site=raw.source_site,
        native_id=raw.native_id,
        location=clean_whitespace(raw.location_text),
        work_model=classify_work_model(f"{raw.work_model_text} {raw.location_text}"),
        salary=parse_salary(raw.salary_text),
        experience_level=classify_experience(raw.title, full_text),
        posted_at=parse_posted_date(raw.posted_date_text, now=clock()),
        technologies=table.detect(f"{raw.title} {full_text}", existing=raw.technology_hints),
        description=full_text,
        company_website=raw.company_website,
    )
