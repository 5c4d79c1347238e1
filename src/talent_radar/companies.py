from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from .config import CompanyWeights, MatchThresholds
from .db import Repository
from .errors import RecordNotFoundError
from .locks import KeyedLocks
from .models import Company, CompanyData, CompanyMatch
from .similarity import string_similarity
from .utils import extract_domain, utc_now

logger = logging.getLogger(__name__)

COMPANY_SUFFIXES = (
    "ltd", "limited", "llc", "inc", "incorporated", "corp", "corporation",
    "gmbh", "ag", "sa", "srl", "eood", "ood", "ad", "ead",
    "bulgaria", "bg", "europe", "international", "global", "worldwide",
)

IGNORE_WORDS = (
    "the", "company", "group", "solutions", "services", "technologies",
    "software", "systems", "consulting", "labs", "studio", "team",
)

DEFAULT_JOB_BOARD_NAMES = (
    "DEV.BG", "Indeed", "LinkedIn", "Glassdoor", "Jobs.bg", "AngelList",
    "Stack Overflow", "JobBoardFinder", "CareerBuilder", "Monster",
    "ZipRecruiter", "SimplyHired", "Dice", "IT Jobs", "JobServe",
)

DEFAULT_JOB_BOARD_DOMAINS = (
    "dev.bg", "indeed.com", "linkedin.com", "glassdoor.com", "jobs.bg",
    "angel.co", "stackoverflow.com", "jobboardfinder.com", "careerbuilder.com",
    "monster.com", "ziprecruiter.com", "simplyhired.com", "dice.com", "itjobs.bg",
)

CANDIDATE_LIMIT = 50


class JobBoardBlacklist:
    """Names and domains of job boards that must never become a company identity."""

    def __init__(self, names: Iterable[str], domains: Iterable[str], version: int = 1) -> None:
        self.names = frozenset(n.strip().lower() for n in names if n.strip())
        self.domains = frozenset(d.strip().lower() for d in domains if d.strip())
        self.version = version

    @classmethod
    def default(cls) -> "JobBoardBlacklist":
        return cls(DEFAULT_JOB_BOARD_NAMES, DEFAULT_JOB_BOARD_DOMAINS)

    def with_entries(self, names: Iterable[str] = (), domains: Iterable[str] = ()) -> "JobBoardBlacklist":
        return JobBoardBlacklist(
            [*self.names, *names],
            [*self.domains, *domains],
            version=self.version + 1,
        )

    def is_job_board_name(self, name: str) -> bool:
        value = (name or "").strip().lower()
        if not value:
            return False
        for board in self.names:
            if value == board or re.search(rf"(?<!\w){re.escape(board)}(?!\w)", value):
                return True
        return False

    def is_job_board_domain(self, url_or_domain: str) -> bool:
        domain = extract_domain(url_or_domain)
        if not domain:
            return False
        return any(domain == d or domain.endswith(f".{d}") for d in self.domains)


def normalize_company_name(name: str) -> str:
    if not name:
        return ""
    value = re.sub(r"[^\w\s]", " ", name.lower().strip())
    words = [
        w for w in value.split()
        if w not in COMPANY_SUFFIXES and w not in IGNORE_WORDS
    ]
    return " ".join(words)


@dataclass
class CompanyResolution:
    company: Company | None
    created: bool
    match: CompanyMatch | None = None
    rejected_reason: str | None = None


class CompanyMatcher:
    def __init__(
        self,
        repo: Repository,
        thresholds: MatchThresholds | None = None,
        weights: CompanyWeights | None = None,
        blacklist: JobBoardBlacklist | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repo = repo
        self.thresholds = thresholds or MatchThresholds()
        self.weights = weights or CompanyWeights()
        self.blacklist = blacklist or JobBoardBlacklist.default()
        self.clock = clock
        self._locks = KeyedLocks()

    def name_similarity(self, left: str, right: str) -> float:
        if not left or not right:
            return 0.0
        n1 = normalize_company_name(left)
        n2 = normalize_company_name(right)
        if n1 == n2:
            return 1.0
        if n1 and n2 and (n1 in n2 or n2 in n1):
            return self.weights.containment_score
        return string_similarity(n1, n2)

    async def find_exact_match(self, data: CompanyData) -> Company | None:
        try:
            domain = extract_domain(data.website)
            if domain:
                found = self.repo.find_company_by_domain(domain)
                if found is not None:
                    logger.debug("company exact match by domain %s: %s", domain, found.id)
                    return found
            if data.name.strip():
                found = self.repo.find_company_by_name(data.name)
                if found is not None:
                    return found
                found = self.repo.find_company_by_alias(data.name)
                if found is not None:
                    return found
        except Exception as exc:
            logger.warning("exact company lookup failed for %r: %s", data.name, exc)
        return None

    def score(self, data: CompanyData, candidate: Company) -> float:
        w = self.weights
        domain = extract_domain(data.website)
        if domain and domain in (extract_domain(candidate.website), extract_domain(candidate.original_website)):
            return w.domain_match_score

        name_score = self.name_similarity(data.name, candidate.name)
        alias_score = max((self.name_similarity(data.name, alias) for alias in candidate.aliases), default=0.0)
        location_score = string_similarity(data.location, candidate.location)
        industry_score = string_similarity(data.industry, candidate.industry)
        weighted = (
            name_score * w.name
            + alias_score * w.alias
            + location_score * w.location
            + industry_score * w.industry
        )
        # Name heuristics never outrank a shared website domain.
        return min(weighted, w.fuzzy_ceiling)

    def match_reasons(self, data: CompanyData, candidate: Company) -> list[str]:
        reasons: list[str] = []
        name_score = self.name_similarity(data.name, candidate.name)
        if name_score > 0.9:
            reasons.append("Very similar company names")
        elif name_score > 0.7:
            reasons.append("Similar company names")

        domain = extract_domain(data.website)
        if domain and domain in (extract_domain(candidate.website), extract_domain(candidate.original_website)):
            reasons.append("Same website domain")

        if data.location and candidate.location and string_similarity(data.location, candidate.location) > 0.8:
            reasons.append("Same location")
        if data.industry and candidate.industry and string_similarity(data.industry, candidate.industry) > 0.8:
            reasons.append("Same industry")

        for alias in candidate.aliases:
            if self.name_similarity(data.name, alias) > 0.9:
                reasons.append(f"Matches known alias: {alias}")
                break
        return reasons

    def _candidates(self, data: CompanyData) -> list[Company]:
        words = normalize_company_name(data.name).split()
        lookup = words[:1] + [w for w in words[1:] if len(w) > 2]
        return self.repo.find_company_candidates(lookup, extract_domain(data.website), CANDIDATE_LIMIT)

    async def find_matches(self, data: CompanyData) -> list[CompanyMatch]:
        try:
            candidates = self._candidates(data)
        except Exception as exc:
            logger.warning("company candidate lookup failed for %r: %s", data.name, exc)
            return []

        matches: list[CompanyMatch] = []
        for candidate in candidates:
            value = self.score(data, candidate)
            if value >= self.thresholds.min_match:
                matches.append(
                    CompanyMatch(
                        company_id=candidate.id,
                        score=value,
                        reasons=self.match_reasons(data, candidate),
                        should_merge=value >= self.thresholds.merge,
                    )
                )
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches

    async def merge(self, company_id: int, data: CompanyData) -> Company:
        existing = self.repo.get_company(company_id)
        if existing is None:
            raise RecordNotFoundError("company", str(company_id))

        changed = existing.add_alias(data.name)

        website = (data.website or "").strip()
        if website and not existing.website:
            existing.website = website
            changed = True
        elif website and website.rstrip("/") != existing.website.rstrip("/"):
            existing.original_website = existing.website
            existing.website = website
            changed = True

        for attr in ("location", "industry", "description"):
            incoming = getattr(data, attr)
            if incoming and not getattr(existing, attr):
                setattr(existing, attr, incoming)
                changed = True

        if changed:
            self.repo.update_company(existing, now=self.clock())
            logger.info("updated company %s with data from %r", company_id, data.name)
        return existing

    async def create(self, data: CompanyData) -> Company:
        company = Company(
            id=None,
            name=data.name.strip(),
            website=data.website.strip(),
            location=data.location,
            industry=data.industry,
            description=data.description,
            aliases=[data.name.strip()],
        )
        self.repo.insert_company(company, now=self.clock())
        logger.info("created company %s (%r)", company.id, company.name)
        return company

    async def find_or_create(self, data: CompanyData) -> CompanyResolution:
        if not data.name.strip():
            return CompanyResolution(None, False, rejected_reason="Company name is empty")
        if self.blacklist.is_job_board_name(data.name):
            logger.warning("rejected job board name as company: %s", data.name)
            return CompanyResolution(None, False, rejected_reason=f"Job board name: {data.name}")
        if data.website and self.blacklist.is_job_board_domain(data.website):
            logger.warning("dropping job board url as company website: %s", data.website)
            data = CompanyData(data.name, "", data.location, data.industry, data.description)

        keys = [f"name:{normalize_company_name(data.name) or data.name.strip().lower()}"]
        domain = extract_domain(data.website)
        if domain:
            keys.append(f"domain:{domain}")
        async with self._locks.hold_all(keys):
            exact = await self.find_exact_match(data)
            if exact is not None:
                merged = await self.merge(exact.id, data)
                return CompanyResolution(
                    merged,
                    False,
                    CompanyMatch(exact.id, 1.0, ["Exact match"], True, exact=True),
                )

            matches = await self.find_matches(data)
            if matches and matches[0].should_merge:
                best = matches[0]
                merged = await self.merge(best.company_id, data)
                return CompanyResolution(merged, False, best)

            return CompanyResolution(await self.create(data), True)
