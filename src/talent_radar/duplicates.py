from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from .config import DuplicateWeights, MatchThresholds
from .db import Repository
from .errors import IdentityConflictError, RecordNotFoundError
from .locks import KeyedLocks
from .models import CanonicalListing, DuplicateMatch, NormalizedListing, Salary
from .similarity import common_items, date_proximity, jaccard, string_similarity
from .utils import normalize_text, utc_now

logger = logging.getLogger(__name__)

COMPANY_CANDIDATE_LIMIT = 50
TITLE_CANDIDATE_LIMIT = 30
TIE_TOLERANCE = 1e-6


@dataclass
class SimilarityScore:
    title: float
    company: float
    location: float
    technologies: float
    posted_date: float
    days_apart: float | None
    overall: float


@dataclass
class ResolveOutcome:
    listing_id: int
    action: str  # "created", "merged-exact" or "merged-fuzzy"
    match: DuplicateMatch | None = None


def _first_significant_word(title: str) -> str:
    for word in title.lower().split():
        if len(word) > 2:
            return word
    return ""


def confident_merge_target(listing: NormalizedListing, matches: list[DuplicateMatch]) -> DuplicateMatch | None:
    """Best merge-eligible match, or IdentityConflictError when several vacancies tie for it."""
    eligible = [m for m in matches if m.should_merge]
    if not eligible:
        return None
    best = eligible[0]
    tied = [m.listing_id for m in eligible if best.score - m.score <= TIE_TOLERANCE]
    if len(tied) > 1:
        raise IdentityConflictError(
            f"{listing.title!r} at {listing.company_name!r} matches vacancies {tied} equally ({best.score:.2f})"
        )
    return best


def _days_apart(left: datetime | None, right: datetime | None) -> float | None:
    if left is None or right is None:
        return None
    return abs((left - right).total_seconds()) / 86400


class DuplicateDetector:
    def __init__(
        self,
        repo: Repository,
        thresholds: MatchThresholds | None = None,
        weights: DuplicateWeights | None = None,
        lookback_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repo = repo
        self.thresholds = thresholds or MatchThresholds()
        self.weights = weights or DuplicateWeights()
        self.lookback_days = lookback_days
        self.clock = clock
        self._locks = KeyedLocks()

    async def find_exact_match(self, listing: NormalizedListing) -> int | None:
        try:
            if listing.detail_url:
                found = self.repo.find_listing_by_url(listing.detail_url)
                if found is not None:
                    logger.debug("exact match by url: %s", found.id)
                    return found.id
            if listing.native_id and listing.source_site:
                found = self.repo.find_listing_by_external_id(listing.source_site, listing.native_id)
                if found is not None:
                    logger.debug("exact match by external id: %s", found.id)
                    return found.id
        except Exception as exc:
            logger.warning("exact duplicate lookup failed for %s: %s", listing.detail_url, exc)
        return None

    async def find_duplicates(self, listing: NormalizedListing) -> list[DuplicateMatch]:
        try:
            candidates = self._candidates(listing)
        except Exception as exc:
            logger.warning("duplicate candidate lookup failed for %r: %s", listing.title, exc)
            return []

        matches: list[DuplicateMatch] = []
        for candidate in candidates:
            score = self.score(listing, candidate)
            if score.overall >= self.thresholds.min_match:
                matches.append(
                    DuplicateMatch(
                        listing_id=candidate.id,
                        score=score.overall,
                        reasons=self.match_reasons(listing, candidate, score),
                        should_merge=score.overall >= self.thresholds.merge,
                    )
                )
        matches.sort(key=lambda m: m.score, reverse=True)
        logger.debug("found %s potential duplicate(s) for %r", len(matches), listing.title)
        return matches

    def _candidates(self, listing: NormalizedListing) -> list[CanonicalListing]:
        since = self.clock() - timedelta(days=self.lookback_days)
        found: list[CanonicalListing] = []
        if listing.company_name.strip():
            found.extend(
                self.repo.find_listings_by_company_name(
                    listing.company_name.strip(), since, COMPANY_CANDIDATE_LIMIT
                )
            )
        word = _first_significant_word(listing.title)
        if word:
            found.extend(self.repo.find_listings_by_title_word(word, since, TITLE_CANDIDATE_LIMIT))

        unique: dict[int, CanonicalListing] = {}
        for candidate in found:
            unique.setdefault(candidate.id, candidate)
        return list(unique.values())

    def score(self, listing: NormalizedListing, candidate: CanonicalListing) -> SimilarityScore:
        w = self.weights
        title = string_similarity(listing.title, candidate.title)
        company = string_similarity(listing.company_name, candidate.company_name)
        location = string_similarity(listing.location, candidate.location)
        technologies = jaccard(listing.technologies, candidate.technologies)
        days = _days_apart(listing.posted_at, candidate.posted_at)
        posted = date_proximity(days)
        overall = (
            title * w.title
            + company * w.company
            + location * w.location
            + technologies * w.technologies
            + posted * w.posted_date
        )
        return SimilarityScore(
            title=title,
            company=company,
            location=location,
            technologies=technologies,
            posted_date=posted,
            days_apart=days,
            overall=min(overall, 1.0),
        )

    def match_reasons(
        self,
        listing: NormalizedListing,
        candidate: CanonicalListing,
        score: SimilarityScore,
    ) -> list[str]:
        reasons: list[str] = []
        if score.title > 0.9:
            reasons.append("Very similar job titles")
        elif score.title > 0.7:
            reasons.append("Similar job titles")

        if score.company > 0.9:
            reasons.append("Same company")
        elif score.company > 0.7:
            reasons.append("Similar company names")

        if score.location > 0.8:
            reasons.append("Same location")

        common = common_items(listing.technologies, candidate.technologies)
        if len(common) >= 3:
            reasons.append(f"High technology overlap ({', '.join(common[:3])})")
        elif common:
            reasons.append(f"Common technologies ({', '.join(common)})")

        if score.days_apart is not None:
            if score.days_apart <= 1:
                reasons.append("Posted on same day")
            elif score.days_apart <= 7:
                reasons.append("Posted within same week")
        return reasons

    async def merge(self, listing_id: int, listing: NormalizedListing) -> CanonicalListing:
        logger.info("merging %s listing into vacancy %s", listing.source_site, listing_id)
        existing = self.repo.get_listing(listing_id)
        if existing is None:
            raise RecordNotFoundError("vacancy", str(listing_id))

        existing.record_sighting(listing.source_site, listing.detail_url, listing.native_id, self.clock())

        if listing.technologies:
            seen = {t.lower() for t in existing.technologies}
            for tech in listing.technologies:
                if tech.lower() not in seen:
                    existing.technologies.append(tech)
                    seen.add(tech.lower())

        if listing.description and not existing.description:
            existing.description = listing.description

        if existing.salary.is_empty and not listing.salary.is_empty:
            existing.salary = Salary(listing.salary.min, listing.salary.max, listing.salary.currency)

        self.repo.update_listing(existing, now=self.clock())
        return existing

    async def create(self, listing: NormalizedListing, company_id: int | None = None) -> CanonicalListing:
        canonical = CanonicalListing(
            id=None,
            title=listing.title,
            company_name=listing.company_name,
            company_id=company_id,
            location=listing.location,
            work_model=listing.work_model,
            technologies=list(listing.technologies),
            salary=listing.salary,
            experience_level=listing.experience_level,
            posted_at=listing.posted_at,
            description=listing.description,
        )
        canonical.record_sighting(listing.source_site, listing.detail_url, listing.native_id, self.clock())
        self.repo.insert_listing(canonical, now=self.clock())
        logger.info("created vacancy %s for %r at %r", canonical.id, listing.title, listing.company_name)
        return canonical

    async def resolve(self, listing: NormalizedListing, company_id: int | None = None) -> ResolveOutcome:
        """Merge the listing into its canonical vacancy, or create one.

        Resolution for the same title and company is serialized so two
        concurrent scrapes cannot both miss and create twice.
        """
        key = f"{normalize_text(listing.company_name)}|{normalize_text(listing.title)}"
        async with self._locks.hold(key):
            exact_id = await self.find_exact_match(listing)
            if exact_id is not None:
                await self.merge(exact_id, listing)
                return ResolveOutcome(exact_id, "merged-exact")

            matches = await self.find_duplicates(listing)
            try:
                best = confident_merge_target(listing, matches)
            except IdentityConflictError as exc:
                logger.warning("%s, creating a new vacancy", exc)
                best = None
            if best is not None:
                await self.merge(best.listing_id, listing)
                return ResolveOutcome(best.listing_id, "merged-fuzzy", best)

            created = await self.create(listing, company_id=company_id)
            return ResolveOutcome(created.id, "created")
