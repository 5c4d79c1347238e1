from __future__ import annotations

import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from talent_radar.db import Repository
from talent_radar.duplicates import DuplicateDetector, confident_merge_target
from talent_radar.errors import IdentityConflictError, RecordNotFoundError
from talent_radar.models import CanonicalListing, DuplicateMatch, NormalizedListing, Salary, SourceSighting

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _listing(**overrides) -> NormalizedListing:
    values = dict(
        title="Java Developer",
        company_name="Acme",
        detail_url="https://dev.bg/job/100/",
        source_site="dev.bg",
        native_id="100",
        location="Sofia",
        technologies=["java", "spring"],
        posted_at=NOW,
        description="Build services.",
    )
    values.update(overrides)
    return NormalizedListing(**values)


class DuplicateDetectorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.repo = Repository.open(":memory:")
        self.detector = DuplicateDetector(self.repo, clock=lambda: NOW)

    def tearDown(self) -> None:
        self.repo.close()

    async def test_identical_url_is_exact_match(self) -> None:
        created = await self.detector.create(_listing())
        again = _listing(native_id="")
        self.assertEqual(await self.detector.find_exact_match(again), created.id)

        outcome = await self.detector.resolve(again)
        self.assertEqual(outcome.action, "merged-exact")
        self.assertEqual(outcome.listing_id, created.id)
        self.assertIsNone(outcome.match)
        self.assertEqual(self.repo.count_listings(), 1)

    async def test_external_id_is_exact_match(self) -> None:
        created = await self.detector.create(_listing())
        moved = _listing(detail_url="https://dev.bg/job/100/?ref=list")
        self.assertEqual(await self.detector.find_exact_match(moved), created.id)

    async def test_disjoint_technologies_still_match(self) -> None:
        await self.detector.create(_listing())
        other = _listing(
            detail_url="https://www.jobs.bg/job/9",
            source_site="jobs.bg",
            native_id="9",
            technologies=["python", "django"],
        )
        matches = await self.detector.find_duplicates(other)
        self.assertEqual(len(matches), 1)
        self.assertAlmostEqual(matches[0].score, 0.85)
        self.assertTrue(matches[0].should_merge)

        await self.detector.create(_listing(
            title="Go Engineer",
            company_name="Globex",
            detail_url="https://dev.bg/job/200/",
            native_id="200",
            location="",
            technologies=["go"],
        ))
        no_location = _listing(
            title="Go Engineer",
            company_name="Globex",
            detail_url="https://www.jobs.bg/job/10",
            source_site="jobs.bg",
            native_id="10",
            location="",
            technologies=["rust"],
        )
        matches = await self.detector.find_duplicates(no_location)
        self.assertEqual(len(matches), 1)
        self.assertAlmostEqual(matches[0].score, 0.75)
        self.assertFalse(matches[0].should_merge)

    def test_score_monotonic_in_technology_overlap(self) -> None:
        query = _listing(technologies=["java", "spring", "docker"])
        base = dict(id=1, title="Java Developer", company_name="Acme", location="Sofia", posted_at=NOW)
        more = CanonicalListing(**base, technologies=["java", "spring", "docker"])
        fewer = CanonicalListing(**base, technologies=["java", "python", "go"])
        none = CanonicalListing(**base, technologies=[])
        high = self.detector.score(query, more).overall
        mid = self.detector.score(query, fewer).overall
        low = self.detector.score(query, none).overall
        self.assertGreaterEqual(high, mid)
        self.assertGreaterEqual(mid, low)

    def test_match_reasons(self) -> None:
        query = _listing(technologies=["java", "spring", "docker", "aws"])
        candidate = CanonicalListing(
            id=1,
            title="Java Developer",
            company_name="Acme",
            location="Sofia",
            posted_at=NOW - timedelta(days=3),
            technologies=["Java", "Spring", "Docker"],
        )
        reasons = self.detector.match_reasons(query, candidate, self.detector.score(query, candidate))
        self.assertIn("Very similar job titles", reasons)
        self.assertIn("Same company", reasons)
        self.assertIn("Same location", reasons)
        self.assertIn("High technology overlap (java, spring, docker)", reasons)
        self.assertIn("Posted within same week", reasons)

    async def test_merge_is_additive(self) -> None:
        created = await self.detector.create(_listing(description="", salary=Salary()))
        before = self.repo.get_listing(created.id).scraped_sites["dev.bg"]

        merged = await self.detector.merge(
            created.id,
            _listing(
                detail_url="https://www.jobs.bg/job/9",
                source_site="jobs.bg",
                native_id="9",
                technologies=["Java", "Docker"],
                description="From jobs.bg",
                salary=Salary(3000, 5000, "BGN"),
            ),
        )

        stored = self.repo.get_listing(created.id)
        self.assertEqual(set(stored.scraped_sites), {"dev.bg", "jobs.bg"})
        self.assertEqual(stored.scraped_sites["dev.bg"], before)
        self.assertEqual(stored.external_ids, {"dev.bg": "100", "jobs.bg": "9"})
        self.assertEqual(stored.technologies, ["java", "spring", "Docker"])
        self.assertEqual(stored.description, "From jobs.bg")
        self.assertEqual(stored.salary, Salary(3000, 5000, "BGN"))
        self.assertEqual(merged.id, created.id)

    async def test_merge_keeps_existing_description_and_salary(self) -> None:
        created = await self.detector.create(_listing(salary=Salary(4000, 6000, "BGN")))
        await self.detector.merge(
            created.id,
            _listing(source_site="jobs.bg", native_id="9", description="Other", salary=Salary(1, 2, "EUR")),
        )
        stored = self.repo.get_listing(created.id)
        self.assertEqual(stored.description, "Build services.")
        self.assertEqual(stored.salary, Salary(4000, 6000, "BGN"))

    async def test_merge_of_missing_listing_raises(self) -> None:
        with self.assertRaises(RecordNotFoundError):
            await self.detector.merge(999, _listing())

    async def test_candidate_lookup_fault_degrades_to_no_match(self) -> None:
        await self.detector.create(_listing())
        with mock.patch.object(self.repo, "find_listings_by_company_name", side_effect=RuntimeError("boom")):
            self.assertEqual(await self.detector.find_duplicates(_listing(detail_url="x", native_id="")), [])

    async def test_concurrent_resolution_creates_once(self) -> None:
        outcomes = await asyncio.gather(
            self.detector.resolve(_listing()),
            self.detector.resolve(_listing()),
        )
        self.assertEqual(sorted(o.action for o in outcomes), ["created", "merged-exact"])
        self.assertEqual(self.repo.count_listings(), 1)
        self.assertEqual(len(self.detector._locks), 0)

    async def test_tied_matches_create_a_new_vacancy(self) -> None:
        first = await self.detector.create(_listing())
        second = await self.detector.create(_listing(detail_url="https://dev.bg/job/101/", native_id="101"))
        outcome = await self.detector.resolve(
            _listing(detail_url="https://www.jobs.bg/job/9", source_site="jobs.bg", native_id="9")
        )
        self.assertEqual(outcome.action, "created")
        self.assertNotIn(outcome.listing_id, (first.id, second.id))
        self.assertEqual(self.repo.count_listings(), 3)

    def test_confident_merge_target(self) -> None:
        listing = _listing()
        best = DuplicateMatch(1, 0.9, [], True)
        self.assertIs(confident_merge_target(listing, [best, DuplicateMatch(2, 0.85, [], True)]), best)
        self.assertIsNone(confident_merge_target(listing, [DuplicateMatch(3, 0.7, [], False)]))
        with self.assertRaises(IdentityConflictError):
            confident_merge_target(listing, [best, DuplicateMatch(2, 0.9, [], True)])

    def test_record_sighting_only_touches_one_site(self) -> None:
        listing = CanonicalListing(id=1, title="t", company_name="c")
        listing.record_sighting("dev.bg", "https://dev.bg/1", "1", NOW)
        listing.record_sighting("jobs.bg", "https://jobs.bg/2", "2", NOW)
        listing.record_sighting("jobs.bg", "https://jobs.bg/2b", "2", NOW + timedelta(days=1))
        self.assertEqual(listing.scraped_sites["dev.bg"], SourceSighting(NOW, "https://dev.bg/1", "1"))
        self.assertEqual(listing.scraped_sites["jobs.bg"].url, "https://jobs.bg/2b")


if __name__ == "__main__":
    unittest.main()
