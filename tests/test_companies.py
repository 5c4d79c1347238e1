from __future__ import annotations

import asyncio
import unittest
from datetime import datetime, timezone
from unittest import mock

from talent_radar.companies import CompanyMatcher, JobBoardBlacklist, normalize_company_name
from talent_radar.db import Repository
from talent_radar.errors import RecordNotFoundError
from talent_radar.models import Company, CompanyData

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class JobBoardBlacklistTests(unittest.TestCase):
    def test_names_match_whole_words(self) -> None:
        blacklist = JobBoardBlacklist.default()
        self.assertTrue(blacklist.is_job_board_name("DEV.BG"))
        self.assertTrue(blacklist.is_job_board_name("Jobs via LinkedIn"))
        self.assertFalse(blacklist.is_job_board_name("Paradice Games"))
        self.assertFalse(blacklist.is_job_board_name(""))

    def test_domains_match_subdomains(self) -> None:
        blacklist = JobBoardBlacklist.default()
        self.assertTrue(blacklist.is_job_board_domain("https://www.linkedin.com/company/acme"))
        self.assertTrue(blacklist.is_job_board_domain("bg.indeed.com"))
        self.assertFalse(blacklist.is_job_board_domain("https://acme-indeed.com"))

    def test_with_entries_returns_new_version(self) -> None:
        base = JobBoardBlacklist.default()
        extended = base.with_entries(names=["Karieri"], domains=["karieri.bg"])
        self.assertEqual(extended.version, base.version + 1)
        self.assertTrue(extended.is_job_board_name("Karieri"))
        self.assertFalse(base.is_job_board_name("Karieri"))


class NormalizeCompanyNameTests(unittest.TestCase):
    def test_strips_suffixes_and_noise_words(self) -> None:
        self.assertEqual(normalize_company_name("Acme Software Bulgaria EOOD"), "acme")
        self.assertEqual(normalize_company_name("The Globex Group, Inc."), "globex")
        self.assertEqual(normalize_company_name(""), "")


class CompanyMatcherTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.repo = Repository.open(":memory:")
        self.matcher = CompanyMatcher(self.repo, clock=lambda: NOW)

    def tearDown(self) -> None:
        self.repo.close()

    async def test_domain_match_reuses_existing_company(self) -> None:
        stored = await self.matcher.create(
            CompanyData(name="UKG (Ultimate Kronos Group)", website="https://www.ukg.com")
        )
        resolution = await self.matcher.find_or_create(CompanyData(name="UKG", website="https://ukg.com"))

        self.assertFalse(resolution.created)
        self.assertEqual(resolution.company.id, stored.id)
        self.assertTrue(resolution.match.exact)
        self.assertEqual(self.repo.count_companies(), 1)
        company = self.repo.get_company(stored.id)
        self.assertTrue(company.has_alias("UKG"))
        self.assertTrue(company.has_alias("UKG (Ultimate Kronos Group)"))

    def test_domain_match_dominates_name_match(self) -> None:
        query = CompanyData(name="Acme", website="https://acme.com", location="Sofia")
        same_domain = Company(id=1, name="Totally Different Ltd", website="https://www.acme.com")
        same_name = Company(id=2, name="Acme", aliases=["Acme"], location="Sofia", industry="")
        self.assertGreaterEqual(self.matcher.score(query, same_domain), self.matcher.score(query, same_name))
        self.assertEqual(self.matcher.score(query, same_domain), 0.95)

    def test_original_website_domain_also_matches(self) -> None:
        query = CompanyData(name="Initech", website="http://old-initech.com")
        candidate = Company(id=1, name="Initech", website="https://initech.io", original_website="https://old-initech.com")
        self.assertEqual(self.matcher.score(query, candidate), 0.95)
        self.assertIn("Same website domain", self.matcher.match_reasons(query, candidate))

    def test_name_similarity(self) -> None:
        self.assertEqual(self.matcher.name_similarity("Acme Ltd", "ACME"), 1.0)
        self.assertEqual(self.matcher.name_similarity("Acme", "Acme Robotics"), 0.85)
        self.assertEqual(self.matcher.name_similarity("", "Acme"), 0.0)

    async def test_alias_is_exact_match(self) -> None:
        stored = await self.matcher.create(CompanyData(name="Globex Corporation"))
        await self.matcher.merge(stored.id, CompanyData(name="Globex BG"))
        found = await self.matcher.find_exact_match(CompanyData(name="globex bg"))
        self.assertEqual(found.id, stored.id)

    async def test_fuzzy_match_merges_above_threshold(self) -> None:
        stored = await self.matcher.create(CompanyData(name="Initech Solutions", location="Sofia"))
        matches = await self.matcher.find_matches(CompanyData(name="Initech", location="Sofia"))
        self.assertEqual(matches[0].company_id, stored.id)
        self.assertTrue(matches[0].should_merge)

        resolution = await self.matcher.find_or_create(CompanyData(name="Initech EOOD", location="Sofia"))
        self.assertFalse(resolution.created)
        self.assertEqual(resolution.company.id, stored.id)

    async def test_unrelated_company_is_created(self) -> None:
        await self.matcher.create(CompanyData(name="Initech"))
        resolution = await self.matcher.find_or_create(CompanyData(name="Umbrella"))
        self.assertTrue(resolution.created)
        self.assertEqual(resolution.company.aliases, ["Umbrella"])
        self.assertEqual(self.repo.count_companies(), 2)

    async def test_job_board_names_are_rejected(self) -> None:
        resolution = await self.matcher.find_or_create(CompanyData(name="DEV.BG"))
        self.assertIsNone(resolution.company)
        self.assertIn("Job board", resolution.rejected_reason)
        self.assertEqual(self.repo.count_companies(), 0)

    async def test_job_board_website_is_dropped(self) -> None:
        resolution = await self.matcher.find_or_create(
            CompanyData(name="Acme", website="https://www.linkedin.com/company/acme")
        )
        self.assertTrue(resolution.created)
        self.assertEqual(resolution.company.website, "")

    async def test_merge_moves_previous_website(self) -> None:
        stored = await self.matcher.create(CompanyData(name="Acme", website="https://acme.bg"))
        merged = await self.matcher.merge(
            stored.id, CompanyData(name="Acme Ltd", website="https://acme.com", industry="Software")
        )
        self.assertEqual(merged.website, "https://acme.com")
        self.assertEqual(merged.original_website, "https://acme.bg")
        self.assertEqual(merged.industry, "Software")
        self.assertEqual(self.repo.find_company_by_domain("acme.bg").id, stored.id)

    async def test_merge_of_missing_company_raises(self) -> None:
        with self.assertRaises(RecordNotFoundError):
            await self.matcher.merge(42, CompanyData(name="Nobody"))

    async def test_concurrent_resolution_with_and_without_website_creates_one_company(self) -> None:
        find_matches = self.matcher.find_matches

        async def slow_find_matches(data):
            matches = await find_matches(data)
            await asyncio.sleep(0.01)
            return matches

        with mock.patch.object(self.matcher, "find_matches", side_effect=slow_find_matches):
            first, second = await asyncio.gather(
                self.matcher.find_or_create(CompanyData(name="Acme", website="https://acme.com")),
                self.matcher.find_or_create(CompanyData(name="Acme")),
            )

        self.assertEqual(self.repo.count_companies(), 1)
        self.assertEqual(first.company.id, second.company.id)
        self.assertEqual([first.created, second.created], [True, False])
        self.assertEqual(len(self.matcher._locks), 0)

    async def test_lookup_faults_degrade_to_creation(self) -> None:
        with mock.patch.object(self.repo, "find_company_by_name", side_effect=RuntimeError("boom")), \
                mock.patch.object(self.repo, "find_company_candidates", side_effect=RuntimeError("boom")):
            resolution = await self.matcher.find_or_create(CompanyData(name="Hooli"))
        self.assertTrue(resolution.created)


if __name__ == "__main__":
    unittest.main()
