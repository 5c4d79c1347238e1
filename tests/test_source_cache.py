from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from talent_radar.config import DEFAULT_SOURCE_TTL_HOURS, TtlTable
from talent_radar.db import Repository
from talent_radar.models import CompanySource, CompanySourceData
from talent_radar.source_cache import CompanySourceCache

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
URL = "https://dev.bg/company/acme/"


class CompanySourceCacheTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.repo = Repository.open(":memory:")
        self.cache = CompanySourceCache(self.repo, TtlTable(DEFAULT_SOURCE_TTL_HOURS), clock=lambda: NOW)

    def tearDown(self) -> None:
        self.repo.close()

    def _store(self, age: timedelta, site: str = "dev.bg", url: str = URL, valid: bool = True) -> None:
        self.repo.upsert_company_source(
            CompanySource(
                company_id=1,
                source_site=site,
                source_url=url,
                last_scraped_at=NOW - age,
                is_valid=valid,
            )
        )

    async def test_missing_source_is_fetched(self) -> None:
        decision = await self.cache.should_refetch(1, "dev.bg", URL)
        self.assertTrue(decision.should_refetch)
        self.assertEqual(decision.reason, "No existing source found")
        self.assertIsNone(decision.existing_source)

    async def test_expired_dev_bg_source_is_refetched(self) -> None:
        self._store(timedelta(days=31))
        decision = await self.cache.should_refetch(1, "dev.bg", URL)
        self.assertTrue(decision.should_refetch)
        self.assertTrue(decision.reason.startswith("TTL expired"))
        self.assertEqual(decision.reason, "TTL expired (720h limit exceeded)")

    async def test_ttl_monotonicity(self) -> None:
        for age in (timedelta(0), timedelta(hours=1), timedelta(days=15), timedelta(days=30) - timedelta(minutes=1)):
            self._store(age)
            decision = await self.cache.should_refetch(1, "dev.bg", URL)
            self.assertFalse(decision.should_refetch, age)
            self.assertTrue(decision.reason.startswith("Within TTL window"))
        for age in (timedelta(days=30, minutes=1), timedelta(days=45), timedelta(days=400)):
            self._store(age)
            decision = await self.cache.should_refetch(1, "dev.bg", URL)
            self.assertTrue(decision.should_refetch, age)

    async def test_unknown_site_uses_default_ttl(self) -> None:
        self._store(timedelta(days=15), site="jobs.bg")
        decision = await self.cache.should_refetch(1, "jobs.bg", URL)
        self.assertTrue(decision.should_refetch)
        self.assertEqual(decision.reason, "TTL expired (336h limit exceeded)")

    async def test_force_url_change_and_invalid_bypass_ttl(self) -> None:
        self._store(timedelta(hours=1))
        forced = await self.cache.should_refetch(1, "dev.bg", URL, force=True)
        self.assertTrue(forced.should_refetch)
        self.assertEqual(forced.reason, "Force flag enabled - bypassing TTL")

        moved = await self.cache.should_refetch(1, "dev.bg", "https://dev.bg/company/acme-new/")
        self.assertTrue(moved.should_refetch)
        self.assertEqual(moved.reason, "Source URL has changed")

        await self.cache.mark_invalid(1, "dev.bg", "404")
        invalid = await self.cache.should_refetch(1, "dev.bg", URL)
        self.assertTrue(invalid.should_refetch)
        self.assertEqual(invalid.reason, "Source was marked as invalid")

    async def test_lookup_failure_defaults_to_refetch(self) -> None:
        with mock.patch.object(self.repo, "get_company_source", side_effect=RuntimeError("db down")):
            decision = await self.cache.should_refetch(1, "dev.bg", URL)
        self.assertTrue(decision.should_refetch)
        self.assertEqual(decision.reason, "Cache check failed: db down")

    async def test_save_records_hash_and_timestamp(self) -> None:
        saved = await self.cache.save(CompanySourceData(1, "dev.bg", URL, raw_content="<html>acme</html>"))
        self.assertEqual(saved.last_scraped_at, NOW)
        stored = self.repo.get_company_source(1, "dev.bg")
        self.assertEqual(stored.content_hash, saved.content_hash)
        self.assertEqual(stored.last_scraped_at, NOW)
        self.assertFalse(await self.cache.has_content_changed(1, "dev.bg", "<html>acme</html>"))
        self.assertTrue(await self.cache.has_content_changed(1, "dev.bg", "<html>other</html>"))

    async def test_cleanup_removes_old_and_invalid_rows(self) -> None:
        self._store(timedelta(days=100), site="dev.bg")
        self._store(timedelta(days=1), site="company_website", valid=False)
        self._store(timedelta(days=1), site="jobs.bg")
        removed = await self.cache.cleanup_older_than(90)
        self.assertEqual(removed, 2)
        remaining = await self.cache.sources_for_company(1)
        self.assertEqual([s.source_site for s in remaining], ["jobs.bg"])

    async def test_stats_include_ttl_table(self) -> None:
        self._store(timedelta(days=1))
        stats = await self.cache.stats()
        self.assertEqual(stats["total"], 1)
        self.assertEqual(stats["valid"], 1)
        self.assertEqual(stats["by_site"], {"dev.bg": 1})
        self.assertEqual(stats["ttl_hours"]["dev.bg"], 720.0)

    async def test_ttl_overrides_produce_new_table_version(self) -> None:
        original = self.cache.ttl
        self.cache.with_ttl_overrides({"dev.bg": 48})
        self.assertEqual(self.cache.ttl.hours_for("dev.bg"), 48.0)
        self.assertEqual(self.cache.ttl.version, original.version + 1)
        self.assertEqual(original.hours_for("dev.bg"), 720.0)


if __name__ == "__main__":
    unittest.main()
