from __future__ import annotations

import json
import unittest

import httpx

from talent_radar.adapters.base import ScrapeOptions
from talent_radar.adapters.common import parse_jobposting_jsonld, parse_organization_page
from talent_radar.adapters.jsonld import JsonLdSiteAdapter
from talent_radar.adapters.registry import AdapterRegistry
from talent_radar.errors import TransientIOError
from talent_radar.http_client import AsyncHttpHelper


def _jsonld(payload: dict) -> str:
    return f'<script type="application/ld+json">{json.dumps(payload)}</script>'


JOB_POSTING = {
    "@type": "JobPosting",
    "title": "Senior Java Developer",
    "url": "https://dev.bg/job/100/",
    "identifier": {"value": "100"},
    "hiringOrganization": {"@type": "Organization", "name": "Acme", "sameAs": "https://acme.com"},
    "jobLocation": {"address": {"addressLocality": "Sofia", "addressCountry": "BG"}},
    "jobLocationType": "TELECOMMUTE",
    "baseSalary": {"currency": "BGN", "value": {"minValue": 4000, "maxValue": 6000}},
    "datePosted": "2025-02-27",
    "skills": "Java, Spring",
    "description": "<p>Java and <b>Spring</b> services</p>",
}

LISTING_HTML = (
    "<html><head>"
    + _jsonld({"@context": "https://schema.org", "@graph": [JOB_POSTING]})
    + '</head><body><a rel="next" href="?page=2">next</a></body></html>'
)

ITEMLIST_HTML = (
    "<html><head>"
    + _jsonld(
        {
            "@type": "ItemList",
            "itemListElement": [
                {"@type": "ListItem", "url": "/job/200/"},
                {"@type": "ListItem", "item": {"url": "https://dev.bg/job/300/"}},
                {"@type": "ListItem", "url": "https://twitter.com/intent/tweet?u=x"},
            ],
        }
    )
    + "</head><body></body></html>"
)

ORGANIZATION_HTML = (
    "<html><head>"
    + _jsonld(
        {
            "@type": "Organization",
            "name": "Acme",
            "url": "https://acme.com",
            "address": {"addressLocality": "Plovdiv", "addressCountry": "BG"},
            "industry": ["Software", "Fintech"],
            "description": "We build things.",
        }
    )
    + "</head><body></body></html>"
)


def _detail(job_id: str, title: str) -> str:
    posting = dict(JOB_POSTING, title=title, url=f"https://dev.bg/job/{job_id}/", identifier=job_id)
    return "<html><head>" + _jsonld(posting) + "</head></html>"


class ParsingTests(unittest.TestCase):
    def test_parse_jobposting(self) -> None:
        [listing] = parse_jobposting_jsonld("https://dev.bg/company/jobs/", LISTING_HTML, "dev.bg")
        self.assertEqual(listing.title, "Senior Java Developer")
        self.assertEqual(listing.company_name, "Acme")
        self.assertEqual(listing.company_website, "https://acme.com")
        self.assertEqual(listing.detail_url, "https://dev.bg/job/100")
        self.assertEqual(listing.native_id, "100")
        self.assertEqual(listing.location_text, "Sofia, BG")
        self.assertEqual(listing.work_model_text, "remote")
        self.assertEqual(listing.salary_text, "4000 - 6000 BGN")
        self.assertEqual(listing.technology_hints, ["Java", "Spring"])
        self.assertEqual(listing.full_text, "Java and Spring services")

    def test_organization_url_on_job_site_is_profile_page(self) -> None:
        posting = dict(
            JOB_POSTING,
            hiringOrganization={"name": "Acme", "url": "/company/acme/", "sameAs": "https://acme.com"},
        )
        html = "<html><head>" + _jsonld(posting) + "</head></html>"
        [listing] = parse_jobposting_jsonld("https://dev.bg/company/jobs/", html, "dev.bg")
        self.assertEqual(listing.company_profile_url, "https://dev.bg/company/acme")
        self.assertEqual(listing.company_website, "https://acme.com")

    def test_parse_organization_page(self) -> None:
        page = parse_organization_page("https://dev.bg/company/acme/", ORGANIZATION_HTML)
        self.assertEqual(page.name, "Acme")
        self.assertEqual(page.website, "https://acme.com")
        self.assertEqual(page.location, "Plovdiv, BG")
        self.assertEqual(page.industry, "Software, Fintech")
        self.assertEqual(page.raw_content, ORGANIZATION_HTML)

    def test_organization_falls_back_to_meta_tags(self) -> None:
        html = (
            '<html><head><meta property="og:site_name" content="Globex">'
            '<meta name="description" content="Globex makes widgets"></head></html>'
        )
        page = parse_organization_page("https://dev.bg/company/globex/", html)
        self.assertEqual(page.name, "Globex")
        self.assertEqual(page.description, "Globex makes widgets")
        self.assertIsNone(parse_organization_page("https://dev.bg/x", "<html></html>"))


class JsonLdSiteAdapterTests(unittest.IsolatedAsyncioTestCase):
    def _adapter(self, routes: dict[str, tuple[int, str]]) -> JsonLdSiteAdapter:
        def handler(request: httpx.Request) -> httpx.Response:
            key = request.url.path + (f"?{request.url.query.decode()}" if request.url.query else "")
            status, body = routes.get(key, (404, "<html>missing</html>"))
            return httpx.Response(status, html=body)

        self.http = AsyncHttpHelper(5, per_domain_rps=0, transport=httpx.MockTransport(handler))
        return JsonLdSiteAdapter("dev.bg", "https://dev.bg", self.http, listings_path="/company/jobs/")

    async def asyncTearDown(self) -> None:
        await self.http.aclose()

    async def test_scrape_listing_page(self) -> None:
        adapter = self._adapter({"/company/jobs": (200, LISTING_HTML)})
        page = await adapter.scrape_listings(ScrapeOptions(limit=10))
        self.assertEqual(len(page.listings), 1)
        self.assertEqual(page.listings[0].source_site, "dev.bg")
        self.assertTrue(page.has_next_page)
        self.assertEqual(page.errors, [])

    async def test_second_page_url(self) -> None:
        adapter = self._adapter({"/company/jobs?page=2": (200, LISTING_HTML)})
        self.assertEqual(adapter.listing_page_url(2), "https://dev.bg/company/jobs/?page=2")
        page = await adapter.scrape_listings(ScrapeOptions(page=2))
        self.assertEqual(page.page, 2)
        self.assertEqual(len(page.listings), 1)

    async def test_item_list_details(self) -> None:
        adapter = self._adapter(
            {
                "/company/jobs": (200, ITEMLIST_HTML),
                "/job/200": (200, _detail("200", "Python Developer")),
                "/job/300": (200, _detail("300", "Go Developer")),
            }
        )
        without = await adapter.scrape_listings(ScrapeOptions())
        self.assertEqual(without.listings, [])
        self.assertEqual(without.total_found, 2)
        self.assertIn("no JobPosting markup found", without.errors[0])

        page = await adapter.scrape_listings(ScrapeOptions(include_details=True))
        self.assertEqual(sorted(l.title for l in page.listings), ["Go Developer", "Python Developer"])
        self.assertEqual(page.errors, [])

    async def test_listing_page_error_status_is_reported(self) -> None:
        adapter = self._adapter({})
        page = await adapter.scrape_listings(ScrapeOptions())
        self.assertEqual(page.listings, [])
        self.assertIn("returned status 404", page.errors[0])

    async def test_listing_page_transport_fault_propagates(self) -> None:
        adapter = self._adapter({"/company/jobs": (503, "busy")})
        with self.assertRaises(TransientIOError):
            await adapter.scrape_listings(ScrapeOptions())

    async def test_company_profile(self) -> None:
        adapter = self._adapter({"/company/acme": (200, ORGANIZATION_HTML)})
        result = await adapter.scrape_company_profile("https://dev.bg/company/acme/")
        self.assertTrue(result.success)
        self.assertEqual(result.data.name, "Acme")

        missing = await adapter.scrape_company_profile("https://dev.bg/company/nobody/")
        self.assertFalse(missing.success)
        self.assertEqual(missing.error, "status 404")

    async def test_can_handle_and_registry(self) -> None:
        adapter = self._adapter({})
        self.assertTrue(adapter.can_handle("https://dev.bg/job/1"))
        self.assertTrue(adapter.can_handle("https://www.dev.bg/job/1"))
        self.assertFalse(adapter.can_handle("https://notdev.bg/job/1"))

        registry = AdapterRegistry(enabled_sites=["dev.bg", "jobs.bg"])
        registry.register(adapter)
        self.assertIs(registry.get("DEV.BG"), adapter)
        self.assertIs(registry.get_for_url("https://dev.bg/company/acme"), adapter)
        self.assertIsNone(registry.get_for_url("https://example.com"))
        self.assertEqual(registry.enabled_sites(), ["dev.bg"])
        self.assertFalse(registry.is_enabled("jobs.bg"))
        self.assertTrue(registry.unregister("dev.bg"))
        self.assertEqual(registry.registered_sites(), [])


if __name__ == "__main__":
    unittest.main()
