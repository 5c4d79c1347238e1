from __future__ import annotations

import json
import re
from typing import Any, Iterator
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from ..models import RawCompanyPage, RawListing
from ..utils import normalize_url, stable_hash


SOCIAL_DOMAINS = {
    "twitter.com",
    "x.com",
    "facebook.com",
    "linkedin.com",
    "instagram.com",
    "youtube.com",
    "tiktok.com",
}

BLOCKED_URL_TOKENS = (
    "intent/tweet",
    "facebook.com/sharer",
    "linkedin.com/sharing",
    "mailto:",
    "tel:",
    "javascript:",
)


def _clean(value: str) -> str:
    return re.sub(r"\s+", " ", (value or "")).strip()


def _strip_tags(value: str) -> str:
    if "<" not in (value or ""):
        return _clean(value)
    return _clean(BeautifulSoup(value, "lxml").get_text(" ", strip=True))


def listing_native_id(title: str, url: str) -> str:
    return stable_hash(f"{title}|{url}")[:20]


def _looks_like_social_host(host: str) -> bool:
    return any(host == domain or host.endswith(f".{domain}") for domain in SOCIAL_DOMAINS)


def _same_site(left: str, right: str) -> bool:
    def bare(url: str) -> str:
        host = (urlparse(url).hostname or "").lower()
        return host[4:] if host.startswith("www.") else host

    return bool(bare(left)) and bare(left) == bare(right)


def is_blocked_posting_url(url: str) -> bool:
    parsed = urlparse(url)
    scheme = (parsed.scheme or "").lower()
    if scheme not in {"http", "https"}:
        return True

    host = (parsed.hostname or "").lower()
    if not host or _looks_like_social_host(host):
        return True

    full = f"{host}{parsed.path}?{parsed.query}".lower()
    return any(token in full for token in BLOCKED_URL_TOKENS)


def iter_jsonld_items(html: str) -> Iterator[dict[str, Any]]:
    soup = BeautifulSoup(html, "lxml")
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        raw = (script.string or script.text or "").strip()
        if not raw:
            continue
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            continue

        if isinstance(parsed, dict):
            if isinstance(parsed.get("@graph"), list):
                yield from (i for i in parsed["@graph"] if isinstance(i, dict))
            else:
                yield parsed
        elif isinstance(parsed, list):
            yield from (i for i in parsed if isinstance(i, dict))


def _type_of(item: dict[str, Any]) -> str:
    typ = item.get("@type", "")
    if isinstance(typ, list):
        typ = " ".join(str(t) for t in typ)
    return _clean(str(typ)).lower()


def _extract_location(value: Any) -> str:
    if isinstance(value, str):
        return _clean(value)
    if isinstance(value, dict):
        address = value.get("address")
        if isinstance(address, dict):
            country = address.get("addressCountry")
            parts = [
                _clean(str(address.get("addressLocality", ""))),
                _clean(country) if isinstance(country, str) else "",
            ]
            joined = ", ".join(part for part in parts if part)
            if joined:
                return joined
        elif isinstance(address, str):
            return _clean(address)
        name = _clean(str(value.get("name") or ""))
        if name:
            return name
    if isinstance(value, list):
        for item in value:
            loc = _extract_location(item)
            if loc:
                return loc
    return ""


def _extract_identifier(value: Any) -> str:
    if isinstance(value, dict):
        return _clean(str(value.get("value") or value.get("@value") or value.get("name") or ""))
    return _clean(str(value or ""))


def _extract_salary_text(value: Any) -> str:
    if not isinstance(value, dict):
        return _clean(str(value or ""))
    currency = _clean(str(value.get("currency") or ""))
    amount = value.get("value")
    if isinstance(amount, dict):
        low = amount.get("minValue")
        high = amount.get("maxValue")
        single = amount.get("value")
        if low is not None and high is not None:
            return _clean(f"{low} - {high} {currency}")
        if single is not None:
            return _clean(f"{single} {currency}")
        if low is not None:
            return _clean(f"{low} {currency}")
    elif amount is not None:
        return _clean(f"{amount} {currency}")
    return ""


def _extract_skills(value: Any) -> list[str]:
    if isinstance(value, list):
        return [_clean(str(v)) for v in value if _clean(str(v))]
    if isinstance(value, str):
        return [s for s in (_clean(part) for part in re.split(r"[,;|]", value)) if s]
    return []


def _work_model_text(item: dict[str, Any]) -> str:
    bits = []
    if _clean(str(item.get("jobLocationType") or "")).upper() == "TELECOMMUTE":
        bits.append("remote")
    employment = item.get("employmentType")
    if isinstance(employment, list):
        bits.extend(str(e) for e in employment)
    elif employment:
        bits.append(str(employment))
    return _clean(" ".join(bits))


def parse_jobposting_jsonld(page_url: str, html: str, source_site: str) -> list[RawListing]:
    listings: list[RawListing] = []
    for item in iter_jsonld_items(html):
        if "jobposting" not in _type_of(item):
            continue

        detail_url = normalize_url(urljoin(page_url, str(item.get("url") or page_url)))
        if is_blocked_posting_url(detail_url):
            continue

        title = _clean(str(item.get("title") or ""))
        if not title:
            continue

        org = item.get("hiringOrganization")
        company_name = ""
        company_website = ""
        profile_url = ""
        if isinstance(org, dict):
            company_name = _clean(str(org.get("name") or ""))
            org_url = _clean(str(org.get("url") or ""))
            # an organization url on the job site itself is its company profile page
            if org_url and _same_site(page_url, urljoin(page_url, org_url)):
                profile_url = normalize_url(urljoin(page_url, org_url))
                org_url = ""
            company_website = _clean(str(org.get("sameAs") or org_url or ""))
        elif isinstance(org, str):
            company_name = _clean(org)

        native_id = _extract_identifier(item.get("identifier")) or listing_native_id(title, detail_url)

        listings.append(
            RawListing(
                title=title,
                company_name=company_name,
                detail_url=detail_url,
                source_site=source_site,
                native_id=native_id,
                location_text=_extract_location(item.get("jobLocation")),
                work_model_text=_work_model_text(item),
                salary_text=_extract_salary_text(item.get("baseSalary")),
                posted_date_text=_clean(str(item.get("datePosted") or "")),
                technology_hints=_extract_skills(item.get("skills")),
                full_text=_strip_tags(str(item.get("description") or "")),
                company_website=company_website,
                company_profile_url=profile_url,
            )
        )
    return listings


def parse_itemlist_urls(page_url: str, html: str) -> list[str]:
    urls: list[str] = []
    for item in iter_jsonld_items(html):
        if "itemlist" not in _type_of(item):
            continue
        for element in item.get("itemListElement") or []:
            raw = element
            if isinstance(element, dict):
                nested = element.get("item")
                raw = element.get("url") or (nested.get("url") if isinstance(nested, dict) else nested)
            if not raw:
                continue
            url = normalize_url(urljoin(page_url, str(raw)))
            if url and not is_blocked_posting_url(url) and url not in urls:
                urls.append(url)
    return urls


def has_next_page_link(html: str) -> bool:
    soup = BeautifulSoup(html, "lxml")
    return soup.find(["a", "link"], attrs={"rel": "next"}) is not None


def parse_organization_page(page_url: str, html: str) -> RawCompanyPage | None:
    for item in iter_jsonld_items(html):
        typ = _type_of(item)
        if "organization" not in typ and "corporation" not in typ:
            continue
        name = _clean(str(item.get("name") or ""))
        if not name:
            continue
        industry = item.get("industry") or item.get("knowsAbout") or ""
        if isinstance(industry, list):
            industry = ", ".join(str(i) for i in industry)
        return RawCompanyPage(
            url=normalize_url(page_url),
            name=name,
            website=_clean(str(item.get("url") or item.get("sameAs") or "")),
            location=_extract_location(item.get("location") or {"address": item.get("address")}),
            industry=_clean(str(industry)),
            description=_strip_tags(str(item.get("description") or "")),
            raw_content=html,
        )

    soup = BeautifulSoup(html, "lxml")
    meta_name = soup.find("meta", attrs={"property": "og:site_name"}) or soup.find(
        "meta", attrs={"property": "og:title"}
    )
    name = _clean(meta_name.get("content", "")) if meta_name else ""
    if not name and soup.title:
        name = _clean(soup.title.get_text(" ", strip=True).split("|")[0])
    if not name:
        return None
    description = soup.find("meta", attrs={"name": "description"})
    return RawCompanyPage(
        url=normalize_url(page_url),
        name=name,
        description=_clean(description.get("content", "")) if description else "",
        raw_content=html,
    )


def dedupe_listings(listings: list[RawListing]) -> list[RawListing]:
    deduped: list[RawListing] = []
    seen: set[str] = set()
    for listing in listings:
        key = f"{listing.native_id}|{listing.detail_url}"
        if key in seen:
            continue
        seen.add(key)
        deduped.append(listing)
    return deduped
