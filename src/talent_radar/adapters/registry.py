from __future__ import annotations

import logging

from ..config import Settings
from ..http_client import AsyncHttpHelper
from .base import SiteAdapter
from .jsonld import JsonLdSiteAdapter

logger = logging.getLogger(__name__)

SITE_LISTING_PATHS = {
    "dev.bg": "/company/jobs/",
    "jobs.bg": "/front_job_search.php",
}


class AdapterRegistry:
    def __init__(self, enabled_sites: tuple[str, ...] | list[str] = ()) -> None:
        self._adapters: dict[str, SiteAdapter] = {}
        self._enabled = list(enabled_sites)

    def register(self, adapter: SiteAdapter) -> None:
        if adapter.site_key in self._adapters:
            logger.warning("replacing adapter for %s", adapter.site_key)
        self._adapters[adapter.site_key] = adapter

    def unregister(self, site_key: str) -> bool:
        return self._adapters.pop(site_key, None) is not None

    def get(self, site_key: str) -> SiteAdapter | None:
        return self._adapters.get((site_key or "").strip().lower())

    def get_for_url(self, url: str) -> SiteAdapter | None:
        for adapter in self._adapters.values():
            if adapter.can_handle(url):
                return adapter
        return None

    def registered_sites(self) -> list[str]:
        return sorted(self._adapters)

    def enabled_sites(self) -> list[str]:
        if not self._enabled:
            return self.registered_sites()
        return [site for site in self._enabled if site in self._adapters]

    def is_enabled(self, site_key: str) -> bool:
        return site_key in self.enabled_sites()


def build_registry(settings: Settings, http: AsyncHttpHelper) -> AdapterRegistry:
    registry = AdapterRegistry(settings.enabled_sites)
    for site_key, base_url in settings.site_base_urls.items():
        registry.register(
            JsonLdSiteAdapter(
                site_key=site_key,
                base_url=base_url,
                http=http,
                listings_path=SITE_LISTING_PATHS.get(site_key, "/jobs"),
                max_html_bytes=settings.max_html_bytes,
            )
        )
    return registry
