import asyncio
import gzip
import time
from dataclasses import dataclass, field
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from config.logging_config import get_logger
from services.audit_worker.config import settings
from services.audit_worker.crawler.robots_policy import RobotsPolicyCache
from services.audit_worker.crawler.urls import (
    crawlable_links,
    locale_prefix,
    normalize_url,
    origin_of,
    root_host_of,
    should_crawl_url,
    sort_urls,
)
from services.audit_worker.errors import DiscoveryError
from services.audit_worker.metrics import discovery_duration

logger = get_logger(__name__)

SOURCE_SITEMAP = "sitemap"
SOURCE_BFS = "bfs"


@dataclass
class DiscoveryResult:
    urls: list[str]
    source: str
    final_url: str
    root_host: str
    locale_prefix: str | None = None
    sitemaps: list[str] = field(default_factory=list)


def is_sitemap_body(text: str) -> bool:
    lower = text.lower()
    return "<urlset" in lower or "<sitemapindex" in lower


def is_sitemap_index(text: str) -> bool:
    return "<sitemapindex" in text.lower()


def extract_locs(xml: str) -> list[str]:
    soup = BeautifulSoup(xml, "xml")
    return [loc.get_text(strip=True) for loc in soup.find_all("loc") if loc.get_text(strip=True)]


def decode_sitemap(url: str, content: bytes) -> str | None:
    if urlparse(url).path.lower().endswith(".gz") or content[:2] == b"\x1f\x8b":
        try:
            content = gzip.decompress(content)
        except (OSError, EOFError):
            return None
    return content.decode("utf-8", errors="replace")


class URLDiscoveryEngine:
    """Seeds an audit's frontier: sitemap first, breadth-first link harvest as fallback."""

    def __init__(self, client: httpx.AsyncClient, robots: RobotsPolicyCache, sleep=asyncio.sleep):
        self.client = client
        self.robots = robots
        self.sleep = sleep

    async def discover(self, root_url: str) -> DiscoveryResult:
        started = time.monotonic()
        final_url = await self.resolve_final_url(root_url)
        root_host = root_host_of(final_url)
        prefix = locale_prefix(urlparse(final_url).path)

        sitemaps = await self.find_sitemaps(final_url, prefix)
        urls: list[str] = []
        source = SOURCE_SITEMAP
        if sitemaps:
            urls = await self.urls_from_sitemaps(sitemaps, root_host, prefix)

        if not urls:
            source = SOURCE_BFS
            logger.info("No sitemap URLs, falling back to link harvest", extra={"url": final_url})
            urls = await self.harvest_links(final_url, root_host, prefix)

        homepage = normalize_url(final_url)
        if urls and homepage and homepage not in urls:
            urls = [homepage] + urls
        urls = sort_urls(urls, homepage=homepage)[: settings.discovery_max_urls]

        discovery_duration.labels(source=source).observe(time.monotonic() - started)

        if not urls:
            raise DiscoveryError(f"no pages discovered; final origin {origin_of(final_url)}")

        return DiscoveryResult(
            urls=urls,
            source=source,
            final_url=final_url,
            root_host=root_host,
            locale_prefix=prefix,
            sitemaps=[u for u, _ in sitemaps],
        )

    async def resolve_final_url(self, root_url: str) -> str:
        try:
            r = await self.client.get(root_url, follow_redirects=True, timeout=settings.page_timeout_s)
            final = str(r.url)
        except httpx.HTTPError as e:
            logger.info("Could not resolve final URL, using root", extra={"url": root_url, "error": str(e)})
            final = root_url
        return normalize_url(final) or root_url

    async def _fetch_text(self, url: str) -> str | None:
        try:
            r = await self.client.get(url, follow_redirects=True, timeout=settings.page_timeout_s)
        except httpx.HTTPError:
            return None
        if r.status_code >= 400:
            return None
        return decode_sitemap(url, r.content)

    def _sitemap_candidates(self, final_url: str, prefix: str | None) -> list[str]:
        origin = origin_of(final_url)
        candidates = [f"{origin}/sitemap.xml"]
        if prefix:
            candidates.append(f"{origin}{prefix}/sitemap.xml")
            candidates.append(f"{origin}/sitemap{prefix.replace('/', '-')}.xml")
        candidates.append(f"{origin}/sitemap_index.xml")
        return candidates

    async def find_sitemaps(self, final_url: str, prefix: str | None) -> list[tuple[str, str]]:
        """Valid sitemap documents as (url, body), direct candidates before robots.txt entries."""
        candidates = self._sitemap_candidates(final_url, prefix)
        policy = await self.robots.get_policy(final_url)
        candidates.extend(policy.sitemaps)

        found: list[tuple[str, str]] = []
        seen: set[str] = set()
        for url in candidates:
            if url in seen:
                continue
            seen.add(url)
            body = await self._fetch_text(url)
            if body and is_sitemap_body(body):
                found.append((url, body))
                if len(found) >= settings.sitemap_max_valid:
                    break
        return found

    async def urls_from_sitemaps(self, sitemaps: list[tuple[str, str]], root_host: str, prefix: str | None) -> list[str]:
        documents: list[str] = []
        for url, body in sitemaps:
            if not is_sitemap_index(body):
                documents.append(body)
                continue
            for child in extract_locs(body)[: settings.sitemap_max_children]:
                child_body = await self._fetch_text(child)
                if child_body and "<urlset" in child_body.lower():
                    documents.append(child_body)

        urls: list[str] = []
        seen: set[str] = set()
        for body in documents:
            for loc in extract_locs(body):
                if not should_crawl_url(loc, root_host, prefix):
                    continue
                nu = normalize_url(loc)
                if nu and nu not in seen:
                    seen.add(nu)
                    urls.append(nu)
                    if len(urls) >= settings.sitemap_max_urls:
                        return urls
        return urls

    async def harvest_links(self, final_url: str, root_host: str, prefix: str | None) -> list[str]:
        start = normalize_url(final_url) or final_url
        queue: list[str] = [start]
        visited: set[str] = set()
        found: list[str] = []
        fetches = 0

        def _add(u: str) -> None:
            if u not in found and len(found) < settings.bfs_max_urls:
                found.append(u)

        while queue and fetches < settings.bfs_max_fetches and len(found) < settings.bfs_max_urls:
            url = queue.pop(0)
            if url in visited:
                continue
            visited.add(url)

            if not should_crawl_url(url, root_host, prefix):
                continue
            if not await self.robots.is_allowed(url):
                logger.info("Harvest skipped disallowed URL", extra={"url": url})
                continue

            delay = await self.robots.crawl_delay(url)
            if delay and fetches:
                await self.sleep(delay)

            fetches += 1
            try:
                r = await self.client.get(url, follow_redirects=True, timeout=settings.page_timeout_s)
            except httpx.HTTPError as e:
                logger.info("Harvest fetch failed", extra={"url": url, "error": str(e)})
                continue
            if r.status_code >= 400 or "html" not in r.headers.get("content-type", "").lower():
                continue

            page_url = normalize_url(str(r.url)) or url
            _add(page_url)
            for link in crawlable_links(r.text or "", page_url, root_host, prefix, settings.bfs_links_per_page):
                _add(link)
                if link not in visited:
                    queue.append(link)
        return found
