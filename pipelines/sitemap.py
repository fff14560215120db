"""Sitemap discovery for crawl seeding.

Tries a handful of well-known sitemap locations on an origin and returns the
page URLs of the first one that yields any. Both ``urlset`` sitemaps and
``sitemapindex`` files (one level deep) are understood.
"""

import asyncio
import gzip
import logging
from typing import List, Optional, Tuple
from xml.etree import ElementTree as ET

import aiohttp

from config.crawler_config import CrawlerConfig, crawler_config
from observability.logging import log_duration
from .security import UnsafeRedirect, guarded_get
from .urls import canonicalize_url, url_origin

logger = logging.getLogger(__name__)

GZIP_MAGIC = b'\x1f\x8b'


class SitemapParseError(Exception):
    """Raised when a sitemap document cannot be parsed."""

    def __init__(self, message: str, url: Optional[str] = None):
        self.message = message
        self.url = url
        if url:
            super().__init__(f"Failed to parse sitemap at '{url}': {message}")
        else:
            super().__init__(f"Sitemap parse error: {message}")


def _local_name(tag: str) -> str:
    """Strip any XML namespace from a tag name."""
    return tag.rsplit('}', 1)[-1] if isinstance(tag, str) else ''


def _child_locs(root: ET.Element, entry_name: str) -> List[str]:
    locs = []
    for entry in root:
        if _local_name(entry.tag) != entry_name:
            continue
        for child in entry:
            if _local_name(child.tag) == 'loc' and child.text and child.text.strip():
                locs.append(child.text.strip())
                break
    return locs


def parse_sitemap_xml(content: bytes, url: Optional[str] = None) -> Tuple[str, List[str]]:
    """Parse a sitemap document.

    Returns:
        ``('urlset', page_urls)`` or ``('sitemapindex', sitemap_urls)``

    Raises:
        SitemapParseError: on malformed XML or an unknown root element
    """
    if content[:2] == GZIP_MAGIC:
        try:
            content = gzip.decompress(content)
        except (OSError, EOFError) as e:
            raise SitemapParseError(f"Invalid gzip data: {e}", url)

    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise SitemapParseError(f"Invalid XML: {e}", url)

    kind = _local_name(root.tag)
    if kind == 'urlset':
        return kind, _child_locs(root, 'url')
    if kind == 'sitemapindex':
        return kind, _child_locs(root, 'sitemap')

    raise SitemapParseError(f"Unexpected root element <{kind}>", url)


class SitemapDiscovery:
    """Finds crawl seeds for an origin from its sitemap."""

    def __init__(self, config: Optional[CrawlerConfig] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        config = config or crawler_config
        settings = config.get_sitemap_settings()
        self.user_agent = config.get_user_agent()
        self.paths = config.get_sitemap_paths()
        self.timeout = float(settings['timeout'])
        self.child_timeout = float(settings['child_timeout'])
        self.max_children = int(settings['max_children'])
        self.max_urls = int(settings['max_urls'])
        self.max_redirects = config.get_fetch_settings()['max_redirects']
        self._session = session

    async def _fetch(self, session: aiohttp.ClientSession, url: str, timeout: float) -> Optional[bytes]:
        try:
            async with guarded_get(session, url, max_redirects=self.max_redirects,
                                   timeout=aiohttp.ClientTimeout(total=timeout)) as (response, _):
                if response.status != 200:
                    logger.debug(f"Sitemap fetch {url} returned HTTP {response.status}")
                    return None
                return await response.read()
        except UnsafeRedirect as e:
            logger.warning(f"Skipping sitemap {url}: {e}")
            return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Sitemap fetch {url} failed: {e}")
            return None

    async def _fetch_child(self, session: aiohttp.ClientSession, url: str) -> List[str]:
        content = await self._fetch(session, url, self.child_timeout)
        if content is None:
            return []
        try:
            kind, locs = parse_sitemap_xml(content, url)
        except SitemapParseError as e:
            logger.debug(str(e))
            return []
        # Nested indexes are not followed
        return locs if kind == 'urlset' else []

    async def fetch_sitemap_urls(self, session: aiohttp.ClientSession, sitemap_url: str) -> List[str]:
        """Return raw page URLs listed by one sitemap location (empty on any failure)."""
        content = await self._fetch(session, sitemap_url, self.timeout)
        if content is None:
            return []

        try:
            kind, locs = parse_sitemap_xml(content, sitemap_url)
        except SitemapParseError as e:
            logger.info(str(e))
            return []

        if kind == 'urlset':
            return locs

        children = locs[:self.max_children]
        logger.info(f"Sitemap index {sitemap_url} lists {len(locs)} sitemaps, reading {len(children)}")
        results = await asyncio.gather(*(self._fetch_child(session, child) for child in children))
        return [url for child_urls in results for url in child_urls]

    def _filter(self, urls: List[str], origin: str) -> List[str]:
        seen = set()
        filtered = []
        for raw in urls:
            canonical = canonicalize_url(raw)
            if canonical is None or canonical in seen or url_origin(canonical) != origin:
                continue
            seen.add(canonical)
            filtered.append(canonical)
            if len(filtered) >= self.max_urls:
                break
        return filtered

    @log_duration(threshold_ms=10000)
    async def discover(self, origin: str) -> List[str]:
        """Return up to ``max_urls`` canonical same-origin page URLs, or [] when no sitemap helps."""
        origin = url_origin(origin)
        if origin is None:
            return []

        if self._session is not None:
            return await self._discover_with(self._session, origin)
        async with aiohttp.ClientSession(headers={'User-Agent': self.user_agent}) as session:
            return await self._discover_with(session, origin)

    async def _discover_with(self, session: aiohttp.ClientSession, origin: str) -> List[str]:
        for path in self.paths:
            sitemap_url = f"{origin}{path}"
            urls = self._filter(await self.fetch_sitemap_urls(session, sitemap_url), origin)
            if urls:
                logger.info(f"Found {len(urls)} URLs in {sitemap_url}")
                return urls

        logger.info(f"No usable sitemap found for {origin}")
        return []
