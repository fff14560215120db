"""Pipelines package for KBCrawl.

Provides URL canonicalization, crawl politeness, fetching, content extraction,
link discovery and sitemap discovery.
"""

from .urls import canonicalize_url, url_origin, same_origin
from .policy import PolitenessGatekeeper, RobotsCacheEntry, DomainRateState, gatekeeper
from .fetcher import PageFetcher, FetchFailed, FetchedPage
from .extractor import (
    ExtractionResult,
    extract_content,
    extract_article,
    extract_heuristic,
    passes_quality_gate
)
from .links import discover_links
from .sitemap import SitemapDiscovery, SitemapParseError, parse_sitemap_xml
from .security import SSRFError, UnsafeRedirect, check_url_ssrf, guarded_get, validate_url_security

__all__ = [
    # URLs
    'canonicalize_url',
    'url_origin',
    'same_origin',

    # Politeness
    'PolitenessGatekeeper',
    'RobotsCacheEntry',
    'DomainRateState',
    'gatekeeper',

    # Fetching
    'PageFetcher',
    'FetchFailed',
    'FetchedPage',

    # Extraction
    'ExtractionResult',
    'extract_content',
    'extract_article',
    'extract_heuristic',
    'passes_quality_gate',

    # Discovery
    'discover_links',
    'SitemapDiscovery',
    'SitemapParseError',
    'parse_sitemap_xml',

    # Security
    'SSRFError',
    'UnsafeRedirect',
    'check_url_ssrf',
    'guarded_get',
    'validate_url_security'
]
