"""Same-origin link discovery for recursive crawling."""

import logging
import posixpath
from typing import List, Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from config.crawler_config import crawler_config
from .urls import canonicalize_url, url_origin

logger = logging.getLogger(__name__)

EXCLUDED_HREF_PREFIXES = ('mailto:', 'tel:', 'javascript:', '#', 'ftp:', 'file:', 'data:')

ASSET_EXTENSIONS = frozenset({
    # images
    'jpg', 'jpeg', 'png', 'gif', 'svg', 'webp', 'bmp', 'ico', 'tif', 'tiff', 'avif',
    # archives and binaries
    'zip', 'gz', 'tgz', 'tar', 'rar', '7z', 'exe', 'dmg', 'apk', 'msi',
    # media
    'mp4', 'mp3', 'avi', 'mov', 'wmv', 'webm', 'wav', 'ogg', 'flac', 'm4a',
    # fonts
    'woff', 'woff2', 'ttf', 'otf', 'eot',
    # code and data
    'css', 'js', 'json', 'xml', 'csv',
    # documents
    'pdf', 'doc', 'docx', 'xls', 'xlsx', 'ppt', 'pptx', 'odt',
    # feeds
    'rss', 'atom',
})

ADMIN_SEGMENTS = frozenset({
    'login', 'logout', 'register', 'signin', 'signup',
    'admin', 'api', 'cdn', 'assets', 'static',
    'wp-admin', 'wp-content', 'wp-json', 'cart', 'checkout',
})


def has_asset_extension(path: str) -> bool:
    extension = posixpath.splitext(path)[1]
    return extension[1:].lower() in ASSET_EXTENSIONS if extension else False


def has_admin_segment(path: str) -> bool:
    return any(segment.lower() in ADMIN_SEGMENTS for segment in path.split('/') if segment)


def should_follow_link(href: str, base_url: str, origin: str, max_query_length: int) -> Optional[str]:
    """Return the canonical URL for an href worth crawling, or None."""
    href = href.strip()
    if not href or href.lower().startswith(EXCLUDED_HREF_PREFIXES):
        return None

    try:
        resolved = urljoin(base_url, href)
        raw_query = urlsplit(resolved).query
    except ValueError:
        return None

    if len(raw_query) >= max_query_length:
        return None

    canonical = canonicalize_url(resolved)
    if canonical is None or url_origin(canonical) != origin:
        return None

    path = urlsplit(canonical).path
    if has_asset_extension(path) or has_admin_segment(path):
        return None

    return canonical


def resolution_base(soup: BeautifulSoup, page_url: str) -> str:
    """URL that relative hrefs resolve against: the page's <base href> if any, else the page URL."""
    base = soup.find('base', href=True)
    if base is None or not base['href'].strip():
        return page_url
    try:
        return urljoin(page_url, base['href'].strip())
    except ValueError:
        return page_url


def discover_links(html: str, page_url: str, origin: Optional[str] = None,
                   max_query_length: Optional[int] = None) -> List[str]:
    """Collect crawlable same-origin links from a page in document order.

    Args:
        html: Page HTML
        page_url: URL the page was served from after redirects. Relative hrefs
            resolve against it (or the page's <base href>), so a directory URL
            must keep its trailing slash here
        origin: Origin links must stay on (defaults to the page's origin)
        max_query_length: Links whose query string is at least this long are skipped

    Returns:
        Deduplicated canonical URLs, excluding the page itself
    """
    origin = origin or url_origin(page_url)
    if origin is None:
        return []
    if max_query_length is None:
        max_query_length = crawler_config.get_max_query_length()

    page_canonical = canonicalize_url(page_url)
    soup = BeautifulSoup(html, 'html.parser')
    base_url = resolution_base(soup, page_url)

    seen = set()
    links = []
    for anchor in soup.find_all('a', href=True):
        canonical = should_follow_link(anchor['href'], base_url, origin, max_query_length)
        if canonical is None or canonical == page_canonical or canonical in seen:
            continue
        seen.add(canonical)
        links.append(canonical)

    logger.debug(f"Discovered {len(links)} links on {page_url}")
    return links
