"""URL canonicalization.

Every URL that enters the crawl frontier or the document store goes through
``canonicalize_url`` so that trivially different spellings of the same page
collapse onto one key.
"""

import logging
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ('http', 'https')
DEFAULT_PORTS = {'http': 80, 'https': 443}

# Analytics and referral parameters that never change page content
TRACKING_PARAMS = frozenset({
    'fbclid',
    'gclid',
    'dclid',
    'msclkid',
    'mc_cid',
    'mc_eid',
    'ref',
    'source',
})
TRACKING_PREFIXES = ('utm_',)


def is_tracking_param(name: str) -> bool:
    """Check if a query parameter name is a known tracking parameter."""
    lowered = name.lower()
    return lowered in TRACKING_PARAMS or lowered.startswith(TRACKING_PREFIXES)


def _build_netloc(scheme: str, host: str, port: Optional[int]) -> str:
    if ':' in host:
        host = f"[{host}]"
    if port is None or DEFAULT_PORTS.get(scheme) == port:
        return host
    return f"{host}:{port}"


def canonicalize_url(raw: str, base: Optional[str] = None) -> Optional[str]:
    """Return the canonical form of ``raw``, or None if it is not a crawlable URL.

    ``raw`` is first resolved against ``base`` when given. Tracking parameters
    and the fragment are dropped, trailing slashes are removed from non-root
    paths and the remaining query parameters are sorted. Scheme and host are
    lowercased and default ports removed. The result is stable under repeated
    application.
    """
    if not raw or not isinstance(raw, str):
        return None

    candidate = raw.strip()
    try:
        if base:
            candidate = urljoin(base, candidate)
        parts = urlsplit(candidate)
        scheme = parts.scheme.lower()
        host = parts.hostname
        port = parts.port
    except ValueError as e:
        logger.debug(f"Rejecting malformed URL {raw!r}: {e}")
        return None

    if scheme not in ALLOWED_SCHEMES or not host:
        return None

    path = parts.path or '/'
    if path != '/':
        path = path.rstrip('/') or '/'

    params = [
        (name, value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
        if not is_tracking_param(name)
    ]
    query = urlencode(sorted(params))

    return urlunsplit((scheme, _build_netloc(scheme, host, port), path, query, ''))


def url_origin(url: str) -> Optional[str]:
    """Return ``scheme://host[:port]`` for a URL, or None if it has no usable origin."""
    try:
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        host = parts.hostname
        port = parts.port
    except (ValueError, AttributeError):
        return None

    if scheme not in ALLOWED_SCHEMES or not host:
        return None

    return f"{scheme}://{_build_netloc(scheme, host, port)}"


def same_origin(url: str, other: str) -> bool:
    origin = url_origin(url)
    return origin is not None and origin == url_origin(other)
