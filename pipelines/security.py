"""URL safety checks for crawl seeds and redirects.

Crawl seeds come from tenants, so a seed that points at loopback, private
networks, cloud metadata endpoints or internal service ports is rejected
before any job is enqueued. Discovered links stay on the seed's origin, but a
page on that origin can still redirect anywhere, so every crawl request
follows redirects through ``guarded_get``, which vets each hop that leaves
the origin.
"""

import asyncio
import functools
import ipaddress
import logging
import socket
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Set, Tuple
from urllib.parse import urljoin, urlsplit

import aiohttp

from .urls import url_origin

logger = logging.getLogger(__name__)

PRIVATE_IP_RANGES = [
    ipaddress.ip_network('10.0.0.0/8'),        # RFC 1918
    ipaddress.ip_network('172.16.0.0/12'),     # RFC 1918
    ipaddress.ip_network('192.168.0.0/16'),    # RFC 1918
    ipaddress.ip_network('127.0.0.0/8'),       # Loopback
    ipaddress.ip_network('169.254.0.0/16'),    # Link-local
    ipaddress.ip_network('100.64.0.0/10'),     # Carrier-grade NAT
    ipaddress.ip_network('0.0.0.0/8'),         # "This" network
    ipaddress.ip_network('224.0.0.0/4'),       # Multicast
    ipaddress.ip_network('240.0.0.0/4'),       # Reserved
    ipaddress.ip_network('::1/128'),           # IPv6 loopback
    ipaddress.ip_network('fc00::/7'),          # IPv6 unique local
    ipaddress.ip_network('fe80::/10'),         # IPv6 link-local
]

# Common internal service ports
BLOCKED_PORTS = {
    22, 23, 25, 53, 110, 143, 993, 995,
    1433, 1521, 3306, 3389, 5432, 5984,
    6379, 8086, 9200, 11211, 27017,
}

ALLOWED_SCHEMES = {'http', 'https'}

LOCALHOST_NAMES = {'localhost', 'localhost.localdomain', 'ip6-localhost', '0', 'local'}

METADATA_HOSTS = (
    'metadata.google.internal',
    '169.254.169.254',
    'metadata.azure.com',
    'metadata.packet.net',
)


class SSRFError(Exception):
    """Raised when a URL targets a private or internal destination."""
    pass


def is_private_ip(ip_str: str) -> bool:
    """Check if an IP address is in a private range. Unparseable input counts as private."""
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return True

    # IPv4-mapped IPv6 addresses are checked as IPv4
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return any(ip in network for network in PRIVATE_IP_RANGES)


def resolve_hostname(hostname: str) -> Set[str]:
    """Resolve a hostname and make sure none of its addresses is private.

    Raises:
        SSRFError: If resolution fails or any address is private
    """
    try:
        addr_info = socket.getaddrinfo(hostname, None)
    except (socket.gaierror, UnicodeError) as e:
        raise SSRFError(f"Failed to resolve hostname {hostname}: {e}")

    ips = {info[4][0] for info in addr_info}
    private_ips = sorted(ip for ip in ips if is_private_ip(ip))
    if private_ips:
        raise SSRFError(f"Hostname {hostname} resolves to private IP(s): {private_ips}")
    return ips


def validate_url_security(url: str, resolve: bool = True) -> Tuple[bool, Optional[str]]:
    """Validate a URL against SSRF rules.

    Returns:
        Tuple of (is_safe, error_message)
    """
    try:
        parsed = urlsplit(url)
        scheme = parsed.scheme.lower()
        hostname = parsed.hostname
        port = parsed.port
    except ValueError as e:
        return False, f"Malformed URL: {e}"

    if scheme not in ALLOWED_SCHEMES:
        return False, f"Scheme '{parsed.scheme}' not allowed. Only http and https are permitted."

    if not hostname:
        return False, "URL must have a valid hostname."

    hostname = hostname.lower().rstrip('.')
    if hostname in LOCALHOST_NAMES or hostname.endswith('.localhost'):
        return False, f"Localhost hostname '{hostname}' is blocked."

    if port and port in BLOCKED_PORTS:
        return False, f"Port {port} is blocked (internal service port)."

    for pattern in METADATA_HOSTS:
        if pattern in hostname:
            return False, f"Metadata service hostname '{hostname}' is blocked."

    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        if resolve:
            try:
                resolve_hostname(hostname)
            except SSRFError as e:
                return False, str(e)
    else:
        if is_private_ip(hostname):
            return False, f"Private IP address '{hostname}' is blocked."

    return True, None


def check_url_ssrf(url: str, resolve: bool = True) -> None:
    """Raise SSRFError if a URL is unsafe to crawl."""
    is_safe, error_msg = validate_url_security(url, resolve=resolve)
    if not is_safe:
        logger.warning(f"SSRF protection blocked URL: {url} - {error_msg}")
        raise SSRFError(error_msg)


REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})


class UnsafeRedirect(SSRFError):
    """Raised when a redirect chain leaves safe territory or never ends."""
    pass


def check_redirect_target(target_url: str, origin: Optional[str], resolve: bool = True) -> None:
    """Vet one redirect hop.

    Hops that stay on ``origin`` are allowed. Anything else must pass the
    same SSRF rules as a seed URL.

    Raises:
        SSRFError: If the target is unsafe
    """
    if origin is not None and url_origin(target_url) == origin:
        return
    check_url_ssrf(target_url, resolve=resolve)


@asynccontextmanager
async def guarded_get(session: aiohttp.ClientSession, url: str, max_redirects: int = 5,
                      resolve: bool = True,
                      **kwargs) -> AsyncIterator[Tuple[aiohttp.ClientResponse, str]]:
    """GET a URL, following redirects by hand so each hop can be vetted.

    Yields the final response together with the URL it was served from.

    Raises:
        UnsafeRedirect: If a hop is blocked or the chain exceeds ``max_redirects``
    """
    origin = url_origin(url)
    loop = asyncio.get_running_loop()
    current = url

    for _ in range(max_redirects + 1):
        response = await session.get(current, allow_redirects=False, **kwargs)
        location = response.headers.get('Location')
        if response.status not in REDIRECT_STATUSES or not location:
            try:
                yield response, current
            finally:
                response.release()
            return

        response.release()
        target = urljoin(current, location.strip())
        try:
            # DNS resolution blocks, so it runs off the event loop
            await loop.run_in_executor(
                None, functools.partial(check_redirect_target, target, origin, resolve)
            )
        except SSRFError as e:
            raise UnsafeRedirect(f"Redirect from {current} to {target} blocked: {e}") from e

        logger.debug(f"Following HTTP {response.status} redirect {current} -> {target}")
        current = target

    raise UnsafeRedirect(f"More than {max_redirects} redirects starting at {url}")
