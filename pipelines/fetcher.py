"""HTTP page fetcher with bounded retries."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

import aiohttp

from config.crawler_config import CrawlerConfig, crawler_config
from observability.metrics import record_fetch
from .security import UnsafeRedirect, guarded_get

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPES = ('text/html', 'application/xhtml+xml')


class FetchFailed(Exception):
    """Raised when a page cannot be fetched as usable HTML."""

    def __init__(self, url: str, reason: str, status: Optional[int] = None, retryable: bool = False):
        self.url = url
        self.reason = reason
        self.status = status
        self.retryable = retryable
        super().__init__(f"Failed to fetch {url}: {reason}")


@dataclass
class FetchedPage:
    """HTML body plus the URL it was finally served from, after redirects."""
    url: str
    html: str


class PageFetcher:
    """Fetches HTML pages with exponential backoff on transient failures.

    Only connection errors, timeouts and 5xx responses are retried. Client
    errors, non-HTML responses, empty bodies and oversized bodies fail on the
    first attempt.
    """

    def __init__(self, config: Optional[CrawlerConfig] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        config = config or crawler_config
        settings = config.get_fetch_settings()
        self.user_agent = config.get_user_agent()
        self.timeout = float(settings['timeout'])
        self.max_attempts = settings['max_attempts']
        self.backoff_base = settings['backoff_base']
        self.backoff_max = settings['backoff_max']
        self.max_bytes = settings['max_bytes']
        self.max_redirects = settings['max_redirects']
        self.session = session
        self._owns_session = False

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={
                    'User-Agent': self.user_agent,
                    'Accept': 'text/html,application/xhtml+xml;q=0.9,*/*;q=0.5'
                }
            )
            self._owns_session = True
        return self.session

    async def close(self):
        """Close the session if this fetcher created it."""
        if self.session and self._owns_session:
            await self.session.close()
        self.session = None
        self._owns_session = False

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Exponential backoff: base, 2*base, 4*base ... capped."""
        return min(self.backoff_base * (2 ** attempt), self.backoff_max)

    async def _fetch_once(self, session: aiohttp.ClientSession, url: str) -> FetchedPage:
        async with guarded_get(session, url, max_redirects=self.max_redirects) as (response, final_url):
            if response.status >= 500:
                raise FetchFailed(url, f"HTTP {response.status}", status=response.status, retryable=True)
            if response.status >= 400:
                raise FetchFailed(url, f"HTTP {response.status}", status=response.status)

            content_type = response.headers.get('Content-Type', '').split(';')[0].strip().lower()
            if content_type not in HTML_CONTENT_TYPES:
                raise FetchFailed(url, f"Non-HTML content type: {content_type or 'missing'}",
                                  status=response.status)

            if response.content_length is not None and response.content_length > self.max_bytes:
                raise FetchFailed(url, f"Body exceeds {self.max_bytes} bytes "
                                       f"(Content-Length {response.content_length})",
                                  status=response.status)

            raw = await response.content.read(self.max_bytes + 1)
            if len(raw) > self.max_bytes:
                raise FetchFailed(url, f"Body exceeds {self.max_bytes} bytes", status=response.status)

            charset = response.charset or 'utf-8'
            try:
                body = raw.decode(charset, errors='replace')
            except LookupError:
                body = raw.decode('utf-8', errors='replace')

            if not body.strip():
                raise FetchFailed(url, "Empty body", status=response.status)

            return FetchedPage(url=final_url, html=body)

    async def fetch(self, url: str) -> FetchedPage:
        """Fetch a page and return its HTML body with the final URL.

        Raises:
            FetchFailed: when the page is unusable or retries are exhausted
        """
        session = await self._ensure_session()
        last_error: Optional[FetchFailed] = None

        for attempt in range(self.max_attempts):
            start_time = time.monotonic()
            try:
                logger.debug(f"Fetching {url} (attempt {attempt + 1}/{self.max_attempts})")
                page = await self._fetch_once(session, url)
                record_fetch('success', time.monotonic() - start_time)
                return page
            except FetchFailed as e:
                record_fetch('retryable' if e.retryable else 'failed', time.monotonic() - start_time)
                if not e.retryable:
                    raise
                last_error = e
            except UnsafeRedirect as e:
                record_fetch('blocked_redirect', time.monotonic() - start_time)
                logger.warning(str(e))
                raise FetchFailed(url, str(e))
            except asyncio.TimeoutError:
                record_fetch('timeout', time.monotonic() - start_time)
                last_error = FetchFailed(url, "Timeout", retryable=True)
            except aiohttp.ClientError as e:
                record_fetch('connection_error', time.monotonic() - start_time)
                last_error = FetchFailed(url, f"Connection error: {e}", retryable=True)

            if attempt < self.max_attempts - 1:
                delay = self._calculate_retry_delay(attempt)
                logger.warning(f"{last_error.reason} fetching {url}, retrying in {delay:.1f}s "
                               f"(attempt {attempt + 1}/{self.max_attempts})")
                await asyncio.sleep(delay)

        logger.warning(f"Giving up on {url} after {self.max_attempts} attempts: {last_error.reason}")
        raise last_error
