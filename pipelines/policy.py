"""Crawl politeness: robots.txt compliance and per-origin request pacing."""

import asyncio
import logging
import time
import urllib.robotparser
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, Optional

import aiohttp

from config.crawler_config import CrawlerConfig, crawler_config
from observability.metrics import record_robots_fetch
from .security import UnsafeRedirect, guarded_get
from .urls import url_origin

logger = logging.getLogger(__name__)


@dataclass
class RobotsCacheEntry:
    """Cache entry for a parsed robots.txt."""
    origin: str
    parser: urllib.robotparser.RobotFileParser
    fetched_at: float
    ttl_seconds: float = 15 * 60

    def is_expired(self, now: float) -> bool:
        """Check if the cache entry has expired."""
        return now - self.fetched_at >= self.ttl_seconds


@dataclass
class DomainRateState:
    """Concurrency and spacing state for one origin."""
    origin: str
    semaphore: asyncio.Semaphore
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_request_at: Optional[float] = None
    active: int = 0

    def is_idle(self, now: float, idle_seconds: float) -> bool:
        if self.active or self.lock.locked():
            return False
        return self.last_request_at is None or now - self.last_request_at >= idle_seconds


def _allow_all_parser(robots_url: str) -> urllib.robotparser.RobotFileParser:
    parser = urllib.robotparser.RobotFileParser(robots_url)
    parser.allow_all = True
    return parser


class PolitenessGatekeeper:
    """Decides whether a URL may be fetched and paces requests per origin.

    State is process-local: robots.txt rules are cached per origin with a TTL,
    and each origin gets its own semaphore and minimum spacing between
    request starts. Expired robots entries and origins idle for
    ``idle_seconds`` are swept out at most once per ``sweep_interval``.
    """

    def __init__(self, config: Optional[CrawlerConfig] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 clock: Callable[[], float] = time.monotonic,
                 idle_seconds: float = 600.0, sweep_interval: float = 60.0):
        config = config or crawler_config
        self.user_agent = config.get_user_agent()

        robots = config.get_robots_settings()
        self.robots_ttl = float(robots['ttl_minutes']) * 60
        self.robots_timeout = float(robots['timeout'])
        self.max_redirects = config.get_fetch_settings()['max_redirects']

        politeness = config.get_politeness_settings()
        self.max_concurrent = politeness['max_concurrent']
        self.min_interval = politeness['min_interval']
        self.max_crawl_delay = politeness['max_crawl_delay']

        self._session = session
        self._clock = clock
        self.robots_cache: Dict[str, RobotsCacheEntry] = {}
        self._robots_locks: Dict[str, asyncio.Lock] = {}
        self._rate_states: Dict[str, DomainRateState] = {}
        self.idle_seconds = idle_seconds
        self.sweep_interval = sweep_interval
        self._last_sweep = clock()

    def evict_stale(self) -> int:
        """Drop expired robots entries and idle origin state. Returns the number of origins dropped."""
        now = self._clock()
        self._last_sweep = now
        dropped = set()

        for origin, entry in list(self.robots_cache.items()):
            if entry.is_expired(now):
                del self.robots_cache[origin]
                dropped.add(origin)

        for origin, lock in list(self._robots_locks.items()):
            if origin not in self.robots_cache and not lock.locked():
                del self._robots_locks[origin]

        for origin, state in list(self._rate_states.items()):
            if state.is_idle(now, self.idle_seconds):
                del self._rate_states[origin]
                dropped.add(origin)

        if dropped:
            logger.debug(f"Evicted politeness state for {len(dropped)} origins")
        return len(dropped)

    def _maybe_sweep(self):
        if self._clock() - self._last_sweep >= self.sweep_interval:
            self.evict_stale()

    def get_robots_txt_url(self, origin: str) -> str:
        return f"{origin}/robots.txt"

    @asynccontextmanager
    async def _session_scope(self) -> AsyncIterator[aiohttp.ClientSession]:
        if self._session is not None:
            yield self._session
            return
        async with aiohttp.ClientSession(headers={'User-Agent': self.user_agent}) as session:
            yield session

    async def fetch_robots_txt(self, origin: str) -> urllib.robotparser.RobotFileParser:
        """Return the robots.txt parser for an origin, fetching it when not cached.

        Non-2xx responses are cached as an empty rule set. Network failures
        return an allow-all parser that is not cached, so the next job retries.
        """
        self._maybe_sweep()
        entry = self.robots_cache.get(origin)
        if entry and not entry.is_expired(self._clock()):
            return entry.parser

        lock = self._robots_locks.setdefault(origin, asyncio.Lock())
        async with lock:
            # Another task may have filled the cache while we waited
            entry = self.robots_cache.get(origin)
            if entry and not entry.is_expired(self._clock()):
                return entry.parser

            robots_url = self.get_robots_txt_url(origin)
            timeout = aiohttp.ClientTimeout(total=self.robots_timeout)
            try:
                async with self._session_scope() as session:
                    async with guarded_get(session, robots_url, max_redirects=self.max_redirects,
                                           timeout=timeout,
                                           headers={'User-Agent': self.user_agent}) as (response, _):
                        if 200 <= response.status < 300:
                            body = await response.text(errors='replace')
                            record_robots_fetch('ok')
                        else:
                            logger.info(f"No usable robots.txt for {origin} (HTTP {response.status}), allowing all")
                            body = ''
                            record_robots_fetch('missing')
            except UnsafeRedirect as e:
                logger.warning(f"Ignoring robots.txt for {origin}: {e}")
                body = ''
                record_robots_fetch('blocked_redirect')
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Failed to fetch robots.txt from {robots_url}: {e}. Allowing crawl")
                record_robots_fetch('error')
                return _allow_all_parser(robots_url)

            parser = urllib.robotparser.RobotFileParser(robots_url)
            parser.parse(body.splitlines())
            self.robots_cache[origin] = RobotsCacheEntry(
                origin=origin,
                parser=parser,
                fetched_at=self._clock(),
                ttl_seconds=self.robots_ttl
            )
            logger.debug(f"Cached robots.txt for {origin}")
            return parser

    async def is_allowed(self, url: str) -> bool:
        """Check robots.txt rules for a URL under our user agent."""
        origin = url_origin(url)
        if origin is None:
            return False

        parser = await self.fetch_robots_txt(origin)
        allowed = parser.can_fetch(self.user_agent, url)
        if not allowed:
            logger.info(f"Disallowed by robots.txt for user-agent '{self.user_agent}': {url}")
        return allowed

    def crawl_delay(self, origin: str) -> float:
        """Declared Crawl-delay for our user agent, or 0 when none is cached."""
        entry = self.robots_cache.get(origin)
        if entry is None:
            return 0.0
        delay = entry.parser.crawl_delay(self.user_agent)
        if delay is None:
            return 0.0
        return min(float(delay), self.max_crawl_delay)

    def _get_rate_state(self, origin: str) -> DomainRateState:
        state = self._rate_states.get(origin)
        if state is None:
            state = DomainRateState(origin=origin, semaphore=asyncio.Semaphore(self.max_concurrent))
            self._rate_states[origin] = state
        return state

    @asynccontextmanager
    async def acquire_slot(self, origin: str) -> AsyncIterator[None]:
        """Hold one of the origin's request slots for the duration of a fetch."""
        self._maybe_sweep()
        state = self._get_rate_state(origin)
        spacing = max(self.min_interval, self.crawl_delay(origin))

        state.active += 1
        try:
            async with state.semaphore:
                async with state.lock:
                    if state.last_request_at is not None:
                        wait = state.last_request_at + spacing - self._clock()
                        if wait > 0:
                            logger.debug(f"Rate limiting {origin}: sleeping {wait:.2f}s")
                            await asyncio.sleep(wait)
                    state.last_request_at = self._clock()
                try:
                    yield
                finally:
                    state.last_request_at = self._clock()
        finally:
            state.active -= 1


# Process-wide gatekeeper shared by crawl jobs in one worker
gatekeeper = PolitenessGatekeeper()
