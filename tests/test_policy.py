"""Tests for robots.txt compliance and per-origin pacing."""

import asyncio
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest
from aioresponses import aioresponses

from config.crawler_config import CrawlerConfig
from pipelines.policy import PolitenessGatekeeper, RobotsCacheEntry

ORIGIN = "https://example.com"
ROBOTS_URL = f"{ORIGIN}/robots.txt"

ROBOTS_TXT = """
User-agent: *
Disallow: /private
Crawl-delay: 3

User-agent: BadBot
Disallow: /
"""


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gatekeeper(test_config, clock):
    return PolitenessGatekeeper(test_config, clock=clock)


class TestRobotsCompliance:

    @pytest.mark.asyncio
    async def test_disallowed_path_is_blocked(self, gatekeeper):
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=200, body=ROBOTS_TXT)
            assert await gatekeeper.is_allowed(f"{ORIGIN}/docs/intro") is True
            assert await gatekeeper.is_allowed(f"{ORIGIN}/private/area") is False

    @pytest.mark.asyncio
    async def test_robots_404_allows_everything(self, gatekeeper):
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=404)
            assert await gatekeeper.is_allowed(f"{ORIGIN}/anything") is True

        # Missing robots.txt is cached like an empty file
        assert ORIGIN in gatekeeper.robots_cache

    @pytest.mark.asyncio
    async def test_fetch_failure_fails_open_without_caching(self, gatekeeper):
        with aioresponses() as m:
            m.get(ROBOTS_URL, exception=aiohttp.ClientConnectionError("refused"))
            assert await gatekeeper.is_allowed(f"{ORIGIN}/private/area") is True

        assert ORIGIN not in gatekeeper.robots_cache

    @pytest.mark.asyncio
    async def test_timeout_fails_open(self, gatekeeper):
        with aioresponses() as m:
            m.get(ROBOTS_URL, exception=asyncio.TimeoutError())
            assert await gatekeeper.is_allowed(f"{ORIGIN}/page") is True

    @pytest.mark.asyncio
    async def test_robots_cached_within_ttl(self, gatekeeper, clock):
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=200, body=ROBOTS_TXT)
            await gatekeeper.is_allowed(f"{ORIGIN}/a")
            clock.now += 60
            # A second fetch would fail: no mock registered for it
            assert await gatekeeper.is_allowed(f"{ORIGIN}/private/x") is False

    @pytest.mark.asyncio
    async def test_robots_refetched_after_ttl(self, gatekeeper, clock):
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=200, body=ROBOTS_TXT)
            m.get(ROBOTS_URL, status=200, body="User-agent: *\nDisallow:\n")
            assert await gatekeeper.is_allowed(f"{ORIGIN}/private/x") is False
            clock.now += 15 * 60
            assert await gatekeeper.is_allowed(f"{ORIGIN}/private/x") is True

    @pytest.mark.asyncio
    async def test_robots_redirect_to_internal_host_is_not_followed(self, gatekeeper):
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=302, headers={'Location': 'http://127.0.0.1:8080/robots.txt'})
            assert await gatekeeper.is_allowed(f"{ORIGIN}/private/area") is True

        # Treated like a missing robots.txt
        assert ORIGIN in gatekeeper.robots_cache

    @pytest.mark.asyncio
    async def test_robots_redirect_within_origin_is_followed(self, gatekeeper):
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=301, headers={'Location': '/static/robots.txt'})
            m.get(f"{ORIGIN}/static/robots.txt", status=200, body=ROBOTS_TXT)
            assert await gatekeeper.is_allowed(f"{ORIGIN}/private/area") is False

    @pytest.mark.asyncio
    async def test_invalid_url_not_allowed(self, gatekeeper):
        assert await gatekeeper.is_allowed("mailto:someone@example.com") is False

    def test_cache_entry_expiry(self):
        entry = RobotsCacheEntry(origin=ORIGIN, parser=None, fetched_at=100.0, ttl_seconds=900)
        assert not entry.is_expired(999.0)
        assert entry.is_expired(1000.0)


class TestCrawlDelay:

    @pytest.mark.asyncio
    async def test_declared_crawl_delay(self, gatekeeper):
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=200, body=ROBOTS_TXT)
            await gatekeeper.is_allowed(f"{ORIGIN}/docs")
        assert gatekeeper.crawl_delay(ORIGIN) == 3.0

    def test_no_robots_cached_means_no_delay(self, gatekeeper):
        assert gatekeeper.crawl_delay(ORIGIN) == 0.0

    @pytest.mark.asyncio
    async def test_crawl_delay_is_capped(self, tmp_path, clock):
        config = CrawlerConfig(config_path=str(tmp_path / "missing.yaml"),
                               overrides={'politeness': {'max_crawl_delay': 10}})
        gatekeeper = PolitenessGatekeeper(config, clock=clock)
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=200, body="User-agent: *\nCrawl-delay: 120\n")
            await gatekeeper.is_allowed(f"{ORIGIN}/docs")
        assert gatekeeper.crawl_delay(ORIGIN) == 10.0


class TestRequestPacing:

    @pytest.fixture
    def paced(self, tmp_path, clock):
        config = CrawlerConfig(config_path=str(tmp_path / "missing.yaml"),
                               overrides={'politeness': {'min_interval': 1.0}})
        return PolitenessGatekeeper(config, clock=clock)

    @pytest.mark.asyncio
    async def test_first_request_does_not_wait(self, paced):
        with patch('pipelines.policy.asyncio.sleep', new_callable=AsyncMock) as sleep:
            async with paced.acquire_slot(ORIGIN):
                pass
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_back_to_back_requests_are_spaced(self, paced, clock):
        with patch('pipelines.policy.asyncio.sleep', new_callable=AsyncMock) as sleep:
            async with paced.acquire_slot(ORIGIN):
                clock.now += 0.25
            async with paced.acquire_slot(ORIGIN):
                pass
        sleep.assert_awaited_once()
        assert sleep.await_args.args[0] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_crawl_delay_overrides_min_interval(self, paced, clock):
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=200, body=ROBOTS_TXT)
            await paced.is_allowed(f"{ORIGIN}/docs")

        with patch('pipelines.policy.asyncio.sleep', new_callable=AsyncMock) as sleep:
            async with paced.acquire_slot(ORIGIN):
                pass
            async with paced.acquire_slot(ORIGIN):
                pass
        assert sleep.await_args.args[0] == pytest.approx(3.0)

    @pytest.mark.asyncio
    async def test_origins_are_paced_independently(self, paced):
        with patch('pipelines.policy.asyncio.sleep', new_callable=AsyncMock) as sleep:
            async with paced.acquire_slot(ORIGIN):
                pass
            async with paced.acquire_slot("https://other.example.org"):
                pass
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrency_capped_per_origin(self, gatekeeper):
        in_flight = 0
        peak = 0

        async def fetch():
            nonlocal in_flight, peak
            async with gatekeeper.acquire_slot(ORIGIN):
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1

        await asyncio.gather(*(fetch() for _ in range(6)))
        assert peak == 2


class TestStateEviction:

    @pytest.mark.asyncio
    async def test_expired_robots_and_idle_origins_are_dropped(self, gatekeeper, clock):
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=200, body=ROBOTS_TXT)
            await gatekeeper.is_allowed(f"{ORIGIN}/docs")
        async with gatekeeper.acquire_slot(ORIGIN):
            pass

        clock.now += 15 * 60
        assert gatekeeper.evict_stale() == 1
        assert gatekeeper.robots_cache == {}
        assert gatekeeper._robots_locks == {}
        assert gatekeeper._rate_states == {}

    @pytest.mark.asyncio
    async def test_fresh_state_is_kept(self, gatekeeper, clock):
        with aioresponses() as m:
            m.get(ROBOTS_URL, status=200, body=ROBOTS_TXT)
            await gatekeeper.is_allowed(f"{ORIGIN}/docs")
        async with gatekeeper.acquire_slot(ORIGIN):
            pass

        clock.now += 60
        assert gatekeeper.evict_stale() == 0
        assert ORIGIN in gatekeeper.robots_cache
        assert ORIGIN in gatekeeper._rate_states

    @pytest.mark.asyncio
    async def test_origin_with_request_in_progress_is_kept(self, gatekeeper, clock):
        async with gatekeeper.acquire_slot(ORIGIN):
            clock.now += 3600
            gatekeeper.evict_stale()
            assert ORIGIN in gatekeeper._rate_states

    @pytest.mark.asyncio
    async def test_sweep_runs_during_normal_use(self, gatekeeper, clock):
        async with gatekeeper.acquire_slot("https://old.example.org"):
            pass

        clock.now += 3600
        async with gatekeeper.acquire_slot(ORIGIN):
            pass

        assert list(gatekeeper._rate_states) == [ORIGIN]
