"""Tests for the page fetcher retry and validation behavior."""

import asyncio
import socket
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest
import pytest_asyncio
from aioresponses import aioresponses

from config.crawler_config import CrawlerConfig
from pipelines.fetcher import FetchFailed, FetchedPage, PageFetcher

URL = "https://example.com/docs/page"
HTML = "<html><body><p>Hello from the docs.</p></body></html>"


@pytest.fixture
def fetcher_config(tmp_path):
    return CrawlerConfig(config_path=str(tmp_path / "missing.yaml"))


@pytest_asyncio.fixture
async def fetcher(fetcher_config):
    async with PageFetcher(fetcher_config) as page_fetcher:
        yield page_fetcher


@pytest.fixture
def no_sleep():
    with patch('pipelines.fetcher.asyncio.sleep', new_callable=AsyncMock) as sleep:
        yield sleep


class TestPageFetcher:

    @pytest.mark.asyncio
    async def test_returns_html_body(self, fetcher):
        with aioresponses() as m:
            m.get(URL, status=200, body=HTML, content_type='text/html')
            assert (await fetcher.fetch(URL)).html == HTML

    @pytest.mark.asyncio
    async def test_retries_server_errors_with_backoff(self, fetcher, no_sleep):
        with aioresponses() as m:
            m.get(URL, status=503)
            m.get(URL, status=502)
            m.get(URL, status=200, body=HTML, content_type='text/html')
            assert (await fetcher.fetch(URL)).html == HTML

        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self, fetcher, no_sleep):
        with aioresponses() as m:
            for _ in range(3):
                m.get(URL, status=500)
            with pytest.raises(FetchFailed) as exc_info:
                await fetcher.fetch(URL)

        assert exc_info.value.status == 500
        assert exc_info.value.retryable is True
        assert no_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self, fetcher, no_sleep):
        with aioresponses() as m:
            m.get(URL, exception=aiohttp.ClientConnectionError("reset"))
            m.get(URL, exception=asyncio.TimeoutError())
            m.get(URL, status=200, body=HTML, content_type='text/html')
            assert (await fetcher.fetch(URL)).html == HTML

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [404, 403, 429])
    async def test_client_errors_fail_immediately(self, fetcher, no_sleep, status):
        with aioresponses() as m:
            m.get(URL, status=status)
            with pytest.raises(FetchFailed) as exc_info:
                await fetcher.fetch(URL)

        assert exc_info.value.status == status
        assert exc_info.value.retryable is False
        no_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_html_content_type_rejected(self, fetcher, no_sleep):
        with aioresponses() as m:
            m.get(URL, status=200, body='{"a": 1}', content_type='application/json')
            with pytest.raises(FetchFailed, match="Non-HTML"):
                await fetcher.fetch(URL)
        no_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_body_rejected(self, fetcher):
        with aioresponses() as m:
            m.get(URL, status=200, body="   ", content_type='text/html')
            with pytest.raises(FetchFailed, match="Empty body"):
                await fetcher.fetch(URL)

    @pytest.mark.asyncio
    async def test_oversized_body_rejected(self, tmp_path):
        config = CrawlerConfig(config_path=str(tmp_path / "missing.yaml"),
                               overrides={'fetch': {'max_bytes': 64}})
        async with PageFetcher(config) as small_fetcher:
            with aioresponses() as m:
                m.get(URL, status=200, body="<p>" + "x" * 200 + "</p>", content_type='text/html')
                with pytest.raises(FetchFailed, match="exceeds"):
                    await small_fetcher.fetch(URL)

    def test_backoff_is_capped(self, fetcher_config):
        page_fetcher = PageFetcher(fetcher_config)
        assert [page_fetcher._calculate_retry_delay(a) for a in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


class TestRedirects:

    @pytest.mark.asyncio
    async def test_returns_url_the_page_was_served_from(self, fetcher):
        with aioresponses() as m:
            m.get("https://example.com/docs", status=301, headers={'Location': '/docs/'})
            m.get("https://example.com/docs/", status=200, body=HTML, content_type='text/html')
            page = await fetcher.fetch("https://example.com/docs")

        assert page == FetchedPage(url="https://example.com/docs/", html=HTML)

    @pytest.mark.asyncio
    async def test_redirect_to_metadata_service_is_refused(self, fetcher, no_sleep):
        with aioresponses() as m:
            m.get(URL, status=302, headers={'Location': 'http://169.254.169.254/latest/meta-data/'})
            with pytest.raises(FetchFailed, match="blocked") as exc_info:
                await fetcher.fetch(URL)

        assert exc_info.value.retryable is False
        no_sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_redirect_to_host_resolving_privately_is_refused(self, fetcher):
        private = [(socket.AF_INET, socket.SOCK_STREAM, 6, '', ('10.0.0.5', 0))]
        with patch('pipelines.security.socket.getaddrinfo', return_value=private):
            with aioresponses() as m:
                m.get(URL, status=307, headers={'Location': 'https://intranet.example.net/'})
                with pytest.raises(FetchFailed, match="private"):
                    await fetcher.fetch(URL)

    @pytest.mark.asyncio
    async def test_public_cross_origin_redirect_is_followed(self, fetcher):
        public = [(socket.AF_INET, socket.SOCK_STREAM, 6, '', ('93.184.216.34', 0))]
        with patch('pipelines.security.socket.getaddrinfo', return_value=public):
            with aioresponses() as m:
                m.get(URL, status=301, headers={'Location': 'https://www.example.com/docs/page'})
                m.get("https://www.example.com/docs/page", status=200, body=HTML, content_type='text/html')
                page = await fetcher.fetch(URL)

        assert page.url == "https://www.example.com/docs/page"

    @pytest.mark.asyncio
    async def test_redirect_loop_gives_up(self, fetcher, no_sleep):
        with aioresponses() as m:
            m.get(URL, status=302, headers={'Location': URL}, repeat=True)
            with pytest.raises(FetchFailed, match="More than 5 redirects"):
                await fetcher.fetch(URL)
        no_sleep.assert_not_called()
