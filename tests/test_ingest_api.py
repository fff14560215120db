"""Tests for the ingest API."""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from pipelines.security import SSRFError
from server.ingest_api import app, get_queue
from server.jobs import InMemoryJobQueue


@pytest.fixture
def queue():
    return InMemoryJobQueue()


@pytest.fixture
def client(queue):
    app.dependency_overrides[get_queue] = lambda: queue
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def seed_crawl():
    with patch('server.ingest_api.seed_crawl', new_callable=AsyncMock) as mock_seed:
        mock_seed.return_value = {'method': 'fallback', 'discovered': 0, 'enqueued': 1}
        yield mock_seed


@pytest.fixture
def ssrf_check():
    with patch('server.ingest_api.check_url_ssrf') as mock_check:
        yield mock_check


def ingest_body(**overrides):
    body = {
        'knowledgeBaseId': 'kb-1',
        'requesterId': 'user-1',
        'seedUrl': 'https://Example.com/docs/?utm_source=x',
        'maxDepth': 2,
    }
    body.update(overrides)
    return body


class TestIngestEndpoint:

    def test_accepts_and_seeds_in_background(self, client, queue, seed_crawl, ssrf_check):
        response = client.post("/ingest", json=ingest_body())

        assert response.status_code == 202
        assert response.json() == {
            'accepted': True,
            'knowledgeBaseId': 'kb-1',
            'seedUrl': 'https://example.com/docs',
            'maxDepth': 2,
        }
        ssrf_check.assert_called_once_with('https://example.com/docs')
        seed_crawl.assert_awaited_once_with(queue, 'kb-1', 'user-1', 'https://example.com/docs', 2)

    def test_max_depth_defaults_to_two(self, client, seed_crawl, ssrf_check):
        body = ingest_body()
        del body['maxDepth']
        response = client.post("/ingest", json=body)
        assert response.status_code == 202
        assert response.json()['maxDepth'] == 2

    @pytest.mark.parametrize("depth", [-1, 6])
    def test_depth_out_of_range_rejected(self, client, seed_crawl, ssrf_check, depth):
        response = client.post("/ingest", json=ingest_body(maxDepth=depth))
        assert response.status_code == 422
        seed_crawl.assert_not_called()

    def test_missing_fields_rejected(self, client, seed_crawl, ssrf_check):
        response = client.post("/ingest", json={'seedUrl': 'https://example.com'})
        assert response.status_code == 422

    @pytest.mark.parametrize("seed", ["not a url", "ftp://example.com/", "/relative/path"])
    def test_unusable_seed_rejected(self, client, seed_crawl, ssrf_check, seed):
        response = client.post("/ingest", json=ingest_body(seedUrl=seed))
        assert response.status_code == 400
        seed_crawl.assert_not_called()

    def test_private_network_seed_rejected(self, client, seed_crawl, ssrf_check):
        ssrf_check.side_effect = SSRFError("Private IP address '10.0.0.1' is blocked.")
        response = client.post("/ingest", json=ingest_body(seedUrl="http://10.0.0.1/"))

        assert response.status_code == 400
        assert "10.0.0.1" in response.json()['detail']
        seed_crawl.assert_not_called()

    def test_seeding_failure_does_not_affect_response(self, client, seed_crawl, ssrf_check):
        seed_crawl.side_effect = RuntimeError("redis down")
        response = client.post("/ingest", json=ingest_body())
        assert response.status_code == 202

    def test_queue_unavailable(self, seed_crawl, ssrf_check):
        app.dependency_overrides.clear()
        response = TestClient(app).post("/ingest", json=ingest_body())
        assert response.status_code == 503


class TestOperationalEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_metrics_exposed(self, client):
        client.get("/health")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "kbcrawl_http_requests_total" in response.text
