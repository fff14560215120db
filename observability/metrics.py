"""Prometheus metrics for the KBCrawl pipeline and ingress API."""

import logging
import os
import re
import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, Info, generate_latest
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)

# Custom registry so tests and multiple apps don't collide with the default one
kbcrawl_registry = CollectorRegistry()

# Crawl metrics
crawl_jobs = Counter(
    'kbcrawl_crawl_jobs_total',
    'Crawl job invocations by outcome',
    ['outcome'],
    registry=kbcrawl_registry
)

crawl_job_duration = Histogram(
    'kbcrawl_crawl_job_duration_seconds',
    'Crawl job duration in seconds',
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=kbcrawl_registry
)

fetch_attempts = Counter(
    'kbcrawl_fetch_attempts_total',
    'Page fetch attempts by result',
    ['result'],
    registry=kbcrawl_registry
)

fetch_duration = Histogram(
    'kbcrawl_fetch_duration_seconds',
    'Page fetch duration in seconds',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=kbcrawl_registry
)

robots_fetches = Counter(
    'kbcrawl_robots_fetches_total',
    'robots.txt fetches by result',
    ['result'],
    registry=kbcrawl_registry
)

extraction_results = Counter(
    'kbcrawl_extraction_results_total',
    'Content extraction results by method',
    ['method'],
    registry=kbcrawl_registry
)

document_writes = Counter(
    'kbcrawl_document_writes_total',
    'Document store writes by action',
    ['action'],
    registry=kbcrawl_registry
)

published_messages = Counter(
    'kbcrawl_published_messages_total',
    'Queue messages published by topic',
    ['topic'],
    registry=kbcrawl_registry
)

# HTTP metrics
request_count = Counter(
    'kbcrawl_http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=kbcrawl_registry
)

request_duration = Histogram(
    'kbcrawl_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
    registry=kbcrawl_registry
)

error_count = Counter(
    'kbcrawl_errors_total',
    'Total number of errors',
    ['error_type', 'component'],
    registry=kbcrawl_registry
)

app_info = Info(
    'kbcrawl_app',
    'KBCrawl application information',
    registry=kbcrawl_registry
)


class PrometheusMiddleware:
    """ASGI middleware recording request counts and durations."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        method = request.method
        endpoint = self._normalize_endpoint(request.url.path)
        start_time = time.time()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as e:
            logger.error(f"Request processing error: {e}")
            error_count.labels(error_type=type(e).__name__, component="http").inc()
            raise
        finally:
            request_count.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
            request_duration.labels(method=method, endpoint=endpoint).observe(time.time() - start_time)

    def _normalize_endpoint(self, path: str) -> str:
        """Collapse ids in paths to keep label cardinality bounded."""
        path = re.sub(r'/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}', '/{uuid}', path)
        return re.sub(r'/\d+', '/{id}', path)


def metrics_payload() -> bytes:
    """Render the registry in Prometheus text format."""
    return generate_latest(kbcrawl_registry)


def setup_prometheus_metrics(app: FastAPI) -> None:
    """Attach the metrics middleware and /metrics endpoint to an app."""
    app.add_middleware(PrometheusMiddleware)

    @app.get("/metrics")
    async def metrics_endpoint():
        return Response(content=metrics_payload(), media_type=CONTENT_TYPE_LATEST)

    app_info.info({
        'version': os.getenv('APP_VERSION', 'unknown'),
        'environment': os.getenv('ENVIRONMENT', 'development')
    })

    logger.info("Prometheus metrics configured")


def record_crawl_outcome(outcome: str, duration: Optional[float] = None) -> None:
    """Record a crawl job outcome (created, updated, unchanged, blocked, ...)."""
    crawl_jobs.labels(outcome=outcome).inc()
    if duration is not None:
        crawl_job_duration.observe(duration)


def record_fetch(result: str, duration: Optional[float] = None) -> None:
    """Record a single fetch attempt."""
    fetch_attempts.labels(result=result).inc()
    if duration is not None:
        fetch_duration.observe(duration)


def record_robots_fetch(result: str) -> None:
    robots_fetches.labels(result=result).inc()


def record_extraction(method: str) -> None:
    extraction_results.labels(method=method).inc()


def record_document_write(action: str) -> None:
    document_writes.labels(action=action).inc()


def record_published(topic: str) -> None:
    published_messages.labels(topic=topic).inc()


def record_error(error_type: str, component: str) -> None:
    error_count.labels(error_type=error_type, component=component).inc()
