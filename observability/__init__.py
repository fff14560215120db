"""Observability package for KBCrawl."""

from .logging import setup_logging, setup_logging_from_env, get_job_logger, log_duration
from .metrics import (
    setup_prometheus_metrics,
    metrics_payload,
    record_crawl_outcome,
    record_fetch,
    record_robots_fetch,
    record_extraction,
    record_document_write,
    record_published,
    record_error,
    PrometheusMiddleware,
    kbcrawl_registry
)

__all__ = [
    'setup_logging',
    'setup_logging_from_env',
    'get_job_logger',
    'log_duration',
    'setup_prometheus_metrics',
    'metrics_payload',
    'record_crawl_outcome',
    'record_fetch',
    'record_robots_fetch',
    'record_extraction',
    'record_document_write',
    'record_published',
    'record_error',
    'PrometheusMiddleware',
    'kbcrawl_registry'
]
