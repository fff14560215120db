"""Crawl job handlers.

A crawl job processes exactly one page: policy check, fetch, extract, store,
hand off to embedding, then enqueue same-origin children with one less depth.
Recursion happens only through the queue.
"""

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from config.crawler_config import CrawlerConfig, crawler_config
from indexer.document_store import ACTION_CREATED, ACTION_UPDATED, DocumentWriter
from observability.logging import get_job_logger
from observability.metrics import record_crawl_outcome
from pipelines.extractor import Extractor, extract_content
from pipelines.fetcher import FetchFailed, PageFetcher
from pipelines.links import discover_links
from pipelines.policy import PolitenessGatekeeper, gatekeeper as default_gatekeeper
from pipelines.sitemap import SitemapDiscovery
from pipelines.urls import canonicalize_url, url_origin
from .jobs import TOPIC_CRAWL, TOPIC_EMBED, JobQueue

logger = logging.getLogger(__name__)


@dataclass
class CrawlJob:
    """One page to crawl within a knowledge base."""
    knowledge_base_id: str
    target_url: str
    requester_id: str
    depth: int = 0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'CrawlJob':
        """Build a job from its wire form.

        Raises:
            ValueError: if required fields are missing or depth is not a non-negative integer
        """
        missing = [key for key in ('knowledgeBaseId', 'targetUrl', 'requesterId') if not payload.get(key)]
        if missing:
            raise ValueError(f"Crawl job missing fields: {', '.join(missing)}")

        try:
            depth = int(payload.get('depth', 0))
        except (TypeError, ValueError):
            raise ValueError(f"Invalid crawl depth: {payload.get('depth')!r}")
        if depth < 0:
            raise ValueError(f"Invalid crawl depth: {depth}")

        return cls(
            knowledge_base_id=str(payload['knowledgeBaseId']),
            target_url=str(payload['targetUrl']),
            requester_id=str(payload['requesterId']),
            depth=depth
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            'knowledgeBaseId': self.knowledge_base_id,
            'targetUrl': self.target_url,
            'requesterId': self.requester_id,
            'depth': self.depth
        }


def document_embedding_payload(knowledge_base_id: str, document_id: str, requester_id: str) -> Dict[str, Any]:
    return {'knowledgeBaseId': knowledge_base_id, 'documentId': document_id, 'requesterId': requester_id}


def url_embedding_payload(knowledge_base_id: str, web_url: str, requester_id: str) -> Dict[str, Any]:
    return {'knowledgeBaseId': knowledge_base_id, 'webUrl': web_url, 'requesterId': requester_id}


class CrawlPipeline:
    """Runs a single crawl job end to end."""

    def __init__(self, queue: JobQueue, writer: DocumentWriter,
                 fetcher: Optional[PageFetcher] = None,
                 gatekeeper: Optional[PolitenessGatekeeper] = None,
                 config: Optional[CrawlerConfig] = None,
                 extractors: Optional[Sequence[Extractor]] = None):
        config = config or crawler_config
        self.queue = queue
        self.writer = writer
        self.fetcher = fetcher or PageFetcher(config)
        self.gatekeeper = gatekeeper or default_gatekeeper
        self.extractors = extractors
        self.extraction_settings = config.get_extraction_settings()
        self.max_links = config.get_max_links_per_page()
        self.max_query_length = config.get_max_query_length()
        self.child_delay_step = float(config.get('links.child_delay_step', 1))
        self.embedding_delay = float(config.get('queue.embedding_delay', 5))

    async def _enqueue_children(self, job: CrawlJob, links: List[str]) -> int:
        for index, link in enumerate(links):
            child = CrawlJob(
                knowledge_base_id=job.knowledge_base_id,
                target_url=link,
                requester_id=job.requester_id,
                depth=job.depth - 1
            )
            await self.queue.publish(TOPIC_CRAWL, child.to_payload(),
                                     delay_seconds=(index // 10) * self.child_delay_step)
        return len(links)

    async def handle(self, job: CrawlJob, job_id: Optional[str] = None) -> Dict[str, Any]:
        """Crawl one page and return an outcome summary."""
        started = time.monotonic()
        log = get_job_logger(__name__, job_id or '-', knowledge_base_id=job.knowledge_base_id)

        canonical = canonicalize_url(job.target_url)
        if canonical is None:
            log.warning(f"Job {job_id}: Invalid target URL {job.target_url!r}")
            record_crawl_outcome('invalid_url')
            return {'success': False, 'reason': 'invalid_url', 'url': job.target_url}

        origin = url_origin(canonical)
        if not await self.gatekeeper.is_allowed(canonical):
            log.info(f"Job {job_id}: {canonical} blocked by robots.txt")
            record_crawl_outcome('blocked')
            return {'blocked': True, 'url': canonical}

        try:
            async with self.gatekeeper.acquire_slot(origin):
                page = await self.fetcher.fetch(canonical)
        except FetchFailed as e:
            log.warning(f"Job {job_id}: Fetch failed for {canonical}: {e.reason}")
            record_crawl_outcome('fetch_failed', time.monotonic() - started)
            return {'success': False, 'reason': 'fetch_failed', 'url': canonical,
                    'error': e.reason, 'status': e.status}

        loop = asyncio.get_running_loop()
        extraction = await loop.run_in_executor(
            None,
            functools.partial(extract_content, page.html, canonical, self.extractors, self.extraction_settings)
        )
        if extraction is None:
            log.info(f"Job {job_id}: No usable content at {canonical}")
            record_crawl_outcome('no_content', time.monotonic() - started)
            return {'success': False, 'reason': 'no_content', 'url': canonical}

        upsert = await loop.run_in_executor(
            None,
            functools.partial(
                self.writer.upsert,
                job.knowledge_base_id,
                canonical,
                extraction.title,
                extraction.content,
                extraction.word_count,
                original_url=job.target_url
            )
        )

        if upsert.action in (ACTION_CREATED, ACTION_UPDATED):
            await self.queue.publish(
                TOPIC_EMBED,
                document_embedding_payload(job.knowledge_base_id, upsert.document.id, job.requester_id),
                delay_seconds=self.embedding_delay
            )

        enqueued = 0
        if job.depth > 0:
            # Relative links resolve against the served URL; the canonical one may have lost a trailing slash
            links = await loop.run_in_executor(
                None,
                functools.partial(discover_links, page.html, page.url, origin, self.max_query_length)
            )
            links = [link for link in links if link != canonical][:self.max_links]
            enqueued = await self._enqueue_children(job, links)
            log.info(f"Job {job_id}: Enqueued {enqueued} child pages at depth {job.depth - 1}")

        duration = time.monotonic() - started
        record_crawl_outcome(upsert.action, duration)
        log.info(f"Job {job_id}: {upsert.action} document {upsert.document.id} for {canonical} "
                 f"({extraction.word_count} words via {extraction.method}) in {duration:.2f}s")

        return {
            'success': True,
            'url': canonical,
            'documentId': upsert.document.id,
            'action': upsert.action,
            'wordCount': extraction.word_count,
            'method': extraction.method,
            'enqueuedChildren': enqueued
        }


_pipeline: Optional[CrawlPipeline] = None


def configure_pipeline(pipeline: Optional[CrawlPipeline]):
    """Install the pipeline used by queue handlers in this process."""
    global _pipeline
    _pipeline = pipeline


def get_pipeline() -> CrawlPipeline:
    if _pipeline is None:
        raise RuntimeError("Crawl pipeline not configured")
    return _pipeline


async def crawl_page_job(job_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
    """
    Queue handler for the crawl topic.

    Args:
        job_id: Queue message id
        params: CrawlJob wire payload (knowledgeBaseId, targetUrl, requesterId, depth)

    Returns:
        Dict with the crawl outcome
    """
    try:
        job = CrawlJob.from_payload(params)
    except ValueError as e:
        logger.error(f"Job {job_id}: Rejecting malformed crawl job: {e}")
        record_crawl_outcome('invalid_job')
        return {'success': False, 'reason': 'invalid_job', 'error': str(e)}

    logger.info(f"Job {job_id}: Crawling {job.target_url} (depth {job.depth})")
    return await get_pipeline().handle(job, job_id=job_id)


async def _publish_root(queue: JobQueue, knowledge_base_id: str, requester_id: str,
                        seed_url: str, max_depth: int):
    root = CrawlJob(knowledge_base_id, seed_url, requester_id, max_depth)
    await queue.publish(TOPIC_CRAWL, root.to_payload())
    logger.info(f"Seeded {knowledge_base_id} with root job for {seed_url} (depth {max_depth})")


async def seed_crawl(queue: JobQueue, knowledge_base_id: str, requester_id: str, seed_url: str,
                     max_depth: int, discovery: Optional[SitemapDiscovery] = None,
                     config: Optional[CrawlerConfig] = None) -> Dict[str, Any]:
    """Enqueue the initial crawl jobs for a site.

    Sitemap URLs each get a crawl job and a URL-keyed embedding job, published
    in batches with a pause between batches and a delay that grows every batch.
    A failed publish is logged and counted without stopping the run; embedding
    failures never count against crawl jobs. Without a sitemap, or when no
    sitemap crawl job could be published, a single root crawl job is enqueued.
    """
    config = config or crawler_config
    settings = config.get_sitemap_settings()
    batch_size = int(settings['batch_size'])
    batch_pause = float(settings['batch_pause'])
    base_delay = float(settings['base_delay'])
    delay_step = float(settings['delay_step'])

    canonical_seed = canonicalize_url(seed_url)
    if canonical_seed is None:
        raise ValueError(f"Invalid seed URL: {seed_url!r}")

    discovery = discovery or SitemapDiscovery(config)
    urls = await discovery.discover(url_origin(canonical_seed))

    if not urls:
        await _publish_root(queue, knowledge_base_id, requester_id, canonical_seed, max_depth)
        return {'method': 'fallback', 'discovered': 0, 'enqueued': 1}

    enqueued = 0
    crawl_failures = 0
    embedding_failures = 0

    for batch_start in range(0, len(urls), batch_size):
        batch = urls[batch_start:batch_start + batch_size]
        crawl_publishes = []
        embed_publishes = []
        for offset, url in enumerate(batch):
            index = batch_start + offset
            delay = (index // batch_size) * delay_step + base_delay
            job = CrawlJob(knowledge_base_id, url, requester_id, max_depth)
            crawl_publishes.append(queue.publish(TOPIC_CRAWL, job.to_payload(), delay_seconds=delay))
            embed_publishes.append(queue.publish(
                TOPIC_EMBED,
                url_embedding_payload(knowledge_base_id, url, requester_id),
                delay_seconds=delay
            ))

        results = await asyncio.gather(*crawl_publishes, *embed_publishes, return_exceptions=True)
        for url, result in zip(batch, results[:len(batch)]):
            if isinstance(result, Exception):
                crawl_failures += 1
                logger.error(f"Failed to enqueue crawl job for {url}: {result}")
            else:
                enqueued += 1
        for url, result in zip(batch, results[len(batch):]):
            if isinstance(result, Exception):
                embedding_failures += 1
                logger.warning(f"Failed to enqueue embedding job for {url}: {result}")

        if batch_start + batch_size < len(urls) and batch_pause > 0:
            await asyncio.sleep(batch_pause)

    if enqueued == 0:
        logger.warning(f"No sitemap crawl jobs could be enqueued for {knowledge_base_id}, "
                       f"falling back to the root page")
        await _publish_root(queue, knowledge_base_id, requester_id, canonical_seed, max_depth)
        return {'method': 'fallback', 'discovered': len(urls), 'enqueued': 1}

    logger.info(f"Seeded {knowledge_base_id} with {enqueued}/{len(urls)} sitemap URLs "
                f"from {url_origin(canonical_seed)}")
    return {'method': 'sitemap', 'discovered': len(urls), 'enqueued': enqueued,
            'failed': crawl_failures, 'embeddingsFailed': embedding_failures}
