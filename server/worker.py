"""Crawl worker process.

Builds the crawl pipeline from configuration, registers it on a queue worker
and polls until interrupted.

    python -m server.worker
"""

import asyncio
import logging
import signal
from typing import Optional

from config.crawler_config import CrawlerConfig, crawler_config
from config.database import DatabaseConfig, create_db_engine
from indexer.document_store import DocumentStore, DocumentWriter
from observability.logging import setup_logging_from_env
from pipelines.fetcher import PageFetcher
from pipelines.policy import PolitenessGatekeeper
from .job_handlers import CrawlPipeline, configure_pipeline
from .jobs import JobQueue, QueueWorker, RedisJobQueue, register_default_handlers

logger = logging.getLogger(__name__)


def build_pipeline(queue: JobQueue, store: DocumentStore,
                   config: Optional[CrawlerConfig] = None) -> CrawlPipeline:
    """Wire a crawl pipeline with one gatekeeper and fetcher for this process."""
    config = config or crawler_config
    return CrawlPipeline(
        queue=queue,
        writer=DocumentWriter(store, config),
        fetcher=PageFetcher(config),
        gatekeeper=PolitenessGatekeeper(config),
        config=config
    )


async def run_worker(config: Optional[CrawlerConfig] = None,
                     db_config: Optional[DatabaseConfig] = None,
                     stop_event: Optional[asyncio.Event] = None):
    """Run the queue worker until ``stop_event`` is set."""
    config = config or crawler_config
    stop_event = stop_event or asyncio.Event()

    store = DocumentStore(create_db_engine(db_config))
    store.init_schema()

    queue = RedisJobQueue.from_config(config)
    await queue.ping()
    logger.info(f"Connected to Redis at {queue.redis_url}")

    pipeline = build_pipeline(queue, store, config)
    configure_pipeline(pipeline)

    worker = QueueWorker(queue, config)
    register_default_handlers(worker)
    worker.start()

    try:
        await stop_event.wait()
    finally:
        worker.shutdown()
        configure_pipeline(None)
        await pipeline.fetcher.close()
        await queue.close()
        store.engine.dispose()


def main():
    setup_logging_from_env("kbcrawl-worker")

    async def _run():
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows event loops don't support signal handlers
                pass
        await run_worker(stop_event=stop_event)

    asyncio.run(_run())


if __name__ == "__main__":
    main()
