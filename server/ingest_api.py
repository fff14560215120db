"""Ingress API for starting knowledge-base crawls."""

import asyncio
import logging
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from config.crawler_config import crawler_config
from observability.logging import setup_logging_from_env
from observability.metrics import record_error, setup_prometheus_metrics
from pipelines.security import SSRFError, check_url_ssrf
from pipelines.urls import canonicalize_url
from .job_handlers import seed_crawl
from .jobs import JobQueue, RedisJobQueue

logger = logging.getLogger(__name__)

app = FastAPI(title="KBCrawl Ingest API", version="1.0.0")
setup_prometheus_metrics(app)

# Queue used by request handlers; created on startup
job_queue: Optional[JobQueue] = None


class IngestRequest(BaseModel):
    knowledgeBaseId: str = Field(..., min_length=1)
    requesterId: str = Field(..., min_length=1)
    seedUrl: str = Field(..., min_length=1)
    maxDepth: int = Field(default=2, ge=0, le=5)


class IngestResponse(BaseModel):
    accepted: bool = True
    knowledgeBaseId: str
    seedUrl: str
    maxDepth: int


@app.on_event("startup")
async def startup_event():
    """Connect the job queue."""
    global job_queue
    if job_queue is None:
        job_queue = RedisJobQueue.from_config(crawler_config)
        logger.info(f"Ingest API publishing to {job_queue.redis_url}")


@app.on_event("shutdown")
async def shutdown_event():
    global job_queue
    if job_queue is not None:
        await job_queue.close()
        job_queue = None


def get_queue() -> JobQueue:
    if job_queue is None:
        raise HTTPException(status_code=503, detail="Job queue not initialized")
    return job_queue


async def run_seed(queue: JobQueue, knowledge_base_id: str, requester_id: str, seed_url: str, max_depth: int):
    """Background task: discover seeds and enqueue crawl jobs."""
    try:
        result = await seed_crawl(queue, knowledge_base_id, requester_id, seed_url, max_depth)
        logger.info(f"Seeding for {knowledge_base_id} finished: {result}")
    except Exception as e:
        # Background tasks have no caller to report to
        logger.error(f"Seeding for {knowledge_base_id} from {seed_url} failed: {e}", exc_info=True)
        record_error(type(e).__name__, "seed")


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/ingest", response_model=IngestResponse, status_code=202)
async def ingest(req: IngestRequest, background_tasks: BackgroundTasks, queue: JobQueue = Depends(get_queue)):
    """Accept a crawl request and seed it in the background."""
    seed_url = canonicalize_url(req.seedUrl)
    if seed_url is None:
        raise HTTPException(status_code=400, detail="seedUrl must be an absolute http(s) URL")

    if crawler_config.should_block_private_networks():
        loop = asyncio.get_running_loop()
        try:
            # Hostname resolution blocks
            await loop.run_in_executor(None, check_url_ssrf, seed_url)
        except SSRFError as e:
            raise HTTPException(status_code=400, detail=f"seedUrl rejected: {e}")

    background_tasks.add_task(run_seed, queue, req.knowledgeBaseId, req.requesterId, seed_url, req.maxDepth)
    logger.info(f"Accepted crawl of {seed_url} for knowledge base {req.knowledgeBaseId} (depth {req.maxDepth})")

    return IngestResponse(
        knowledgeBaseId=req.knowledgeBaseId,
        seedUrl=seed_url,
        maxDepth=req.maxDepth
    )


def main():
    """Run the ingest API with uvicorn."""
    import os
    import uvicorn

    setup_logging_from_env("kbcrawl-api")
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    main()
