"""Durable job queue and queue worker for KBCrawl.

Messages are published to named topics with an optional delay. The Redis
queue keeps one sorted set per topic scored by due time. Claiming moves a
message into an in-flight set scored by lease expiry, so exactly one consumer
wins each delivery; the worker acknowledges it once the handler is done, and
a lease that expires unacknowledged puts the message back on the topic.
Delivery is therefore at-least-once. The worker polls on an APScheduler
interval job, bounds each handler call by a time budget and re-publishes
messages whose handler raised, up to a maximum number of deliveries.
"""

import asyncio
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import redis
from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config.crawler_config import CrawlerConfig, crawler_config
from observability.logging import get_job_logger
from observability.metrics import record_error, record_published

logger = logging.getLogger(__name__)

TOPIC_CRAWL = "crawl"
TOPIC_EMBED = "embed"

DEFAULT_LEASE_SECONDS = 300.0

JobHandler = Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]


@dataclass
class QueueMessage:
    """A message on a topic."""
    topic: str
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempt: int = 1

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, data: str) -> 'QueueMessage':
        return cls(**json.loads(data))


class JobQueue(ABC):
    """Publish/claim interface shared by queue backends."""

    def _now(self) -> float:
        return time.time()

    @abstractmethod
    async def _push(self, message: QueueMessage, due_at: float) -> None:
        ...

    @abstractmethod
    async def claim_due(self, topic: str, limit: int) -> List[QueueMessage]:
        """Lease up to ``limit`` messages on ``topic`` whose delay has elapsed.

        Messages whose earlier lease expired without an ack are due again.
        """

    @abstractmethod
    async def ack(self, message: QueueMessage) -> None:
        """Release a claimed message for good."""

    async def publish(self, topic: str, payload: Dict[str, Any], delay_seconds: float = 0) -> str:
        """Publish a message and return its id."""
        message = QueueMessage(topic=topic, payload=payload)
        await self._push(message, self._now() + max(0.0, delay_seconds))
        record_published(topic)
        logger.debug(f"Published {topic} message {message.id} (delay {delay_seconds}s)")
        return message.id

    async def republish(self, message: QueueMessage, delay_seconds: float = 0) -> str:
        """Put a message back for another delivery attempt."""
        retry = QueueMessage(topic=message.topic, payload=message.payload,
                             id=message.id, attempt=message.attempt + 1)
        await self._push(retry, self._now() + max(0.0, delay_seconds))
        return retry.id

    async def close(self) -> None:
        pass


class InMemoryJobQueue(JobQueue):
    """Process-local queue for tests and single-process runs."""

    def __init__(self, clock: Callable[[], float] = time.time, lease_seconds: float = DEFAULT_LEASE_SECONDS):
        self._clock = clock
        self.lease_seconds = lease_seconds
        self._pending: Dict[str, List[Tuple[float, QueueMessage]]] = {}
        # topic -> message id -> (lease expiry, message)
        self._inflight: Dict[str, Dict[str, Tuple[float, QueueMessage]]] = {}
        self.published: List[Dict[str, Any]] = []

    def _now(self) -> float:
        return self._clock()

    async def _push(self, message: QueueMessage, due_at: float) -> None:
        self._pending.setdefault(message.topic, []).append((due_at, message))

    async def publish(self, topic: str, payload: Dict[str, Any], delay_seconds: float = 0) -> str:
        message_id = await super().publish(topic, payload, delay_seconds)
        self.published.append({
            'id': message_id,
            'topic': topic,
            'payload': payload,
            'delay_seconds': delay_seconds
        })
        return message_id

    def _requeue_expired(self, topic: str, now: float) -> None:
        inflight = self._inflight.get(topic, {})
        for message_id, (expires_at, message) in list(inflight.items()):
            if expires_at <= now:
                del inflight[message_id]
                self._pending.setdefault(topic, []).append((now, message))
                logger.warning(f"Lease expired for {topic} message {message_id}, redelivering")

    async def claim_due(self, topic: str, limit: int) -> List[QueueMessage]:
        now = self._now()
        self._requeue_expired(topic, now)
        pending = sorted(self._pending.get(topic, []), key=lambda item: item[0])
        due = [message for due_at, message in pending if due_at <= now][:limit]
        claimed_ids = {id(message) for message in due}
        self._pending[topic] = [item for item in pending if id(item[1]) not in claimed_ids]

        inflight = self._inflight.setdefault(topic, {})
        for message in due:
            inflight[message.id] = (now + self.lease_seconds, message)
        return due

    async def ack(self, message: QueueMessage) -> None:
        self._inflight.get(message.topic, {}).pop(message.id, None)

    def pending_count(self, topic: str) -> int:
        return len(self._pending.get(topic, []))

    def inflight_count(self, topic: str) -> int:
        return len(self._inflight.get(topic, {}))

    def messages(self, topic: str) -> List[Dict[str, Any]]:
        """Payloads published to a topic, in publish order."""
        return [entry['payload'] for entry in self.published if entry['topic'] == topic]


# KEYS: pending, inflight. ARGV: now, limit, lease expiry
CLAIM_SCRIPT = """
local members = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, ARGV[2])
for _, member in ipairs(members) do
    redis.call('ZREM', KEYS[1], member)
    redis.call('ZADD', KEYS[2], ARGV[3], member)
end
return members
"""

# KEYS: pending, inflight. ARGV: now
REQUEUE_EXPIRED_SCRIPT = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, member in ipairs(expired) do
    redis.call('ZREM', KEYS[2], member)
    redis.call('ZADD', KEYS[1], ARGV[1], member)
end
return #expired
"""


class RedisJobQueue(JobQueue):
    """Redis-backed queue using a pending and an in-flight sorted set per topic.

    Claiming and lease expiry run as Lua scripts so a message is always in
    exactly one of the two sets.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0",
                 key_prefix: str = "kbcrawl:queue", client: Optional[redis.Redis] = None,
                 lease_seconds: float = DEFAULT_LEASE_SECONDS):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.lease_seconds = lease_seconds
        self.redis_client = client or redis.from_url(redis_url, decode_responses=True)
        self._claim_script = self.redis_client.register_script(CLAIM_SCRIPT)
        self._requeue_script = self.redis_client.register_script(REQUEUE_EXPIRED_SCRIPT)

    @classmethod
    def from_config(cls, config: Optional[CrawlerConfig] = None) -> 'RedisJobQueue':
        settings = (config or crawler_config).get_queue_settings()
        return cls(redis_url=settings['redis_url'], key_prefix=settings['key_prefix'],
                   lease_seconds=float(settings['lease_seconds']))

    def _key(self, topic: str) -> str:
        return f"{self.key_prefix}:{topic}"

    def _inflight_key(self, topic: str) -> str:
        return f"{self.key_prefix}:{topic}:inflight"

    async def _run(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(*args, **kwargs))

    async def ping(self) -> bool:
        return await self._run(self.redis_client.ping)

    async def _push(self, message: QueueMessage, due_at: float) -> None:
        await self._run(self.redis_client.zadd, self._key(message.topic), {message.to_json(): due_at})

    async def claim_due(self, topic: str, limit: int) -> List[QueueMessage]:
        keys = [self._key(topic), self._inflight_key(topic)]
        now = self._now()

        requeued = await self._run(self._requeue_script, keys=keys, args=[now])
        if requeued:
            logger.warning(f"Redelivering {requeued} {topic} messages whose lease expired")

        members = await self._run(self._claim_script, keys=keys,
                                  args=[now, limit, now + self.lease_seconds])
        return [QueueMessage.from_json(member) for member in members]

    async def ack(self, message: QueueMessage) -> None:
        # Members are the exact JSON that was claimed; to_json is deterministic
        await self._run(self.redis_client.zrem, self._inflight_key(message.topic), message.to_json())

    async def pending_count(self, topic: str) -> int:
        return await self._run(self.redis_client.zcard, self._key(topic))

    async def inflight_count(self, topic: str) -> int:
        return await self._run(self.redis_client.zcard, self._inflight_key(topic))

    async def close(self) -> None:
        await self._run(self.redis_client.close)


class QueueWorker:
    """Polls topics and dispatches claimed messages to registered handlers."""

    def __init__(self, queue: JobQueue, config: Optional[CrawlerConfig] = None):
        settings = (config or crawler_config).get_queue_settings()
        self.queue = queue
        self.poll_interval = float(settings['poll_interval'])
        self.batch_size = int(settings['batch_size'])
        self.max_deliveries = int(settings['max_deliveries'])
        self.retry_delay = float(settings['retry_delay'])
        self.job_timeout = float(settings['job_timeout'])
        self.job_handlers: Dict[str, JobHandler] = {}
        self.scheduler: Optional[AsyncIOScheduler] = None

    def register_handler(self, topic: str, handler: JobHandler):
        """Register a handler coroutine for a topic."""
        self.job_handlers[topic] = handler
        logger.info(f"Registered handler for topic: {topic}")

    async def _execute(self, message: QueueMessage, handler: JobHandler) -> Optional[Dict[str, Any]]:
        job_logger = get_job_logger(__name__, message.id, topic=message.topic, attempt=message.attempt)
        try:
            result = await asyncio.wait_for(handler(message.id, message.payload), self.job_timeout)
        except Exception as e:
            reason = f"timed out after {self.job_timeout:.0f}s" if isinstance(e, asyncio.TimeoutError) else str(e)
            record_error(type(e).__name__, f"handler:{message.topic}")
            if message.attempt < self.max_deliveries:
                job_logger.warning(f"Job {message.id} failed on attempt {message.attempt}: {reason}. "
                                   f"Redelivering in {self.retry_delay}s")
                await self.queue.republish(message, self.retry_delay)
            else:
                job_logger.error(f"Job {message.id} failed after {message.attempt} deliveries: {reason}",
                                 exc_info=True)
            # The retry, if any, is queued before the claimed copy is released
            await self.queue.ack(message)
            return None

        await self.queue.ack(message)
        job_logger.debug(f"Job {message.id} completed: {result}")
        return result

    async def poll_once(self) -> int:
        """Claim and run one batch per topic. Returns the number of messages handled."""
        handled = 0
        for topic, handler in self.job_handlers.items():
            messages = await self.queue.claim_due(topic, self.batch_size)
            if not messages:
                continue
            await asyncio.gather(*(self._execute(message, handler) for message in messages))
            handled += len(messages)
        return handled

    def start(self):
        """Start polling on an interval job."""
        self.scheduler = AsyncIOScheduler(job_defaults={'coalesce': True, 'max_instances': 1})
        self.scheduler.add_listener(self._poll_error, EVENT_JOB_ERROR)
        self.scheduler.add_job(
            self.poll_once,
            'interval',
            seconds=self.poll_interval,
            id='queue-poll',
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Queue worker polling {sorted(self.job_handlers)} every {self.poll_interval}s")

    def shutdown(self):
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.scheduler = None
        logger.info("Queue worker shutdown complete")

    def _poll_error(self, event):
        logger.error(f"Queue poll failed: {event.exception}")


def register_default_handlers(worker: QueueWorker):
    """Register the crawl handler on a worker."""
    from .job_handlers import crawl_page_job

    worker.register_handler(TOPIC_CRAWL, crawl_page_job)
    logger.info("Default job handlers registered successfully")
