"""Redis-based task queue for background processing.

Features:
- One sorted set per named queue, scored by ``available_at`` so delayed
  retries are invisible until due
- Atomic claim via ZREM: concurrent workers never run the same delivery twice
- Visibility deadline for crash recovery (redelivery of abandoned attempts)
- Dead Letter Queue (DLQ) for permanently failed tasks, with operator replay
"""

import json
import logging
import time
from contextlib import contextmanager
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from alumni_worker.config import Settings, get_settings
from .errors import QueueUnavailableError, TaskNotFoundError
from .models import Task, TaskStatus, new_task_id
from .registry import HandlerRegistry
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

# Queue names
QUEUE_WEBHOOK = "webhook-processing"
QUEUE_LEAD_ROUTING = "lead-routing"
QUEUE_CRM_RETRY = "crm-retry"
QUEUE_EMAIL = "email-sending"
QUEUE_DEFAULT = "default"

# Key layout
QUEUE_PREFIX = "queue:"
TASK_PREFIX = "task:"
PROCESSING_KEY = "queue:_processing"  # id -> visibility deadline
DLQ_KEY = "queue:_dlq"  # id -> buried at
KNOWN_QUEUES_KEY = "queues:known"

CLAIM_SCAN = 10  # Eligible ids inspected per queue per dequeue

AbandonedHook = Callable[[Task, str], Awaitable[None]]


def queue_key(queue_name: str) -> str:
    return f"{QUEUE_PREFIX}{queue_name}"


class JobQueue:
    """Redis-based async task queue with delayed retries, DLQ and redelivery."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[redis.Redis] = None,
        registry: Optional[HandlerRegistry] = None,
        settings: Optional[Settings] = None,
        clock=time.time,
        on_abandoned: Optional[AbandonedHook] = None,
    ):
        self._settings = settings or get_settings()
        self.redis_url = redis_url or self._settings.redis_url
        self._redis: Optional[redis.Redis] = client
        self._connected = client is not None
        self.registry = registry
        self._clock = clock
        # Called with (task, error) for tasks buried outside a worker's own attempt
        self.on_abandoned = on_abandoned

    @property
    def is_connected(self) -> bool:
        """Check if Redis is connected."""
        return self._connected and self._redis is not None

    @property
    def clock(self):
        return self._clock

    @property
    def client(self) -> redis.Redis:
        """The underlying client, shared with the idempotency guard."""
        if self._redis is None:
            raise QueueUnavailableError("Queue is not connected")
        return self._redis

    async def connect(self) -> bool:
        """Connect to Redis. Returns True if connected, False if unavailable."""
        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True
                )
                await self._redis.ping()
                logger.info(f"Connected to Redis at {self._safe_url}")
                self._connected = True
                return True
            except (RedisError, OSError) as e:
                logger.warning(f"Redis unavailable at {self._safe_url}: {e}")
                self._redis = None
                self._connected = False
                return False
        return self._connected

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._connected = False
            logger.info("Disconnected from Redis")

    @property
    def _safe_url(self) -> str:
        return self.redis_url.split("@")[-1]

    async def _client(self) -> redis.Redis:
        if not await self.connect():
            raise QueueUnavailableError(f"Redis unavailable at {self._safe_url}")
        return self._redis

    @contextmanager
    def _store_errors(self, operation: str):
        try:
            yield
        except (RedisError, OSError) as e:
            raise QueueUnavailableError(f"Queue store error during {operation}: {e}") from e

    # ==================== Producer side ====================

    async def enqueue(
        self,
        queue_name: Optional[str],
        handler_ref: str,
        payload: Optional[dict] = None,
        *,
        max_attempts: Optional[int] = None,
        backoff_schedule: Optional[list[float]] = None,
        timeout: Optional[float] = None,
        delay: float = 0,
        tags: Optional[list[str]] = None,
        tenant_id: Optional[str] = None,
        trace_id: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        task_id: Optional[str] = None,
    ) -> Task:
        """
        Add a task to a queue.

        Args:
            queue_name: Target queue; None uses the handler's registered queue
            handler_ref: Registered handler name
            payload: JSON-serialisable data (entity ids, not objects)
            max_attempts / backoff_schedule: Override the retry policy
            timeout: Per-attempt timeout in seconds
            delay: Seconds before the task becomes eligible
            tags: Observability tags (e.g. "lead:42")

        Raises:
            UnknownHandlerError: If a registry is bound and lacks handler_ref
            QueueUnavailableError: If Redis is unavailable
        """
        payload = payload or {}
        if delay < 0:
            raise ValueError("delay must be >= 0")
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Task payload must be JSON-serialisable (pass ids, not objects): {e}") from e

        if self.registry is not None:
            self.registry.get(handler_ref)
            if queue_name is None:
                queue_name = self.registry.queue_for(handler_ref)
            policy = policy or self.registry.policy_for(handler_ref)
        queue_name = queue_name or QUEUE_DEFAULT
        policy = policy or RetryPolicy(max_attempts=self._settings.default_max_attempts)

        now = self._clock()
        fields = dict(
            id=task_id or new_task_id(handler_ref),
            queue_name=queue_name,
            handler_ref=handler_ref,
            payload=payload,
            max_attempts=max_attempts or policy.max_attempts,
            backoff_schedule=list(backoff_schedule if backoff_schedule is not None else policy.backoff_schedule),
            timeout=timeout or self._settings.default_task_timeout_seconds,
            tags=tags or [],
            tenant_id=tenant_id,
            enqueued_at=now,
            available_at=now + delay,
        )
        if trace_id:
            fields["trace_id"] = trace_id
        task = Task(**fields)

        client = await self._client()
        with self._store_errors("enqueue"):
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(f"{TASK_PREFIX}{task.id}", task.model_dump_json(), ex=self._settings.task_ttl_seconds)
                pipe.zadd(queue_key(queue_name), {task.id: task.available_at})
                pipe.sadd(KNOWN_QUEUES_KEY, queue_name)
                await pipe.execute()

        logger.info(
            f"Enqueued task {task.id} to {queue_name}",
            extra={"task_id": task.id, "queue": queue_name, "handler": handler_ref, "tags": task.tags},
        )
        return task

    # ==================== Consumer side ====================

    async def dequeue(self, queue_names: list[str]) -> Optional[Task]:
        """
        Claim the next eligible task.

        Queues are scanned in the given (priority) order; within a queue the
        task with the oldest ``available_at`` wins. Tasks due in the future
        are never returned.
        """
        client = await self._client()
        now = self._clock()

        with self._store_errors("dequeue"):
            for name in queue_names:
                key = queue_key(name)
                ids = await client.zrangebyscore(key, "-inf", now, start=0, num=CLAIM_SCAN)
                for task_id in ids:
                    # Whoever removes the member owns the delivery
                    if not await client.zrem(key, task_id):
                        continue
                    task = await self._claim(client, task_id, now)
                    if task is not None:
                        return task
        return None

    async def _claim(self, client: redis.Redis, task_id: str, now: float) -> Optional[Task]:
        data = await client.get(f"{TASK_PREFIX}{task_id}")
        if not data:
            logger.warning(f"Task {task_id} not found in storage, dropping")
            return None

        task = Task.model_validate_json(data)
        if task.attempts_exhausted:
            # Redelivered after its last attempt was abandoned
            await self._bury_abandoned(task, task.last_error or "Attempts exhausted")
            return None

        task = task.evolve(status=TaskStatus.RUNNING, attempt=task.attempt + 1)
        deadline = now + task.timeout + self._settings.visibility_grace_seconds
        async with client.pipeline(transaction=True) as pipe:
            pipe.set(f"{TASK_PREFIX}{task.id}", task.model_dump_json(), ex=self._settings.task_ttl_seconds)
            pipe.zadd(PROCESSING_KEY, {task.id: deadline})
            await pipe.execute()

        logger.debug(f"Dequeued task {task.id} from {task.queue_name} (attempt {task.attempt})")
        return task

    async def complete(self, task: Task, result: Optional[dict] = None) -> Task:
        """Mark a task as succeeded."""
        task = task.evolve(status=TaskStatus.SUCCEEDED, finished_at=self._clock(), result=result)
        client = await self._client()
        with self._store_errors("complete"):
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(f"{TASK_PREFIX}{task.id}", task.model_dump_json(), ex=self._settings.task_ttl_seconds)
                pipe.zrem(PROCESSING_KEY, task.id)
                await pipe.execute()
        return task

    async def reschedule(self, task: Task, available_at: float, error: str) -> Task:
        """Hand a failed task back to its queue, eligible from ``available_at``."""
        task = task.evolve(
            status=TaskStatus.QUEUED,
            available_at=available_at,
            last_error=error,
            error_history=[*task.error_history, self._history_entry(task, error)],
        )
        client = await self._client()
        with self._store_errors("reschedule"):
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(f"{TASK_PREFIX}{task.id}", task.model_dump_json(), ex=self._settings.task_ttl_seconds)
                pipe.zrem(PROCESSING_KEY, task.id)
                pipe.zadd(queue_key(task.queue_name), {task.id: available_at})
                await pipe.execute()
        return task

    async def bury(self, task: Task, error: str) -> Task:
        """Move a task to the Dead Letter Queue. It is never retried automatically."""
        now = self._clock()
        task = task.evolve(
            status=TaskStatus.PERMANENTLY_FAILED,
            finished_at=now,
            last_error=error,
            error_history=[*task.error_history, self._history_entry(task, error)],
        )
        client = await self._client()
        with self._store_errors("bury"):
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(f"{TASK_PREFIX}{task.id}", task.model_dump_json(), ex=self._settings.dlq_ttl_seconds)
                pipe.zrem(PROCESSING_KEY, task.id)
                pipe.zrem(queue_key(task.queue_name), task.id)
                pipe.zadd(DLQ_KEY, {task.id: now})
                await pipe.execute()
        return task

    async def annotate(self, task: Task, note: str) -> Task:
        """Append a note to the task's error history without changing its state."""
        task = task.evolve(error_history=[*task.error_history, self._history_entry(task, note)])
        client = await self._client()
        with self._store_errors("annotate"):
            await client.set(f"{TASK_PREFIX}{task.id}", task.model_dump_json(), keepttl=True)
        return task

    def _history_entry(self, task: Task, error: str) -> str:
        return f"[attempt {task.attempt} @ {self._clock():.0f}] {error[:500]}"

    async def _bury_abandoned(self, task: Task, error: str) -> Task:
        """Bury a task no worker will finish and hand it to ``on_abandoned``."""
        task = await self.bury(task, error)
        if self.on_abandoned is not None:
            await self.on_abandoned(task, error)
        return task

    async def recover_stalled(self) -> int:
        """
        Return in-flight tasks whose visibility deadline passed to their queue.

        The worker that held them crashed or hung; the abandoned attempt
        counts as a transient failure. A task whose last attempt was abandoned
        is buried and passed to ``on_abandoned``. Returns the number recovered.
        """
        client = await self._client()
        now = self._clock()
        recovered = 0

        with self._store_errors("recover_stalled"):
            ids = await client.zrangebyscore(PROCESSING_KEY, "-inf", now)
            for task_id in ids:
                if not await client.zrem(PROCESSING_KEY, task_id):
                    continue
                data = await client.get(f"{TASK_PREFIX}{task_id}")
                if not data:
                    continue
                task = Task.model_validate_json(data)
                error = "Visibility timeout expired; attempt abandoned"
                if task.attempts_exhausted:
                    await self._bury_abandoned(task, error)
                else:
                    delay = RetryPolicy.from_task(task).delay_for(task.attempt)
                    await self.reschedule(task, now + delay, error)
                recovered += 1
                logger.warning(
                    f"Recovered stalled task {task_id}",
                    extra={"task_id": task_id, "queue": task.queue_name, "attempt": task.attempt},
                )
        return recovered

    # ==================== Inspection ====================

    async def get_task(self, task_id: str) -> Optional[Task]:
        """Get the current state of a task."""
        client = await self._client()
        with self._store_errors("get_task"):
            data = await client.get(f"{TASK_PREFIX}{task_id}")
        if not data:
            return None
        return Task.model_validate_json(data)

    async def queue_length(self, queue_name: str) -> int:
        """Number of pending tasks (ready and delayed) in a queue."""
        connected = await self.connect()
        if not connected:
            return 0
        return await self._redis.zcard(queue_key(queue_name))

    async def ready_count(self, queue_name: str) -> int:
        connected = await self.connect()
        if not connected:
            return 0
        return await self._redis.zcount(queue_key(queue_name), "-inf", self._clock())

    async def delayed_count(self, queue_name: str) -> int:
        """Pending tasks waiting out a backoff or an enqueue delay."""
        return await self.queue_length(queue_name) - await self.ready_count(queue_name)

    async def in_flight_count(self) -> int:
        connected = await self.connect()
        if not connected:
            return 0
        return await self._redis.zcard(PROCESSING_KEY)

    async def known_queues(self) -> list[str]:
        client = await self._client()
        with self._store_errors("known_queues"):
            return sorted(await client.smembers(KNOWN_QUEUES_KEY))

    async def stats(self, queue_names: Optional[list[str]] = None) -> dict:
        """Statistics for all queues."""
        names = queue_names or await self.known_queues()
        queues = {}
        for name in names:
            ready = await self.ready_count(name)
            queues[name] = {"ready": ready, "delayed": await self.delayed_count(name)}
        return {
            "queues": queues,
            "total_pending": sum(q["ready"] + q["delayed"] for q in queues.values()),
            "in_flight": await self.in_flight_count(),
            "dlq_count": await self.dlq_count(),
        }

    # ==================== Dead Letter Queue ====================

    async def dlq_count(self) -> int:
        """Get the number of tasks in the Dead Letter Queue."""
        connected = await self.connect()
        if not connected:
            return 0
        return await self._redis.zcard(DLQ_KEY)

    async def list_dlq(self, limit: int = 100) -> list[Task]:
        """Tasks in the DLQ, oldest failure first."""
        client = await self._client()
        with self._store_errors("list_dlq"):
            task_ids = await client.zrange(DLQ_KEY, 0, limit - 1)
        tasks = []
        for task_id in task_ids:
            task = await self.get_task(task_id)
            if task:
                tasks.append(task)
        return tasks

    async def retry_dlq(self, task_id: str) -> Task:
        """Re-queue a DLQ task with a fresh attempt budget."""
        client = await self._client()
        with self._store_errors("retry_dlq"):
            in_dlq = await client.zscore(DLQ_KEY, task_id)
        task = await self.get_task(task_id)
        if in_dlq is None or task is None or task.status != TaskStatus.PERMANENTLY_FAILED:
            raise TaskNotFoundError(f"Task {task_id} not found in DLQ")

        now = self._clock()
        task = task.evolve(status=TaskStatus.QUEUED, attempt=0, available_at=now, finished_at=None)
        with self._store_errors("retry_dlq"):
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(f"{TASK_PREFIX}{task.id}", task.model_dump_json(), ex=self._settings.task_ttl_seconds)
                pipe.zrem(DLQ_KEY, task.id)
                pipe.zadd(queue_key(task.queue_name), {task.id: now})
                await pipe.execute()

        logger.info(f"Task {task_id} retried from DLQ", extra={"task_id": task_id, "queue": task.queue_name})
        return task

    async def clear_dlq(self) -> int:
        """Clear all tasks from the DLQ. Returns count of removed tasks."""
        client = await self._client()
        with self._store_errors("clear_dlq"):
            count = await client.zcard(DLQ_KEY)
            await client.delete(DLQ_KEY)
        return count


# Global queue instance
job_queue = JobQueue()


async def get_queue() -> JobQueue:
    """Get the job queue instance (for dependency injection).

    Note: This will NOT throw if Redis is unavailable - routes should
    check job_queue.is_connected or handle QueueUnavailableError.
    """
    await job_queue.connect()
    return job_queue
