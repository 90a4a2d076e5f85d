"""Queue module for background task processing.

Features:
- Delayed retries using Redis sorted sets scored by availability time
- Per-task backoff schedules and attempt limits
- Dead Letter Queue (DLQ) for permanently failed tasks
- Idempotency markers to suppress duplicate side effects
- Chunked batch iteration with per-item failure isolation
"""

from .batch import BatchCursor, for_each_chunk, for_each_item, for_each_nested, iter_chunks
from .errors import (
    BackendError,
    BatchAbortedError,
    DoNotRetry,
    QueueError,
    QueueUnavailableError,
    TaskNotFoundError,
    UnknownHandlerError,
)
from .idempotency import IdempotencyGuard, idempotency_key
from .job_queue import (
    JobQueue,
    job_queue,
    get_queue,
    QUEUE_WEBHOOK,
    QUEUE_LEAD_ROUTING,
    QUEUE_EMAIL,
    QUEUE_CRM_RETRY,
    QUEUE_DEFAULT,
)
from .models import (
    ExecutionContext,
    ExecutionResult,
    PermanentFailure,
    Success,
    Task,
    TaskStatus,
    TransientFailure,
)
from .registry import Handler, HandlerRegistry
from .retry import RETRY_POLICIES, RetryController, RetryPolicy

__all__ = [
    'JobQueue',
    'job_queue',
    'get_queue',
    'QUEUE_WEBHOOK',
    'QUEUE_LEAD_ROUTING',
    'QUEUE_EMAIL',
    'QUEUE_CRM_RETRY',
    'QUEUE_DEFAULT',
    'Task',
    'TaskStatus',
    'ExecutionContext',
    'ExecutionResult',
    'Success',
    'TransientFailure',
    'PermanentFailure',
    'Handler',
    'HandlerRegistry',
    'RetryPolicy',
    'RetryController',
    'RETRY_POLICIES',
    'IdempotencyGuard',
    'idempotency_key',
    'BatchCursor',
    'iter_chunks',
    'for_each_chunk',
    'for_each_item',
    'for_each_nested',
    'QueueError',
    'QueueUnavailableError',
    'UnknownHandlerError',
    'TaskNotFoundError',
    'DoNotRetry',
    'BatchAbortedError',
    'BackendError',
]
