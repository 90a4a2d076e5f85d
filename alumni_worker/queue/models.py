"""Task, execution result and execution context types."""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class TaskStatus(str, Enum):
    """Task lifecycle states."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PERMANENTLY_FAILED = "permanently_failed"  # Parked in the DLQ for operator replay


def new_task_id(handler_ref: str) -> str:
    prefix = handler_ref.replace(".", "_")
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class Task(BaseModel):
    """One unit of asynchronous work.

    Tasks are immutable; state transitions produce a new instance via
    :meth:`evolve`. The payload carries entity ids and scalars only, since
    the handler re-fetches current state when it runs.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    queue_name: str
    handler_ref: str
    payload: dict[str, Any] = Field(default_factory=dict)
    attempt: int = 0
    max_attempts: int = 3
    backoff_schedule: list[float] = Field(default_factory=lambda: [60.0, 300.0, 900.0])
    timeout: float = 120.0
    tags: list[str] = Field(default_factory=list)
    tenant_id: Optional[str] = None
    trace_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: float = Field(default_factory=time.time)
    available_at: float = Field(default_factory=time.time)
    status: TaskStatus = TaskStatus.QUEUED
    last_error: Optional[str] = None
    error_history: list[str] = Field(default_factory=list)
    finished_at: Optional[float] = None
    result: Optional[dict[str, Any]] = None

    @field_validator("tags")
    @classmethod
    def _unique_tags(cls, tags: list[str]) -> list[str]:
        return list(dict.fromkeys(tags))

    @field_validator("backoff_schedule")
    @classmethod
    def _non_negative_delays(cls, schedule: list[float]) -> list[float]:
        if any(delay < 0 for delay in schedule):
            raise ValueError("backoff delays must be >= 0")
        return schedule

    @model_validator(mode="after")
    def _attempt_bound(self) -> "Task":
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.attempt > self.max_attempts:
            raise ValueError(f"attempt {self.attempt} exceeds max_attempts {self.max_attempts}")
        return self

    def evolve(self, **changes: Any) -> "Task":
        """Return a copy with ``changes`` applied and re-validated."""
        return Task.model_validate({**self.model_dump(), **changes})

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def is_available(self, now: Optional[float] = None) -> bool:
        return self.available_at <= (time.time() if now is None else now)


# ==================== Execution results ====================

@dataclass(frozen=True)
class Success:
    """The handler finished; side effects are committed."""
    output: Optional[dict[str, Any]] = None
    outcome = "success"


@dataclass(frozen=True)
class TransientFailure:
    """Retryable failure (network error, rate limit, 5xx, timeout)."""
    error: str
    attempt: int = 0
    outcome = "transient_failure"


@dataclass(frozen=True)
class PermanentFailure:
    """Terminal failure: business-rule rejection or retries exhausted."""
    error: str
    total_attempts: int = 0
    outcome = "permanent_failure"


ExecutionResult = Union[Success, TransientFailure, PermanentFailure]


# ==================== Execution context ====================

EnqueueFn = Callable[..., Awaitable["Task"]]


@dataclass
class ExecutionContext:
    """Explicit per-attempt context passed to every handler.

    Replaces ambient tenant/auth/queue state: the handler reads tenant and
    trace ids from here and fans out follow-up tasks through :meth:`enqueue`.
    """
    task_id: str
    queue_name: str
    handler_ref: str
    attempt: int
    max_attempts: int
    tenant_id: Optional[str] = None
    trace_id: Optional[str] = None
    deadline: Optional[float] = None  # time.monotonic() value
    tags: list[str] = field(default_factory=list)
    _enqueue: Optional[EnqueueFn] = field(default=None, repr=False)

    @classmethod
    def for_task(cls, task: Task, enqueue: Optional[EnqueueFn] = None) -> "ExecutionContext":
        return cls(
            task_id=task.id,
            queue_name=task.queue_name,
            handler_ref=task.handler_ref,
            attempt=task.attempt,
            max_attempts=task.max_attempts,
            tenant_id=task.tenant_id,
            trace_id=task.trace_id,
            deadline=time.monotonic() + task.timeout,
            tags=list(task.tags),
            _enqueue=enqueue,
        )

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    def remaining(self) -> Optional[float]:
        """Seconds left before the attempt times out."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    async def enqueue(self, queue_name: str, handler_ref: str, payload: dict, **options) -> Task:
        """Enqueue a follow-up task in the same tenant and trace."""
        if self._enqueue is None:
            raise RuntimeError("This context cannot enqueue follow-up tasks")
        options.setdefault("tenant_id", self.tenant_id)
        options.setdefault("trace_id", self.trace_id)
        return await self._enqueue(queue_name, handler_ref, payload, **options)
