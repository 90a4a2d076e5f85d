"""Retry/backoff policies and the controller that applies them."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .models import ExecutionResult, PermanentFailure, Success, Task, TransientFailure


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy configuration.

    ``backoff_schedule[k]`` is the delay after the (k+1)-th failed attempt;
    attempts beyond the schedule reuse its last value.
    """
    max_attempts: int = 3
    backoff_schedule: tuple[float, ...] = (60.0, 300.0, 900.0)

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        if not self.backoff_schedule:
            return 0.0
        index = min(max(attempt - 1, 0), len(self.backoff_schedule) - 1)
        return float(self.backoff_schedule[index])

    @classmethod
    def from_task(cls, task: Task) -> "RetryPolicy":
        return cls(max_attempts=task.max_attempts, backoff_schedule=tuple(task.backoff_schedule))

    def as_options(self) -> dict:
        return {"max_attempts": self.max_attempts, "backoff_schedule": list(self.backoff_schedule)}


# Presets observed across the platform's jobs
FAST_API = RetryPolicy(max_attempts=3, backoff_schedule=(30, 120, 300))
CRM_SYNC = RetryPolicy(max_attempts=3, backoff_schedule=(60, 300, 900))
CRM_RECOVERY = RetryPolicy(max_attempts=5, backoff_schedule=(300, 900, 1800, 3600, 7200))
WEBHOOK = RetryPolicy(max_attempts=3, backoff_schedule=(60, 300, 1800))
EMAIL = FAST_API

RETRY_POLICIES: dict[str, RetryPolicy] = {
    'fast_api': FAST_API,
    'crm_sync': CRM_SYNC,
    'crm_recovery': CRM_RECOVERY,
    'webhook': WEBHOOK,
    'email': EMAIL,
}


class RetryAction(str, Enum):
    COMPLETE = "complete"
    RETRY = "retry"
    BURY = "bury"


@dataclass(frozen=True)
class RetryDecision:
    """What the worker does with a task after one attempt."""
    action: RetryAction
    result: ExecutionResult
    delay: float = 0.0
    available_at: Optional[float] = None
    extra: dict = field(default_factory=dict)


class RetryController:
    """Turns an ExecutionResult into complete / retry-later / bury."""

    def __init__(self, clock=time.time):
        self._clock = clock

    def decide(self, task: Task, result: ExecutionResult, now: Optional[float] = None) -> RetryDecision:
        now = self._clock() if now is None else now

        if isinstance(result, Success):
            return RetryDecision(RetryAction.COMPLETE, result)

        if isinstance(result, PermanentFailure):
            return RetryDecision(
                RetryAction.BURY,
                PermanentFailure(result.error, total_attempts=task.attempt),
            )

        if task.attempts_exhausted:
            return RetryDecision(
                RetryAction.BURY,
                PermanentFailure(
                    f"Retries exhausted after {task.attempt} attempts: {result.error}",
                    total_attempts=task.attempt,
                ),
            )

        delay = RetryPolicy.from_task(task).delay_for(task.attempt)
        return RetryDecision(
            RetryAction.RETRY,
            TransientFailure(result.error, attempt=task.attempt),
            delay=delay,
            available_at=now + delay,
        )
