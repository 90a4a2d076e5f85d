"""Failure reporter: structured outcome records plus compensating updates.

Every permanent failure must leave an inspectable trace on the owning
domain entity, not only a log line. Handlers provide that trace through
their optional ``on_permanent_failure(payload, error, ctx)`` hook.
"""

import logging
from typing import Optional

from alumni_worker.lib.json_logger import task_logger
from .models import ExecutionContext, Task
from .registry import Handler

logger = logging.getLogger(__name__)


class FailureReporter:
    """Records task outcomes for operators."""

    def __init__(self, queue=None, logger_name: str = "alumni_worker.tasks"):
        self._queue = queue
        self._logger_name = logger_name

    def report_success(self, task: Task, duration: float, output: Optional[dict] = None) -> None:
        log = task_logger(task, self._logger_name)
        log.info(
            f"Task {task.id} succeeded",
            extra={"outcome": "success", "duration_ms": round(duration * 1000, 1), "output": output},
        )

    def report_transient(self, task: Task, error: str, attempt: int, next_run_in: float,
                         duration: Optional[float] = None) -> None:
        log = task_logger(task, self._logger_name)
        log.warning(
            f"Task {task.id} failed, retry {attempt}/{task.max_attempts} in {next_run_in:.0f}s: {error}",
            extra={
                "outcome": "transient_failure",
                "attempt": attempt,
                "error": error,
                "next_run_in": next_run_in,
                "duration_ms": round(duration * 1000, 1) if duration is not None else None,
                "payload": task.payload,
            },
        )

    async def report_permanent(
        self,
        task: Task,
        error: str,
        total_attempts: int,
        handler: Optional[Handler] = None,
        ctx: Optional[ExecutionContext] = None,
        duration: Optional[float] = None,
    ) -> bool:
        """
        Log the permanent failure and run the handler's compensating hook.

        Returns True if a compensating update was applied. A failing hook is
        logged and noted on the task; it never propagates.
        """
        log = task_logger(task, self._logger_name)
        log.error(
            f"Task {task.id} permanently failed after {total_attempts} attempts: {error}",
            extra={
                "outcome": "permanent_failure",
                "attempt": total_attempts,
                "error": error,
                "duration_ms": round(duration * 1000, 1) if duration is not None else None,
                # Enough context to replay without the stored body
                "payload": task.payload,
            },
        )

        hook = getattr(handler, "on_permanent_failure", None) if handler is not None else None
        if hook is None:
            return False

        ctx = ctx or ExecutionContext.for_task(task)
        try:
            await hook(task.payload, error, ctx)
        except Exception as e:
            log.exception(f"Compensating update for task {task.id} failed")
            if self._queue is not None:
                try:
                    await self._queue.annotate(task, f"Compensating update failed: {e}")
                except Exception:
                    logger.exception(f"Could not annotate task {task.id}")
            return False

        log.info(f"Compensating update applied for task {task.id}", extra={"outcome": "compensated"})
        return True
