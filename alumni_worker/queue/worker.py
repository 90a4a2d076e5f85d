"""Background worker pool for processing queued tasks.

Each worker coroutine loops: claim the next eligible task, bind its tenant
scope, run the handler under the task's timeout, turn the outcome into an
ExecutionResult and let the RetryController decide between complete,
retry-later and dead-letter.
"""

import asyncio
import logging
import signal
import time
from typing import Iterable, Optional

from alumni_worker.config import Settings, get_settings
from .context import ContextBinder, bind_tenant_scope
from .errors import DoNotRetry, QueueUnavailableError, UnknownHandlerError
from .job_queue import JobQueue
from .models import ExecutionContext, ExecutionResult, PermanentFailure, Success, Task, TransientFailure
from .registry import HandlerRegistry
from .reporter import FailureReporter
from .retry import RetryAction, RetryController

logger = logging.getLogger(__name__)

MAX_STORE_BACKOFF = 60.0
RECOVER_INTERVAL = 30.0


class WorkerPool:
    """A set of concurrent worker coroutines servicing named queues."""

    def __init__(
        self,
        queue: JobQueue,
        registry: HandlerRegistry,
        *,
        queues: Optional[list[str]] = None,
        concurrency: Optional[int] = None,
        context_binder: ContextBinder = bind_tenant_scope,
        reporter: Optional[FailureReporter] = None,
        controller: Optional[RetryController] = None,
        poll_interval: Optional[float] = None,
        required_handlers: Iterable[str] = (),
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.queue = queue
        self.registry = registry
        self.queues = queues or settings.queue_names
        self.concurrency = concurrency or settings.worker_concurrency
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval_seconds
        self.required_handlers = list(required_handlers)
        self._binder = context_binder
        self._reporter = reporter or FailureReporter(queue)
        self._controller = controller or RetryController(clock=queue.clock)
        if queue.on_abandoned is None:
            queue.on_abandoned = self.report_abandoned
        self._running = False
        self._stop_event = asyncio.Event()

    # ==================== Single task ====================

    async def run_once(self) -> Optional[Task]:
        """
        Claim and execute at most one task.

        Returns the task in its final stored state, or None if nothing was
        eligible. QueueUnavailableError propagates.
        """
        task = await self.queue.dequeue(self.queues)
        if task is None:
            return None
        return await self.execute(task)

    async def drain(self, max_tasks: Optional[int] = None) -> list[Task]:
        """Run eligible tasks until the queues are empty (or ``max_tasks``)."""
        done = []
        while max_tasks is None or len(done) < max_tasks:
            task = await self.run_once()
            if task is None:
                break
            done.append(task)
        return done

    async def execute(self, task: Task) -> Task:
        """Run one claimed task and apply the retry decision to the queue."""
        ctx = ExecutionContext.for_task(task, enqueue=self.queue.enqueue)
        handler = None
        started = time.monotonic()

        try:
            handler = self.registry.get(task.handler_ref)
        except UnknownHandlerError as e:
            result: ExecutionResult = PermanentFailure(str(e), total_attempts=task.attempt)
        else:
            result = await self._invoke(task, handler, ctx)
        duration = time.monotonic() - started

        decision = self._controller.decide(task, result)

        if decision.action == RetryAction.COMPLETE:
            stored = await self.queue.complete(task, decision.result.output)
            self._reporter.report_success(stored, duration, decision.result.output)
        elif decision.action == RetryAction.RETRY:
            stored = await self.queue.reschedule(task, decision.available_at, decision.result.error)
            self._reporter.report_transient(stored, decision.result.error, task.attempt, decision.delay, duration)
        else:
            stored = await self.queue.bury(task, decision.result.error)
            await self._reporter.report_permanent(
                stored,
                decision.result.error,
                decision.result.total_attempts,
                handler=handler,
                ctx=ctx,
                duration=duration,
            )
        return stored

    async def report_abandoned(self, task: Task, error: str) -> None:
        """
        Report a task the queue buried because its last attempt was abandoned
        (worker crash or hang), so its compensating update still runs.
        """
        try:
            handler = self.registry.get(task.handler_ref)
        except UnknownHandlerError:
            handler = None
        ctx = ExecutionContext.for_task(task, enqueue=self.queue.enqueue)
        await self._reporter.report_permanent(task, error, task.attempt, handler=handler, ctx=ctx)

    async def recover_stalled(self) -> int:
        """One recovery pass; abandoned final attempts are reported like any permanent failure."""
        recovered = await self.queue.recover_stalled()
        if recovered:
            logger.warning(f"Recovered {recovered} stalled task(s)")
        return recovered

    async def _invoke(self, task: Task, handler, ctx: ExecutionContext) -> ExecutionResult:
        """Call the handler, converting every handler-side exception into a result."""
        try:
            async with self._binder(ctx):
                result = await asyncio.wait_for(handler.handle(task.payload, ctx), timeout=task.timeout)
        except asyncio.TimeoutError:
            return TransientFailure(f"Timed out after {task.timeout:g}s", attempt=task.attempt)
        except DoNotRetry as e:
            return PermanentFailure(str(e) or "Handler refused retry", total_attempts=task.attempt)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Task {task.id} handler error")
            return TransientFailure(f"{type(e).__name__}: {e}", attempt=task.attempt)

        if not isinstance(result, (Success, TransientFailure, PermanentFailure)):
            return PermanentFailure(
                f"Handler {task.handler_ref} returned {type(result).__name__}, expected an ExecutionResult",
                total_attempts=task.attempt,
            )
        if isinstance(result, TransientFailure) and result.attempt != task.attempt:
            result = TransientFailure(result.error, attempt=task.attempt)
        return result

    # ==================== Loops ====================

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _worker_loop(self, name: str) -> None:
        logger.info(f"[{name}] Starting on queues {self.queues}")
        backoff = self.poll_interval or 1.0

        while self._running:
            try:
                task = await self.run_once()
                backoff = self.poll_interval or 1.0
                if task is None:
                    await self._sleep(self.poll_interval)
            except asyncio.CancelledError:
                logger.info(f"[{name}] Cancelled")
                break
            except QueueUnavailableError as e:
                logger.error(f"[{name}] Queue store unavailable, backing off {backoff:.0f}s: {e}")
                await self._sleep(backoff)
                backoff = min(backoff * 2, MAX_STORE_BACKOFF)
            except Exception as e:
                logger.exception(f"[{name}] Unexpected worker error: {e}")
                await self._sleep(5)

        logger.info(f"[{name}] Worker stopped")

    async def _recovery_loop(self, interval: float = RECOVER_INTERVAL) -> None:
        while self._running:
            try:
                await self.recover_stalled()
            except asyncio.CancelledError:
                break
            except QueueUnavailableError as e:
                logger.error(f"Stalled-task recovery skipped: {e}")
            await self._sleep(interval)

    def validate(self) -> None:
        """Fail fast on missing handlers before any task is claimed."""
        self.registry.validate(self.required_handlers)
        served = self.registry.queues
        for name in self.queues:
            if name not in served:
                logger.warning(f"Queue {name} has no registered handlers")

    async def run(self) -> None:
        """Run all worker coroutines until :meth:`stop` is called."""
        self.validate()
        self._running = True
        self._stop_event.clear()

        tasks = [
            asyncio.create_task(self._worker_loop(f"worker-{i + 1}"))
            for i in range(self.concurrency)
        ]
        tasks.append(asyncio.create_task(self._recovery_loop()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Worker tasks cancelled")
            for t in tasks:
                t.cancel()
            raise
        finally:
            self._running = False

    def stop(self) -> None:
        """Stop the pool after in-flight tasks finish."""
        self._running = False
        self._stop_event.set()


async def run_worker(queues: Optional[list[str]] = None, pool_holder: Optional[dict] = None):
    """
    Run the background worker.

    Args:
        queues: Queues to process, highest priority first. Defaults to settings.
        pool_holder: Receives the running pool under "pool" so a host can stop it.
    """
    from alumni_worker.jobs import build_registry
    from alumni_worker.jobs.backend import BackendClient
    from .idempotency import IdempotencyGuard

    settings = get_settings()
    queue = JobQueue(settings=settings)
    if not await queue.connect():
        raise QueueUnavailableError("Redis unavailable - cannot start worker")

    backend = BackendClient(settings)
    guard = IdempotencyGuard(
        queue.client,
        default_ttl=settings.idempotency_ttl_seconds,
        fail_open=settings.idempotency_fail_open,
    )
    registry = build_registry(backend, guard, settings)
    queue.registry = registry

    pool = WorkerPool(
        queue,
        registry,
        queues=queues,
        required_handlers=registry.handler_refs,
        settings=settings,
    )
    if pool_holder is not None:
        pool_holder["pool"] = pool

    loop = asyncio.get_running_loop()

    def shutdown():
        logger.info("Shutdown signal received")
        pool.stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown)
        except (NotImplementedError, RuntimeError):
            # Windows, or not running in the main thread
            pass

    logger.info(f"Starting worker for queues: {pool.queues}")
    try:
        await pool.run()
    finally:
        await backend.close()
        await queue.disconnect()
        logger.info("Worker stopped")


if __name__ == "__main__":
    from alumni_worker.lib.json_logger import configure_logging

    _settings = get_settings()
    configure_logging(_settings.log_format, _settings.log_level)
    asyncio.run(run_worker())
