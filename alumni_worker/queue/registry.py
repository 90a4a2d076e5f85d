"""Registry mapping handler_ref strings to handlers."""

import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol, runtime_checkable

from .errors import UnknownHandlerError
from .models import ExecutionContext, ExecutionResult
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


@runtime_checkable
class Handler(Protocol):
    """Contract implemented by every job.

    ``on_permanent_failure`` is optional; when present it performs the
    compensating update on the owning entity.
    """

    async def handle(self, payload: dict, ctx: ExecutionContext) -> ExecutionResult:
        ...


HandlerFn = Callable[[dict, ExecutionContext], Awaitable[ExecutionResult]]


class FunctionHandler:
    """Adapts a bare coroutine function to the Handler contract."""

    def __init__(self, fn: HandlerFn, on_permanent_failure: Optional[Callable[..., Awaitable[Any]]] = None):
        self._fn = fn
        if on_permanent_failure is not None:
            self.on_permanent_failure = on_permanent_failure

    async def handle(self, payload: dict, ctx: ExecutionContext) -> ExecutionResult:
        return await self._fn(payload, ctx)

    def __repr__(self) -> str:
        return f"FunctionHandler({getattr(self._fn, '__qualname__', self._fn)!r})"


class HandlerRegistry:
    """Maps handler_ref -> handler, plus the default queue and retry policy for each."""

    def __init__(self):
        self._handlers: dict[str, Handler] = {}
        self._queues: dict[str, str] = {}
        self._policies: dict[str, RetryPolicy] = {}

    def register(
        self,
        handler_ref: str,
        handler: Any,
        *,
        queue: str = "default",
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        """Register a handler object or coroutine function."""
        if handler_ref in self._handlers:
            raise ValueError(f"Handler '{handler_ref}' is already registered")
        if inspect.iscoroutinefunction(handler):
            handler = FunctionHandler(handler)
        if not callable(getattr(handler, "handle", None)):
            raise TypeError(f"Handler for '{handler_ref}' must define an async handle(payload, ctx)")

        self._handlers[handler_ref] = handler
        self._queues[handler_ref] = queue
        if policy is not None:
            self._policies[handler_ref] = policy
        logger.info(f"Registered handler {handler_ref} on queue {queue}")

    def get(self, handler_ref: str) -> Handler:
        try:
            return self._handlers[handler_ref]
        except KeyError:
            raise UnknownHandlerError(handler_ref) from None

    def queue_for(self, handler_ref: str) -> str:
        self.get(handler_ref)
        return self._queues[handler_ref]

    def policy_for(self, handler_ref: str) -> Optional[RetryPolicy]:
        return self._policies.get(handler_ref)

    def validate(self, handler_refs: Iterable[str]) -> None:
        """Fail fast at startup if any expected handler_ref is missing."""
        missing = sorted(ref for ref in handler_refs if ref not in self._handlers)
        if missing:
            raise UnknownHandlerError(", ".join(missing))

    def __contains__(self, handler_ref: str) -> bool:
        return handler_ref in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    @property
    def handler_refs(self) -> list[str]:
        return sorted(self._handlers)

    @property
    def queues(self) -> set[str]:
        return set(self._queues.values())
