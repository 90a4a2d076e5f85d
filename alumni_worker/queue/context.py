"""Tenant/trace scope binding around each handler invocation."""

import contextvars
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Callable, Optional

from .models import ExecutionContext

current_tenant: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("current_tenant", default=None)
current_trace: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("current_trace", default=None)

# Receives the context before the handler runs and yields once the scope is set.
# Raising from the binder fails the attempt transiently.
ContextBinder = Callable[[ExecutionContext], AsyncContextManager[None]]


@asynccontextmanager
async def bind_tenant_scope(ctx: ExecutionContext) -> AsyncIterator[None]:
    """Default binder: expose tenant and trace ids to code below the handler."""
    tenant_token = current_tenant.set(ctx.tenant_id)
    trace_token = current_trace.set(ctx.trace_id)
    try:
        yield
    finally:
        current_trace.reset(trace_token)
        current_tenant.reset(tenant_token)
