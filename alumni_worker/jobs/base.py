"""Helpers shared by the platform jobs."""

import logging
from datetime import datetime, timezone
from typing import Optional

from redis.exceptions import RedisError

from alumni_worker.queue.errors import BackendError, BatchAbortedError, DoNotRetry
from alumni_worker.queue.idempotency import IdempotencyGuard
from alumni_worker.queue.models import ExecutionContext, ExecutionResult, PermanentFailure, Success, TransientFailure

logger = logging.getLogger(__name__)


def skipped(reason: str, **details) -> Success:
    """Precondition miss: the task is moot, retrying would not help."""
    logger.info(f"Task skipped: {reason}", extra={"outcome": "skipped", **details})
    return Success({"skipped": reason, **details})


def failure_from(error: BackendError, ctx: ExecutionContext) -> ExecutionResult:
    """Map a backend/external error to a retryable or terminal result."""
    if error.retryable:
        return TransientFailure(str(error), attempt=ctx.attempt)
    return PermanentFailure(str(error), total_attempts=ctx.attempt)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the backend (``Z`` suffix allowed)."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def require(payload: dict, *keys: str) -> None:
    """A malformed payload can never succeed: fail without retrying."""
    missing = [k for k in keys if payload.get(k) in (None, "")]
    if missing:
        raise DoNotRetry(f"Payload missing required field(s): {', '.join(missing)}")


async def release_marker(guard: IdempotencyGuard, key: str, error: BackendError) -> bool:
    """
    Drop an idempotency marker after a failed side effect, unless the
    backend may already have acted on the request.

    A response with a status code or a refused connection means nothing
    happened and a retry may redo the call. A timeout after the request went
    out leaves the outcome unknown: the marker is kept so the retry skips the
    call instead of repeating it.
    """
    if error.outcome_unknown:
        logger.warning(f"Keeping idempotency marker {key}: outcome of the request is unknown ({error})")
        return False
    try:
        await guard.release(key)
    except RedisError as e:
        logger.warning(f"Could not release idempotency marker {key}: {e}")
        return False
    return True


def batch_aborted(error: BatchAbortedError, ctx: ExecutionContext, **resume) -> TransientFailure:
    """
    A page fetch failed mid-batch. The retry starts over, which is safe for
    every batch job here; ``resume`` names the payload fields that let an
    operator continue from where this pass stopped instead.
    """
    hint = ", ".join(f"{k}={v}" for k, v in resume.items() if v is not None)
    logger.error(f"Batch aborted: {error}" + (f" (resume with {hint})" if hint else ""))
    message = f"{error}; resume with {hint}" if hint else str(error)
    return TransientFailure(message, attempt=ctx.attempt)
