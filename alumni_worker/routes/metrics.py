"""Metrics endpoint for monitoring and observability."""

from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from alumni_worker.config import get_settings
from alumni_worker.queue import JobQueue, QueueError, get_queue

router = APIRouter(prefix="/metrics", tags=["metrics"])
logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


async def _collect(queue: JobQueue) -> dict:
    settings = get_settings()
    names = sorted(set(settings.queue_names) | set(await queue.known_queues()))
    return await queue.stats(names)


@router.get("")
async def get_metrics(queue: JobQueue = Depends(get_queue)):
    """
    Get current metrics for monitoring.

    Returns:
        Per-queue ready/delayed depths, in-flight count and DLQ count.
    """
    if not queue.is_connected:
        return {
            "timestamp": _now(),
            "redis_connected": False,
            "queues": {"error": "Redis unavailable"},
            "dlq": {"error": "Redis unavailable"},
        }
    try:
        stats = await _collect(queue)
    except QueueError as e:
        logger.error(f"Failed to get metrics: {e}")
        return {"timestamp": _now(), "redis_connected": False, "error": str(e)}

    dlq_count = stats["dlq_count"]
    return {
        "timestamp": _now(),
        "redis_connected": True,
        "queues": {
            "depths": stats["queues"],
            "total_pending": stats["total_pending"],
            "in_flight": stats["in_flight"],
        },
        "dlq": {
            "count": dlq_count,
            "alert": dlq_count > get_settings().dlq_alert_threshold,
        },
    }


@router.get("/prometheus", response_class=PlainTextResponse)
async def get_prometheus_metrics(queue: JobQueue = Depends(get_queue)):
    """
    Get metrics in Prometheus exposition format.

    Returns:
        Prometheus-compatible text format metrics
    """
    try:
        connected = queue.is_connected
        stats = await _collect(queue) if connected else {"queues": {}, "in_flight": 0, "dlq_count": 0}
    except QueueError as e:
        return f"# Error getting metrics: {e}\n"

    lines = [
        "# HELP alumni_queue_ready Number of tasks eligible to run now",
        "# TYPE alumni_queue_ready gauge",
    ]
    for name, depth in stats["queues"].items():
        lines.append(f'alumni_queue_ready{{queue="{name}"}} {depth["ready"]}')
    lines.extend([
        "",
        "# HELP alumni_queue_delayed Number of tasks waiting out a backoff",
        "# TYPE alumni_queue_delayed gauge",
    ])
    for name, depth in stats["queues"].items():
        lines.append(f'alumni_queue_delayed{{queue="{name}"}} {depth["delayed"]}')
    lines.extend([
        "",
        "# HELP alumni_tasks_in_flight Number of tasks currently claimed by a worker",
        "# TYPE alumni_tasks_in_flight gauge",
        f"alumni_tasks_in_flight {stats['in_flight']}",
        "",
        "# HELP alumni_dlq_count Number of tasks in dead letter queue",
        "# TYPE alumni_dlq_count gauge",
        f"alumni_dlq_count {stats['dlq_count']}",
        "",
        "# HELP alumni_redis_connected Whether Redis is connected (1=yes, 0=no)",
        "# TYPE alumni_redis_connected gauge",
        f"alumni_redis_connected {1 if connected else 0}",
        "",
    ])
    return "\n".join(lines)
