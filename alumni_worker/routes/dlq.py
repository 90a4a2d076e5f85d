"""Dead Letter Queue administration for operators."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from alumni_worker.queue import JobQueue, QueueUnavailableError, TaskNotFoundError, get_queue

router = APIRouter(prefix="/dlq", tags=["dlq"])
logger = logging.getLogger(__name__)


def _require_connected(queue: JobQueue) -> None:
    if not queue.is_connected:
        raise HTTPException(status_code=503, detail="Redis unavailable")


@router.get("")
async def list_dead_letters(limit: int = Query(100, ge=1, le=1000), queue: JobQueue = Depends(get_queue)):
    """Permanently failed tasks, oldest first, with their error history."""
    _require_connected(queue)
    try:
        tasks = await queue.list_dlq(limit=limit)
    except QueueUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "count": await queue.dlq_count(),
        "tasks": [task.model_dump(mode="json") for task in tasks],
    }


@router.post("/{task_id}/retry")
async def retry_dead_letter(task_id: str, queue: JobQueue = Depends(get_queue)):
    """Re-queue one task with a fresh attempt budget."""
    _require_connected(queue)
    try:
        task = await queue.retry_dlq(task_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except QueueUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    logger.info(f"Operator retried task {task_id} from DLQ")
    return {"status": "queued", "task": task.model_dump(mode="json")}


@router.delete("")
async def clear_dead_letters(queue: JobQueue = Depends(get_queue)):
    """Drop every task from the DLQ."""
    _require_connected(queue)
    try:
        removed = await queue.clear_dlq()
    except QueueUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    logger.warning(f"Operator cleared {removed} task(s) from DLQ")
    return {"removed": removed}
