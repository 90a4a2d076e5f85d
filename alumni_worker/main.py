"""Main entry point for the alumni worker service."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from alumni_worker import __version__
from alumni_worker.config import get_settings
from alumni_worker.lib.json_logger import configure_logging
from alumni_worker.queue import QueueUnavailableError
from alumni_worker.routes import dlq, health
from alumni_worker.routes.metrics import router as metrics_router

logger = logging.getLogger(__name__)

settings = get_settings()
configure_logging(settings.log_format, settings.log_level)


async def _run_consumer(pool_holder: dict) -> None:
    from alumni_worker.queue.worker import run_worker

    try:
        await run_worker(pool_holder=pool_holder)
    except QueueUnavailableError as e:
        # Operational endpoints stay up so /health/ready can report it
        logger.error(f"Background worker not started: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the background worker pool alongside the HTTP server."""
    pool_holder: dict = {}
    worker_task = asyncio.create_task(_run_consumer(pool_holder))
    logger.info("Background worker pool started")
    yield
    # Shutdown: let in-flight tasks finish, then cancel whatever is left
    pool = pool_holder.get("pool")
    if pool is not None:
        pool.stop()
    try:
        await asyncio.wait_for(worker_task, timeout=settings.default_task_timeout_seconds)
    except asyncio.TimeoutError:
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass
    logger.info("Background worker pool stopped")


app = FastAPI(
    title="Alumni Worker",
    description="Background task processing: CRM sync, sequence email, job matching, webhooks, donations",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(metrics_router, tags=["Metrics"])
app.include_router(dlq.router, tags=["DLQ"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Alumni Worker",
        "version": __version__,
        "status": "running"
    }


if __name__ == "__main__":
    uvicorn.run(
        "alumni_worker.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug
    )
