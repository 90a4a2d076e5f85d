"""Health check endpoints."""

from fastapi import APIRouter
from datetime import datetime, timezone
import asyncio
import logging

import httpx
from redis.exceptions import RedisError

from alumni_worker import __version__
from alumni_worker.config import get_settings
from alumni_worker.queue import job_queue

router = APIRouter()
logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@router.get("/")
async def health_check():
    """Basic health check - always returns ok if service is running."""
    return {
        "status": "ok",
        "timestamp": _now(),
        "service": "alumni-worker",
        "version": __version__,
    }


@router.get("/ready")
async def readiness_check():
    """
    Readiness check including all dependencies.
    Returns detailed status of each service connection.
    """
    settings = get_settings()
    checks = {
        "redis": await _check_redis(),
        "backend": await _check_backend(settings.backend_url),
    }
    overall_status = "ok"
    if any(check["status"] != "ok" for check in checks.values()):
        overall_status = "degraded"

    return {
        "status": overall_status,
        "timestamp": _now(),
        "checks": checks,
        "config": {
            "backend_url": settings.backend_url,
            "redis_url": settings.redis_url.split("@")[-1],
            "queues": settings.queue_names,
        },
    }


async def _check_redis() -> dict:
    """Check Redis connection."""
    try:
        if not await job_queue.connect():
            return {"status": "error", "error": "Redis unavailable"}
        loop = asyncio.get_running_loop()
        started = loop.time()
        await asyncio.wait_for(job_queue.client.ping(), timeout=5.0)
        return {"status": "ok", "latency_ms": round((loop.time() - started) * 1000, 1)}
    except asyncio.TimeoutError:
        return {"status": "timeout", "error": "Connection timed out"}
    except (RedisError, OSError) as e:
        logger.warning(f"Redis health check failed: {e}")
        return {"status": "error", "error": str(e)}


async def _check_backend(backend_url: str) -> dict:
    """Check Backend API connectivity."""
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{backend_url}/api/health")
            if response.status_code == 200:
                return {"status": "ok", "url": backend_url}
            else:
                return {"status": "error", "http_status": response.status_code}
    except httpx.TimeoutException:
        return {"status": "timeout", "error": "Connection timed out"}
    except httpx.HTTPError as e:
        logger.warning(f"Backend health check failed: {e}")
        return {"status": "error", "error": str(e)}
