"""Idempotency guard: time-boxed markers that suppress duplicate side effects.

Not a lock. There is no release on success; the marker simply expires, after
which a legitimate re-send is allowed.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

IDEMPOTENCY_PREFIX = "idem:"


def idempotency_key(*parts) -> str:
    """Build a composite key, e.g. ``idempotency_key("sequence", 4, "recipient", 9)``."""
    if not parts:
        raise ValueError("idempotency key needs at least one part")
    return ":".join(str(p) for p in parts)


class IdempotencyGuard:
    """Redis-backed duplicate suppression shared by all worker processes."""

    def __init__(self, client: redis.Redis, default_ttl: int = 3600, fail_open: bool = True):
        self._redis = client
        self.default_ttl = default_ttl
        self.fail_open = fail_open

    async def acquire(self, key: str, ttl: Optional[int] = None) -> bool:
        """
        Set the marker if absent.

        Returns True if this caller may perform the side effect, False if a
        marker already exists. When Redis is unreachable the configured
        ``fail_open`` answer is returned.
        """
        ttl = ttl or self.default_ttl
        try:
            acquired = await self._redis.set(f"{IDEMPOTENCY_PREFIX}{key}", "1", nx=True, ex=ttl)
        except (RedisError, OSError) as e:
            if self.fail_open:
                logger.warning(f"Idempotency store unavailable, proceeding without dedup for {key}: {e}")
                return True
            logger.error(f"Idempotency store unavailable, blocking side effect for {key}: {e}")
            return False

        if not acquired:
            logger.info(f"Duplicate suppressed by idempotency marker {key}")
        return bool(acquired)

    async def exists(self, key: str) -> bool:
        return bool(await self._redis.exists(f"{IDEMPOTENCY_PREFIX}{key}"))

    async def ttl(self, key: str) -> int:
        """Seconds until the marker expires (-2 if absent)."""
        return await self._redis.ttl(f"{IDEMPOTENCY_PREFIX}{key}")

    async def release(self, key: str) -> bool:
        """Drop a marker early: the guarded call failed or an operator replays a send."""
        return bool(await self._redis.delete(f"{IDEMPOTENCY_PREFIX}{key}"))
