from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from .base import GenerationQueue, QueueItem

logger = logging.getLogger("genbridge.queue.redis")

try:
    import redis.asyncio as aioredis

    REDIS_AVAILABLE = True
except ImportError:
    REDIS_AVAILABLE = False
    logger.warning("redis package not available")

# priority dominates; enqueue time keeps FIFO order within a priority
_PRIORITY_WEIGHT = 1e10


class RedisQueue(GenerationQueue):
    """Redis-backed priority queue, for workers running outside the web process."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        queue_name: str = "genbridge:queue",
        *,
        client: Any = None,
        **redis_kwargs: Any,
    ):
        if client is None and not REDIS_AVAILABLE:
            raise ImportError("redis package required for RedisQueue")

        self._redis_url = redis_url
        self._queue_name = queue_name
        self._redis_kwargs = redis_kwargs
        self._redis = client
        self._closed = False
        self._size = 0

    async def _ensure_redis(self):
        """Ensure Redis connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                **self._redis_kwargs,
            )
        return self._redis

    async def put(self, item: QueueItem) -> None:
        """Add item to Redis sorted set by priority."""
        if self._closed:
            raise RuntimeError("Queue is closed")

        redis = await self._ensure_redis()
        data = json.dumps(
            {
                "generation_id": item.generation_id,
                "priority": item.priority,
                "retry_count": item.retry_count,
            }
        )
        await redis.zadd(self._queue_name, {data: item.priority * _PRIORITY_WEIGHT + time.time()})
        self._size += 1

    async def get(self) -> QueueItem:
        """Get highest priority item (lowest score)."""
        redis = await self._ensure_redis()

        while not self._closed:
            result = await redis.bzpopmin(self._queue_name, timeout=1)
            if result:
                _, data, _ = result
                item_dict = json.loads(data)
                self._size = max(0, self._size - 1)
                return QueueItem(
                    generation_id=item_dict["generation_id"],
                    priority=item_dict["priority"],
                    retry_count=item_dict.get("retry_count", 0),
                )
            await asyncio.sleep(0.1)

        raise RuntimeError("Queue is closed")

    async def discard(self, generation_id: str) -> bool:
        """Remove every queued entry for a generation."""
        redis = await self._ensure_redis()
        removed = 0
        for data in await redis.zrange(self._queue_name, 0, -1):
            if json.loads(data).get("generation_id") == generation_id:
                removed += await redis.zrem(self._queue_name, data)
        self._size = max(0, self._size - removed)
        return removed > 0

    async def close(self) -> None:
        """Close Redis connection."""
        self._closed = True
        if self._redis is not None:
            await self._redis.aclose()

    def qsize(self) -> int:
        """Items put through this instance and not yet taken (other producers are not counted)."""
        return self._size
