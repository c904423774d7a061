from __future__ import annotations

import builtins
import logging
from typing import Any

from .models import Generation, GenerationStatus
from .queue.base import GenerationQueue, QueueItem
from .store.base import GenerationStore
from .util.ids import new_generation_id

logger = logging.getLogger("genbridge.manager")


class GenerationManager:
    """High-level generation API."""

    def __init__(self, store: GenerationStore, queue: GenerationQueue):
        self._store = store
        self._queue = queue

    async def submit(
        self,
        prompt: str,
        settings: dict[str, Any] | None = None,
        *,
        priority: int = 100,
    ) -> Generation:
        """Create a pending generation and queue it for a worker."""
        generation = Generation(
            id=new_generation_id(),
            prompt=prompt,
            settings=dict(settings or {}),
        )
        await self._store.create(generation)
        await self._queue.put(QueueItem(generation_id=generation.id, priority=priority))

        logger.info(f"Submitted generation {generation.id} ({generation.declared_steps} steps)")
        return generation

    async def get(self, generation_id: str) -> Generation | None:
        """Get generation by ID."""
        return await self._store.get(generation_id)

    async def list(
        self,
        page: int = 1,
        page_size: int = 10,
        status: GenerationStatus | None = None,
    ) -> tuple[builtins.list[Generation], int]:
        """List generations newest first, one page at a time (pages are 1-based)."""
        offset = (max(page, 1) - 1) * page_size
        return await self._store.list(status, page_size, offset)

    async def delete(self, generation_id: str) -> bool:
        """Delete generation, dropping it from the queue if it has not started."""
        await self._queue.discard(generation_id)
        deleted = await self._store.delete(generation_id)
        if deleted:
            logger.info(f"Deleted generation {generation_id}")
        return deleted

    async def retry(self, generation_id: str, priority: int = 100) -> Generation | None:
        """Re-queue a failed generation."""
        generation = await self._store.get(generation_id)
        if not generation:
            return None

        if generation.status != GenerationStatus.failed:
            logger.warning(
                f"Cannot retry generation {generation_id} with status {generation.status.value}"
            )
            return None

        generation = await self._store.reset_for_retry(generation_id)
        await self._queue.put(QueueItem(generation_id=generation_id, priority=priority, retry_count=1))

        logger.info(f"Retrying generation {generation_id}")
        return generation

    def store(self) -> GenerationStore:
        """Get store instance."""
        return self._store

    def queue(self) -> GenerationQueue:
        """Get queue instance."""
        return self._queue
