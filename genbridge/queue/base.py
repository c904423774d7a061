from __future__ import annotations

import abc
from dataclasses import dataclass


@dataclass
class QueueItem:
    """Generation waiting for a worker."""

    generation_id: str
    priority: int = 100  # lower = higher priority
    retry_count: int = 0


class GenerationQueue(abc.ABC):
    """Abstract base for generation queues."""

    @abc.abstractmethod
    async def put(self, item: QueueItem) -> None:
        """Add item to queue."""
        ...

    @abc.abstractmethod
    async def get(self) -> QueueItem:
        """Get next item from queue."""
        ...

    @abc.abstractmethod
    async def discard(self, generation_id: str) -> bool:
        """Drop a waiting generation. False if it was not queued."""
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        """Close queue."""
        ...

    @abc.abstractmethod
    def qsize(self) -> int:
        """Get queue size."""
        ...
