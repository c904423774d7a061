from __future__ import annotations

import asyncio
import heapq
import itertools
from dataclasses import dataclass, field

from .base import GenerationQueue, QueueItem


@dataclass(order=True)
class _Entry:
    priority: int
    seq: int
    item: QueueItem = field(compare=False)
    discarded: bool = field(default=False, compare=False)


class MemoryQueue(GenerationQueue):
    """In-process priority queue, FIFO within a priority.

    A generation id is queued at most once; putting it again while it is
    still waiting keeps the better of the two priorities.
    """

    def __init__(self) -> None:
        self._heap: list[_Entry] = []
        self._waiting: dict[str, _Entry] = {}
        self._seq = itertools.count()
        self._ready = asyncio.Condition()
        self._closed = False

    async def put(self, item: QueueItem) -> None:
        if self._closed:
            raise RuntimeError("Queue is closed")

        async with self._ready:
            current = self._waiting.get(item.generation_id)
            if current is not None:
                if current.priority <= item.priority:
                    return
                current.discarded = True
            entry = _Entry(item.priority, next(self._seq), item)
            self._waiting[item.generation_id] = entry
            heapq.heappush(self._heap, entry)
            self._ready.notify()

    async def get(self) -> QueueItem:
        async with self._ready:
            while True:
                while self._heap and self._heap[0].discarded:
                    heapq.heappop(self._heap)
                if self._heap:
                    entry = heapq.heappop(self._heap)
                    del self._waiting[entry.item.generation_id]
                    return entry.item
                if self._closed:
                    raise RuntimeError("Queue is closed")
                await self._ready.wait()

    async def discard(self, generation_id: str) -> bool:
        async with self._ready:
            entry = self._waiting.pop(generation_id, None)
            if entry is None:
                return False
            entry.discarded = True
            return True

    async def close(self) -> None:
        async with self._ready:
            self._closed = True
            self._ready.notify_all()

    def qsize(self) -> int:
        return len(self._waiting)
