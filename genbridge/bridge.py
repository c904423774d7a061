"""
Progress bridge: relays one generation's progress to one SSE client.

Two producers feed a single queue:

* the live channel, a ComfyUI WebSocket subscription keyed by the
  generation's prompt id, delivering step ticks;
* the fallback channel, a store poll every ``poll_interval`` seconds that
  detects completion or failure even when no tick ever arrives.

The consumer side (``events()``) yields whatever lands in the queue. The
first terminal event (complete or error) wins; it is always the last
event of the stream, and every exit path releases the poll task and the
subscription.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from collections.abc import AsyncIterator
from typing import Protocol

from .events import (
    CompleteEvent,
    ConnectedEvent,
    ErrorEvent,
    ProgressEvent,
    ProgressUpdateEvent,
)
from .models import DEFAULT_STEPS, Generation, GenerationStatus
from .store.base import GenerationStore

logger = logging.getLogger("genbridge.bridge")

DEFAULT_POLL_INTERVAL = 2.0


class SubscriptionHandle(Protocol):
    def unsubscribe(self) -> None: ...


class InferenceEventSource(Protocol):
    """What the bridge needs from the inference server client."""

    async def health_check(self) -> bool: ...

    def subscribe(self, prompt_id: str, on_tick) -> SubscriptionHandle: ...


def step_percentage(value: int, total_steps: int) -> int:
    """Percentage of ``total_steps`` reached, halves rounded up. Not clamped."""
    return int(math.floor(value * 100 / total_steps + 0.5))


class ProgressBridge:
    """Per-client relay of progress events for one generation."""

    def __init__(
        self,
        generation_id: str,
        image_index: int = 1,
        total_images: int = 1,
        *,
        store: GenerationStore,
        inference: InferenceEventSource,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        step_timeout: float | None = None,
        min_timeout: float = 600.0,
    ):
        if not generation_id:
            raise ValueError("generation_id is required")
        self.generation_id = generation_id
        self.image_index = image_index
        self.total_images = total_images
        self._store = store
        self._inference = inference
        self._poll_interval = poll_interval
        self._step_timeout = step_timeout
        self._min_timeout = min_timeout

        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._poll_task: asyncio.Task[None] | None = None
        self._subscription: SubscriptionHandle | None = None
        self._aborted = False
        self._terminated = False

        self.prompt_id: str | None = None
        self.total_steps = DEFAULT_STEPS
        self.last_step = 0
        self.last_percent = 0
        self.live_ticks = 0

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def terminated(self) -> bool:
        return self._terminated

    def timeout_seconds(self) -> float | None:
        """Overall stream cap for the declared step count, or None when disabled."""
        if not self._step_timeout:
            return None
        return max(self._min_timeout, self.total_steps * self._step_timeout)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield the normalized event stream until a terminal event or abort."""
        try:
            async for event in self._run():
                yield event
                if event.is_terminal:
                    return
        finally:
            if not self._terminated:
                logger.info(f"Client disconnected from progress of {self.generation_id}")
            self.abort()
            await self._join_poll()

    async def _run(self) -> AsyncIterator[ProgressEvent]:
        try:
            healthy = await self._inference.health_check()
        except Exception:
            logger.exception("Inference health check raised")
            healthy = False
        if not healthy:
            logger.error(f"ComfyUI health check failed for {self.generation_id}")
            yield self._terminal(ErrorEvent(message="ComfyUI is not running", status="Error"))
            return

        try:
            generation = await self._store.get(self.generation_id)
        except Exception as e:
            logger.exception(f"Failed to load generation {self.generation_id}")
            yield self._terminal(ErrorEvent(message=str(e) or "Failed to load generation", status="Error"))
            return
        if generation is None:
            logger.warning(f"Generation not found: {self.generation_id}")
            yield self._terminal(ErrorEvent(message="Generation not found", status="Error"))
            return

        self.prompt_id = generation.comfyui_prompt_id or None
        self.total_steps = generation.declared_steps
        logger.info(
            f"Tracking {self.generation_id} (prompt={self.prompt_id}, steps={self.total_steps}, "
            f"image {self.image_index}/{self.total_images}, status={generation.status.value})"
        )

        yield ConnectedEvent(
            current_step=0,
            total_steps=self.total_steps,
            percentage=0,
            image_index=self.image_index,
            total_images=self.total_images,
            status="Connected to ComfyUI",
        )
        yield ProgressUpdateEvent(
            current_step=0,
            total_steps=self.total_steps,
            percentage=0,
            image_index=self.image_index,
            total_images=self.total_images,
            status="Waiting for progress...",
        )

        self._attach()

        timeout = self.timeout_seconds()
        deadline = None if timeout is None else asyncio.get_running_loop().time() + timeout
        while True:
            if deadline is None:
                event = await self._queue.get()
            else:
                remaining = deadline - asyncio.get_running_loop().time()
                try:
                    event = await asyncio.wait_for(self._queue.get(), timeout=max(remaining, 0))
                except asyncio.TimeoutError:
                    logger.warning(f"Progress stream for {self.generation_id} timed out after {timeout}s")
                    sent = self._send(ErrorEvent(message="Generation timed out", status="Error"))
                    if not sent and self._queue.empty():
                        return
                    deadline = None
                    continue
            yield event
            if event.is_terminal:
                return

    def _attach(self) -> None:
        """Start both producers."""
        if self.prompt_id:
            self._subscription = self._inference.subscribe(self.prompt_id, self._on_tick)
        else:
            logger.warning(f"No ComfyUI prompt id recorded for {self.generation_id}; polling only")
        self._poll_task = asyncio.create_task(
            self._poll(), name=f"progress-poll-{self.generation_id}"
        )

    def _on_tick(self, value: int, max_: int) -> None:
        """Live channel. ``max_`` from ComfyUI is unreliable; the declared step count is used."""
        if self._aborted or self._terminated:
            return
        if self.last_percent >= 100:
            return
        percent = step_percentage(value, self.total_steps)
        if percent < self.last_percent:
            # aggregate node progress can run ahead of the first sampler tick
            logger.debug(f"Dropping regressing tick for {self.generation_id}: {percent}% < {self.last_percent}%")
            return
        self.live_ticks += 1
        self.last_step = value
        self.last_percent = percent
        logger.debug(f"Tick for {self.generation_id}: {value}/{self.total_steps} ({percent}%)")
        self._send(
            ProgressUpdateEvent(
                current_step=value,
                total_steps=self.total_steps,
                percentage=percent,
                image_index=self.image_index,
                total_images=self.total_images,
                status=f"Step {value} of {max_}",
            )
        )

    async def _poll(self) -> None:
        """Fallback channel: watch the stored status until it is terminal."""
        while not self._aborted and not self._terminated:
            try:
                generation = await self._store.get(self.generation_id)
            except Exception as e:
                logger.exception(f"Polling failed for {self.generation_id}")
                self._send(ErrorEvent(message=str(e) or "Polling failed", status="Error"))
                return

            if self._check_record(generation):
                return
            await asyncio.sleep(self._poll_interval)

    def _check_record(self, generation: Generation | None) -> bool:
        """Emit the terminal event a polled record calls for. True when the stream is done."""
        if generation is None:
            self._send(ErrorEvent(message="Generation not found", status="Error"))
            return True
        if generation.status == GenerationStatus.completed:
            self._send(
                CompleteEvent(
                    current_step=self.last_step or self.total_steps,
                    total_steps=self.total_steps,
                    percentage=100,
                    image_index=self.image_index,
                    total_images=self.total_images,
                    status=f"Image {self.image_index} of {self.total_images} - Generation complete!",
                )
            )
            return True
        if generation.status == GenerationStatus.failed:
            self._send(
                ErrorEvent(message=generation.error_message or "Generation failed", status="Error")
            )
            return True
        return False

    def _terminal(self, event: ProgressEvent) -> ProgressEvent:
        self._terminated = True
        self._release()
        return event

    def _send(self, event: ProgressEvent) -> bool:
        """Queue an event unless the stream is aborted or already terminal."""
        if self._aborted or self._terminated:
            return False
        if event.is_terminal:
            self._terminal(event)
            logger.info(f"Progress stream for {self.generation_id} ended with {event.type}")
        self._queue.put_nowait(event)
        return True

    async def _join_poll(self) -> None:
        """Wait for the poll task to finish after it was released."""
        task, self._poll_task = self._poll_task, None
        if task is None or task is asyncio.current_task():
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def abort(self) -> None:
        """Stop producing: suppress further events and release both producers."""
        self._aborted = True
        self._release()

    def _release(self) -> None:
        task = self._poll_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.unsubscribe()
