from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Protocol

from .exceptions import InferenceError
from .models import GeneratedImage, GenerationStatus
from .queue.base import GenerationQueue
from .store.base import GenerationStore
from .workflows import WorkflowRegistry, default_registry

logger = logging.getLogger("genbridge.worker")


class InferenceRunner(Protocol):
    """What the worker needs from the inference server client."""

    async def queue_prompt(self, workflow: dict[str, Any]) -> str: ...

    async def wait_for_completion(self, prompt_id: str) -> dict[str, Any]: ...

    def extract_images(self, history: dict[str, Any]) -> list[GeneratedImage]: ...


class GenerationWorker:
    """Takes queued generations, runs them on the inference server, records the outcome."""

    def __init__(
        self,
        queue: GenerationQueue,
        store: GenerationStore,
        inference: InferenceRunner,
        registry: WorkflowRegistry | None = None,
        *,
        worker_id: str | None = None,
        timeout_seconds: float | None = None,
    ):
        self._queue = queue
        self._store = store
        self._inference = inference
        self._registry = registry or default_registry()
        self._worker_id = worker_id or f"worker-{id(self)}"
        self._timeout_seconds = timeout_seconds

        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._current_generation_id: str | None = None

    def start(self) -> asyncio.Task[None]:
        """Start worker."""
        if self._task and not self._task.done():
            return self._task

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=f"worker-{self._worker_id}")
        logger.info(f"Worker {self._worker_id} started")
        return self._task

    async def stop(self, graceful: bool = True, grace_seconds: float = 30) -> None:
        self._stop_event.set()
        if self._task is None:
            return
        if graceful and self._current_generation_id:
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=grace_seconds)
            except asyncio.TimeoutError:
                pass
        if not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        logger.info(f"Worker {self._worker_id} stopped")

    async def _run(self) -> None:
        """Main worker loop."""
        while not self._stop_event.is_set():
            try:
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue

                await self._handle_generation(item.generation_id)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Worker loop error: {e}")
                await asyncio.sleep(0.1)

    async def _handle_generation(self, generation_id: str) -> None:
        """Run a single generation to a terminal status."""
        self._current_generation_id = generation_id
        try:
            generation = await self._store.get(generation_id)
            if not generation:
                logger.warning(f"Generation not found: {generation_id}")
                return

            if not generation.status.is_active():
                logger.info(f"Skipping finished generation {generation_id}: {generation.status.value}")
                return

            try:
                workflow = self._registry.build(generation.prompt, generation.settings_dict)
            except ValueError as e:
                await self._fail(generation_id, str(e))
                return

            try:
                prompt_id = await self._inference.queue_prompt(workflow)
            except InferenceError as e:
                await self._fail(generation_id, str(e))
                return

            # the progress bridge can only subscribe once this is stored
            await self._store.set_prompt_id(generation_id, prompt_id)

            try:
                history = await asyncio.wait_for(
                    self._inference.wait_for_completion(prompt_id),
                    timeout=self._timeout_seconds,
                )
            except asyncio.TimeoutError:
                await self._fail(
                    generation_id, f"Generation exceeded timeout of {self._timeout_seconds}s"
                )
                return
            except InferenceError as e:
                await self._fail(generation_id, str(e))
                return

            images = self._inference.extract_images(history)
            await self._store.attach_images(generation_id, images)
            await self._store.update_status(generation_id, GenerationStatus.completed)
            logger.info(f"Generation {generation_id} completed with {len(images)} image(s)")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Generation {generation_id} crashed")
            await self._fail(generation_id, str(e) or type(e).__name__)

        finally:
            self._current_generation_id = None

    async def _fail(self, generation_id: str, message: str) -> None:
        """Mark generation as failed."""
        await self._store.update_status(
            generation_id, GenerationStatus.failed, error_message=message
        )
        logger.error(f"Generation {generation_id} failed: {message}")
