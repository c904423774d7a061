"""
Client side of the progress stream.

``ProgressConsumer`` is the state machine a front-end keeps per active
generation; ``ProgressWatcher`` drives it from the bridge's SSE endpoint
over httpx, reconnecting with backoff the way a browser EventSource does.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

import httpx

from .events import (
    CompleteEvent,
    ConnectedEvent,
    ErrorEvent,
    ProgressEvent,
    ProgressUpdateEvent,
    parse_event,
)
from .models import DEFAULT_STEPS

logger = logging.getLogger("genbridge.consumer")

LOST_CONNECTION_MESSAGE = "Lost connection to progress server."


class ConsumerPhase(str, Enum):
    """Client-side generation states."""

    idle = "idle"
    connecting = "connecting"
    live = "live"
    complete = "complete"
    error = "error"

    def is_generating(self) -> bool:
        return self in (self.connecting, self.live)


@dataclass
class ProgressState:
    """Last known progress of the active generation."""

    step: int = 0
    total_steps: int = DEFAULT_STEPS
    percentage: int = 0
    status: str | None = None
    image_index: int = 1
    total_images: int = 1
    is_stalled: bool = False
    error: str | None = None


Identity = tuple[str, int, int]


class ProgressConsumer:
    """Interprets bridge events into local progress state.

    ``on_notify`` fires once when a generation completes (the UI plays a
    sound); ``on_complete(generation_id)`` fires once so the caller can
    refetch the finished record.
    """

    def __init__(
        self,
        on_complete: Callable[[str], Any] | None = None,
        on_notify: Callable[[], Any] | None = None,
    ):
        self._on_complete = on_complete
        self._on_notify = on_notify
        self.reset()

    def reset(self) -> None:
        self.generation_id: str | None = None
        self.phase = ConsumerPhase.idle
        self.progress: ProgressState | None = None
        self.generation_complete = False
        self.image_index = 1
        self.total_images = 1

    @property
    def is_generating(self) -> bool:
        return self.phase.is_generating()

    @property
    def identity(self) -> Identity | None:
        if self.generation_id is None:
            return None
        return (self.generation_id, self.image_index, self.total_images)

    def begin(
        self,
        generation_id: str,
        total_steps: int = DEFAULT_STEPS,
        image_index: int = 1,
        total_images: int = 1,
    ) -> None:
        """Enter Generating for a freshly submitted generation."""
        self.generation_id = generation_id
        self.image_index = image_index
        self.total_images = total_images
        self.generation_complete = False
        self.phase = ConsumerPhase.connecting
        self.progress = ProgressState(
            step=0,
            total_steps=total_steps,
            percentage=0,
            status="Starting generation...",
            image_index=image_index,
            total_images=total_images,
        )

    def handle_message(self, raw: str) -> ProgressEvent | None:
        """Apply one SSE data payload. Malformed or unknown messages are dropped."""
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug("Dropping malformed progress message")
            return None
        if not isinstance(data, dict):
            return None
        event = parse_event(data)
        if event is None:
            return None
        self.apply(event)
        return event

    def apply(self, event: ProgressEvent) -> None:
        if not self.is_generating:
            logger.debug(f"Ignoring {event.type} event while {self.phase.value}")
            return
        prev = self.progress or ProgressState(
            image_index=self.image_index, total_images=self.total_images
        )

        if isinstance(event, ConnectedEvent):
            # a connected event reordered behind complete must not undo it
            if self.generation_complete:
                return
            self.progress = replace(
                prev,
                step=0,
                total_steps=event.total_steps or prev.total_steps,
                percentage=0,
                status=event.status or "Connected to ComfyUI, waiting for progress...",
                image_index=event.image_index or self.image_index,
                total_images=event.total_images or self.total_images,
                is_stalled=False,
                error=None,
            )
            self.phase = ConsumerPhase.live

        elif isinstance(event, ProgressUpdateEvent):
            percentage = prev.percentage
            if event.percentage is not None:
                percentage = max(prev.percentage, event.percentage)
            self.progress = replace(
                prev,
                step=event.current_step if event.current_step is not None else prev.step,
                total_steps=event.total_steps or prev.total_steps,
                percentage=percentage,
                status=event.status or prev.status or "Generating...",
                image_index=event.image_index or self.image_index,
                total_images=event.total_images or self.total_images,
                is_stalled=False,
                error=None,
            )
            self.phase = ConsumerPhase.live

        elif isinstance(event, CompleteEvent):
            self.generation_complete = True
            self.progress = replace(
                prev,
                step=event.current_step if event.current_step is not None else prev.step,
                total_steps=event.total_steps or prev.total_steps,
                percentage=100,
                status=event.status or "Complete",
                image_index=event.image_index or self.image_index,
                total_images=event.total_images or self.total_images,
                is_stalled=False,
                error=None,
            )
            self.phase = ConsumerPhase.complete
            logger.info(f"Generation {self.generation_id} complete")
            self._fire(self._on_notify)
            if self._on_complete is not None:
                self._fire(self._on_complete, self.generation_id)

        elif isinstance(event, ErrorEvent):
            # partial progress stays visible
            self.progress = replace(
                prev,
                error=event.message or "Generation failed",
                status=event.status or "Error",
                is_stalled=True,
            )
            self.phase = ConsumerPhase.error
            logger.warning(f"Generation {self.generation_id} failed: {self.progress.error}")

    def handle_transport_error(self) -> None:
        """The stream itself dropped. Mark stalled; reconnecting is the transport's job."""
        if not self.is_generating:
            return
        prev = self.progress or ProgressState(
            image_index=self.image_index, total_images=self.total_images
        )
        self.progress = replace(
            prev,
            error=LOST_CONNECTION_MESSAGE,
            status="Connection lost",
            is_stalled=True,
        )

    def _fire(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Progress consumer callback failed")


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the data payload of each SSE event in a line stream."""
    data: list[str] = []
    async for line in lines:
        if not line:
            if data:
                yield "\n".join(data)
                data = []
            continue
        if line.startswith(":"):
            continue  # comment / keep-alive ping
        field, _, value = line.partition(":")
        if field == "data":
            data.append(value[1:] if value.startswith(" ") else value)
    if data:
        yield "\n".join(data)


class ProgressWatcher:
    """Keeps exactly one bridge subscription open per (generation, image index, total images)."""

    def __init__(
        self,
        base_url: str,
        consumer: ProgressConsumer | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        api_prefix: str = "/api",
        retry_initial: float = 1.0,
        retry_max: float = 30.0,
    ):
        self.consumer = consumer or ProgressConsumer()
        self._http = http_client or httpx.AsyncClient(base_url=base_url, timeout=None)
        self._owns_http = http_client is None
        self._prefix = api_prefix.rstrip("/")
        self._retry_initial = retry_initial
        self._retry_max = retry_max

        self._identity: Identity | None = None
        self._task: asyncio.Task[None] | None = None
        self._refreshed_for: str | None = None
        self.generation: dict[str, Any] | None = None
        self.connections_opened = 0

    @property
    def identity(self) -> Identity | None:
        return self._identity

    async def start_generation(
        self,
        prompt: str,
        settings: dict[str, Any] | None = None,
        *,
        image_index: int = 1,
        total_images: int = 1,
    ) -> str:
        """Submit a generation and start following its progress."""
        settings = settings or {}
        response = await self._http.post(
            f"{self._prefix}/generations", json={"prompt": prompt, "settings": settings}
        )
        response.raise_for_status()
        body = response.json()
        generation_id = body["id"]
        steps = body.get("declared_steps") or DEFAULT_STEPS
        self.consumer.begin(generation_id, steps, image_index, total_images)
        await self.follow(generation_id, image_index, total_images)
        return generation_id

    async def follow(self, generation_id: str, image_index: int = 1, total_images: int = 1) -> None:
        """Open the subscription for this identity unless it is already open."""
        identity = (generation_id, image_index, total_images)
        if identity == self._identity and self._task is not None and not self._task.done():
            return
        await self._teardown()
        self._identity = identity
        self._task = asyncio.create_task(self._run(identity), name=f"progress-watch-{generation_id}")

    async def wait(self) -> None:
        """Wait until the current subscription ends."""
        if self._task is not None:
            await self._task

    async def close(self) -> None:
        await self._teardown()
        self._identity = None
        if self._owns_http:
            await self._http.aclose()

    async def _teardown(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run(self, identity: Identity) -> None:
        generation_id, image_index, total_images = identity
        params = {"promptId": generation_id, "imageIndex": image_index, "totalImages": total_images}
        delay = self._retry_initial

        while self.consumer.is_generating:
            try:
                async with self._http.stream(
                    "GET", f"{self._prefix}/generate/progress", params=params
                ) as response:
                    if response.status_code != 200:
                        # EventSource gives up on a non-200 open
                        logger.error(
                            f"Progress stream for {generation_id} refused: {response.status_code}"
                        )
                        self.consumer.handle_transport_error()
                        return
                    self.connections_opened += 1
                    delay = self._retry_initial
                    async for payload in iter_sse_data(response.aiter_lines()):
                        self.consumer.handle_message(payload)
                        if not self.consumer.is_generating:
                            break
            except httpx.HTTPError as e:
                logger.warning(f"Progress stream for {generation_id} failed: {e!r}")

            if not self.consumer.is_generating:
                break
            self.consumer.handle_transport_error()
            logger.info(f"Reconnecting progress stream for {generation_id} in {delay:.1f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._retry_max)

        if self.consumer.phase == ConsumerPhase.complete:
            await self._refresh(generation_id)

    async def _refresh(self, generation_id: str) -> None:
        """Fetch the finished record once; images are not sent over the stream."""
        if self._refreshed_for == generation_id:
            return
        self._refreshed_for = generation_id
        try:
            response = await self._http.get(f"{self._prefix}/generations/{generation_id}")
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to refetch generation {generation_id}: {e!r}")
            return
        self.generation = response.json()
