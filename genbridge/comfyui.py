"""
ComfyUI client: HTTP calls for queuing workflows and a shared WebSocket
listener that fans step-progress ticks out to per-prompt callbacks.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
import websockets

from .exceptions import InferenceError, InferenceUnavailableError
from .models import GeneratedImage
from .util.ids import new_client_id

logger = logging.getLogger("genbridge.comfyui")

DEFAULT_COMFYUI_URL = "http://127.0.0.1:8000"
HEALTH_CHECK_TIMEOUT = 5.0

TickCallback = Callable[[int, int], None]


def websocket_url(base_url: str, client_id: str) -> str:
    """Derive the ComfyUI WebSocket endpoint from its HTTP base URL."""
    parts = urlsplit(base_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    path = parts.path.rstrip("/") + "/ws"
    return urlunsplit((scheme, parts.netloc, path, urlencode({"clientId": client_id}), ""))


def with_client_id(ws_url: str, client_id: str) -> str:
    """Add ``clientId`` to a configured WebSocket URL; ComfyUI routes progress by it."""
    parts = urlsplit(ws_url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    if any(key == "clientId" for key, _ in query):
        return ws_url
    query.append(("clientId", client_id))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class Subscription:
    """Handle for one registered progress callback.

    ``unsubscribe()`` is idempotent; the handle can also be used as a
    context manager to guarantee release.
    """

    def __init__(self, client: ComfyUIClient, prompt_id: str, callback: TickCallback):
        self._client = client
        self.prompt_id = prompt_id
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._client._remove_callback(self.prompt_id, self.callback)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()


class ComfyUIClient:
    """Client for a ComfyUI inference server."""

    def __init__(
        self,
        base_url: str = DEFAULT_COMFYUI_URL,
        *,
        ws_url: str | None = None,
        client_id: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        auto_listen: bool = True,
        reconnect_initial: float = 1.0,
        reconnect_max: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id or new_client_id()
        self.ws_url = (
            with_client_id(ws_url, self.client_id)
            if ws_url
            else websocket_url(self.base_url, self.client_id)
        )
        self._timeout = timeout
        self._http = http_client
        self._owns_http = http_client is None
        self._auto_listen = auto_listen
        self._reconnect_initial = reconnect_initial
        self._reconnect_max = reconnect_max

        self._callbacks: dict[str, list[TickCallback]] = {}
        self._inference_progress: dict[str, tuple[int, int]] = {}
        self._listener: asyncio.Task[None] | None = None
        self._closed = False

    # ── HTTP ──────────────────────────────────────────────────────

    def _ensure_http(self) -> httpx.AsyncClient:
        """Ensure HTTP client."""
        if self._http is None:
            self._http = httpx.AsyncClient(base_url=self.base_url, timeout=self._timeout)
        return self._http

    async def health_check(self) -> bool:
        """Check if the ComfyUI server is reachable."""
        try:
            response = await self._ensure_http().get(
                "/system_stats", timeout=HEALTH_CHECK_TIMEOUT
            )
        except httpx.HTTPError as e:
            logger.warning(f"ComfyUI health check failed: {e!r}")
            return False
        return response.is_success

    async def queue_prompt(self, workflow: dict[str, Any]) -> str:
        """Queue a workflow and return ComfyUI's prompt_id."""
        try:
            response = await self._ensure_http().post(
                "/prompt", json={"prompt": workflow, "client_id": self.client_id}
            )
        except httpx.HTTPError as e:
            raise InferenceUnavailableError(f"ComfyUI is not reachable: {e}") from e

        if not response.is_success:
            raise InferenceError(
                f"Failed to queue prompt: {response.status_code} - {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        data = response.json()
        prompt_id = data.get("prompt_id")
        if not prompt_id:
            raise InferenceError(f"ComfyUI returned no prompt_id: {data}")
        logger.info(f"Queued prompt {prompt_id}")
        return prompt_id

    async def get_history(self, prompt_id: str) -> dict[str, Any] | None:
        """Get execution history for a prompt."""
        response = await self._ensure_http().get(f"/history/{prompt_id}")
        if not response.is_success:
            raise InferenceError(
                f"Failed to get history: {response.status_code}",
                status_code=response.status_code,
            )
        return response.json().get(prompt_id)

    async def wait_for_completion(
        self, prompt_id: str, poll_interval: float = 0.5
    ) -> dict[str, Any]:
        """Poll history until the prompt finishes. No timeout: runs can take hours."""
        while True:
            history = await self.get_history(prompt_id)
            status = (history or {}).get("status") or {}

            if status.get("completed"):
                return history  # type: ignore[return-value]

            if status.get("status_str") == "error":
                errors = [
                    json.dumps(msg[1])
                    for msg in status.get("messages", [])
                    if msg and msg[0] == "execution_error"
                ]
                raise InferenceError(
                    f"Workflow execution failed: {', '.join(errors) or 'Unknown error'}"
                )

            await asyncio.sleep(poll_interval)

    def image_url(self, filename: str, subfolder: str = "", type: str = "output") -> str:
        query = urlencode({"filename": filename, "subfolder": subfolder, "type": type})
        return f"{self.base_url}/view?{query}"

    def extract_images(self, history: dict[str, Any]) -> list[GeneratedImage]:
        """Collect output image references from a history entry."""
        images = []
        for output in (history.get("outputs") or {}).values():
            for img in output.get("images", []):
                images.append(
                    GeneratedImage(
                        filename=img["filename"],
                        subfolder=img.get("subfolder", ""),
                        type=img.get("type", "output"),
                        url=self.image_url(
                            img["filename"], img.get("subfolder", ""), img.get("type", "output")
                        ),
                    )
                )
        return images

    # ── Progress subscriptions ───────────────────────────────────

    def subscribe(self, prompt_id: str, on_tick: TickCallback) -> Subscription:
        """Register ``on_tick(value, max)`` for a prompt's progress ticks."""
        self._callbacks.setdefault(prompt_id, []).append(on_tick)
        logger.debug(f"Subscribed to progress for {prompt_id}")
        if self._auto_listen:
            self._ensure_listener()
        return Subscription(self, prompt_id, on_tick)

    def subscriber_count(self, prompt_id: str) -> int:
        return len(self._callbacks.get(prompt_id, ()))

    def has_inference_progress(self, prompt_id: str) -> bool:
        return prompt_id in self._inference_progress

    def _remove_callback(self, prompt_id: str, callback: TickCallback) -> None:
        callbacks = self._callbacks.get(prompt_id)
        if not callbacks:
            return
        with contextlib.suppress(ValueError):
            callbacks.remove(callback)
        if not callbacks:
            del self._callbacks[prompt_id]
            self._inference_progress.pop(prompt_id, None)
        logger.debug(f"Unsubscribed from progress for {prompt_id}")

    def handle_message(self, data: dict[str, Any]) -> None:
        """Dispatch one decoded WebSocket message to registered callbacks."""
        msg_type = data.get("type")
        payload = data.get("data") or {}

        if msg_type in ("execution_progress", "progress"):
            prompt_id = payload.get("prompt_id")
            value, max_ = payload.get("value"), payload.get("max")
            if not prompt_id or value is None or max_ is None:
                return
            if msg_type == "progress":
                # KSampler steps; preferred over aggregate node progress from here on
                self._inference_progress[prompt_id] = (value, max_)
            self._dispatch(prompt_id, value, max_)

        elif msg_type == "progress_state":
            prompt_id = payload.get("prompt_id")
            nodes = payload.get("nodes")
            if not prompt_id or not isinstance(nodes, dict):
                return
            if prompt_id in self._inference_progress:
                return

            total_value = total_max = 0
            for node in nodes.values():
                if not isinstance(node, dict):
                    continue
                if node.get("value") is not None and node.get("max") is not None:
                    total_value += node["value"]
                    total_max += node["max"]
            if total_max > 0:
                self._dispatch(prompt_id, total_value, total_max)

        else:
            logger.debug(f"Ignoring ComfyUI message type: {msg_type}")

    def _dispatch(self, prompt_id: str, value: int, max_: int) -> None:
        callbacks = self._callbacks.get(prompt_id)
        if not callbacks:
            logger.debug(f"No callbacks registered for prompt {prompt_id}")
            return
        for callback in list(callbacks):
            try:
                callback(value, max_)
            except Exception:
                logger.exception(f"Progress callback failed for prompt {prompt_id}")

    def _ensure_listener(self) -> None:
        if self._closed:
            return
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self._listen(), name="comfyui-ws-listener")

    async def _listen(self) -> None:
        """Read the ComfyUI WebSocket while anyone is subscribed, reconnecting with backoff."""
        delay = self._reconnect_initial
        while self._callbacks and not self._closed:
            try:
                async with websockets.connect(self.ws_url) as ws:
                    logger.info(f"Connected to ComfyUI WebSocket at {self.ws_url}")
                    delay = self._reconnect_initial
                    async for raw in ws:
                        if isinstance(raw, bytes):
                            continue  # binary preview frames
                        try:
                            data = json.loads(raw)
                        except ValueError:
                            logger.warning("Discarding malformed ComfyUI message")
                            continue
                        if isinstance(data, dict):
                            self.handle_message(data)
                        if not self._callbacks:
                            break
            except asyncio.CancelledError:
                raise
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning(f"ComfyUI WebSocket error: {e!r}")
            if not self._callbacks or self._closed:
                break
            logger.info(f"Reconnecting to ComfyUI WebSocket in {delay:.1f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._reconnect_max)
        logger.info("ComfyUI WebSocket listener stopped")

    async def close(self) -> None:
        """Stop the listener and release HTTP resources."""
        self._closed = True
        if self._listener is not None and not self._listener.done():
            self._listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener
        self._listener = None
        self._callbacks.clear()
        self._inference_progress.clear()
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None
