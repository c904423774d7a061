# tests/conftest.py
import asyncio
import os
import typing as t
from pathlib import Path

import pytest

from genbridge.models import GeneratedImage, Generation
from genbridge.queue.memory import MemoryQueue
from genbridge.store.sqlite import SqliteGenerationStore


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def tmp_db_path(tmp_path: Path) -> str:
    return str(tmp_path / "generations.db")


@pytest.fixture()
async def store(tmp_db_path: str):
    s = SqliteGenerationStore(db_path=tmp_db_path)
    await s._ensure()  # warm schema
    try:
        yield s
    finally:
        await s.close()


@pytest.fixture()
def queue():
    return MemoryQueue()


@pytest.fixture()
def make_generation():
    def _mk(prompt: str = "a lighthouse at dusk", **kwargs) -> Generation:
        return Generation(id=f"gen_{os.urandom(8).hex()}", prompt=prompt, **kwargs)

    return _mk


async def wait_for(
    predicate: t.Callable[[], t.Awaitable[bool]] | t.Callable[[], bool], timeout=2.0, interval=0.01
):
    end = asyncio.get_event_loop().time() + timeout
    while asyncio.get_event_loop().time() < end:
        res = await predicate() if asyncio.iscoroutinefunction(predicate) else predicate()
        if res:
            return True
        await asyncio.sleep(interval)
    return False


class FakeSubscription:
    def __init__(self, owner: "FakeInference", prompt_id: str, callback):
        self._owner = owner
        self.prompt_id = prompt_id
        self.callback = callback
        self.unsubscribe_calls = 0

    def unsubscribe(self) -> None:
        self.unsubscribe_calls += 1
        if self.callback in self._owner.callbacks.get(self.prompt_id, []):
            self._owner.callbacks[self.prompt_id].remove(self.callback)


class FakeInference:
    """In-memory stand-in for the ComfyUI client."""

    def __init__(self, healthy: bool = True, history: dict | None = None):
        self.healthy = healthy
        self.callbacks: dict[str, list] = {}
        self.subscriptions: list[FakeSubscription] = []
        self.queued: list[dict] = []
        self.history = history or {
            "status": {"completed": True, "status_str": "success"},
            "outputs": {"9": {"images": [{"filename": "Flux2_00001_.png", "subfolder": ""}]}},
        }
        self.queue_error: Exception | None = None
        self.wait_error: Exception | None = None
        self.wait_delay = 0.0
        self.closed = False

    async def health_check(self) -> bool:
        return self.healthy

    def subscribe(self, prompt_id: str, on_tick) -> FakeSubscription:
        self.callbacks.setdefault(prompt_id, []).append(on_tick)
        sub = FakeSubscription(self, prompt_id, on_tick)
        self.subscriptions.append(sub)
        return sub

    def tick(self, prompt_id: str, value: int, max_: int) -> None:
        for cb in list(self.callbacks.get(prompt_id, [])):
            cb(value, max_)

    async def queue_prompt(self, workflow: dict) -> str:
        if self.queue_error:
            raise self.queue_error
        self.queued.append(workflow)
        return f"prompt-{len(self.queued)}"

    async def wait_for_completion(self, prompt_id: str) -> dict:
        if self.wait_delay:
            await asyncio.sleep(self.wait_delay)
        if self.wait_error:
            raise self.wait_error
        return self.history

    def extract_images(self, history: dict) -> list[GeneratedImage]:
        return [
            GeneratedImage(filename=img["filename"], subfolder=img.get("subfolder", ""))
            for out in history.get("outputs", {}).values()
            for img in out.get("images", [])
        ]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def inference():
    return FakeInference()


class NoFeatureStore:
    """A minimal, fake store to cover hasattr(store, '_ensure') branches in lifecycle."""

    async def recover_stale_generations(self, max_age_seconds: int = 3600) -> int:
        raise RuntimeError("recovery unsupported")

    async def close(self):
        pass
