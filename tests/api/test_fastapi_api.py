import asyncio
import json
import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import FakeInference
from genbridge.config import Settings
from genbridge.exceptions import InferenceError
from genbridge.fastapi.deps import get_generation_manager, get_inference
from genbridge.fastapi.lifecycle import setup_genbridge
from genbridge.queue.base import GenerationQueue, QueueItem
from genbridge.queue.memory import MemoryQueue
from genbridge.store.sqlite import SqliteGenerationStore


class IdleQueue(GenerationQueue):
    def __init__(self):
        self._items = []
        self._closed = False

    async def put(self, item: QueueItem) -> None:
        self._items.append(item)

    async def get(self) -> QueueItem:
        while True:
            await asyncio.sleep(10)

    async def discard(self, generation_id: str) -> bool:
        before = len(self._items)
        self._items = [i for i in self._items if i.generation_id != generation_id]
        return len(self._items) != before

    async def close(self) -> None:
        self._closed = True

    def qsize(self) -> int:
        return len(self._items)


@pytest.fixture(autouse=True)
def _fresh_sse_exit_event():
    # sse-starlette keeps a process-wide exit event bound to the first loop that used it
    from sse_starlette.sse import AppStatus

    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None
    yield


def _make_app(db_path: str, queue: GenerationQueue | None = None, inference=None, worker_count=0):
    app = FastAPI()
    settings = Settings(GENBRIDGE_DB_PATH=db_path, GENBRIDGE_POLL_INTERVAL_SECONDS=0.01)
    setup_genbridge(
        app,
        settings,
        store=SqliteGenerationStore(db_path),
        queue=queue or IdleQueue(),
        inference=inference or FakeInference(),
        worker_count=worker_count,
    )
    return app


def _sse_events(text: str) -> list[dict]:
    return [json.loads(line[len("data:"):]) for line in text.splitlines() if line.startswith("data:")]


def _wait_status(client: TestClient, gid: str, status: str, timeout: float = 3.0) -> dict:
    end = time.monotonic() + timeout
    body = {}
    while time.monotonic() < end:
        body = client.get(f"/api/generations/{gid}").json()
        if body.get("status") == status:
            return body
        time.sleep(0.02)
    raise AssertionError(f"{gid} never reached {status}: {body}")


def test_deps_guard_raises_without_setup():
    class Dummy:
        pass

    d = Dummy()
    d.app = Dummy()
    d.app.state = Dummy()
    with pytest.raises(RuntimeError):
        get_generation_manager(d)
    with pytest.raises(RuntimeError):
        get_inference(d)


def test_generation_routes_and_schema_validation(tmp_db_path):
    app = _make_app(tmp_db_path)
    with TestClient(app) as client:
        r = client.post("/api/generations", json={"prompt": "a red fox", "settings": {"steps": 30}})
        assert r.status_code == 202
        body = r.json()
        gid = body["id"]
        assert body["status"] == "pending" and body["declared_steps"] == 30
        assert body["images"] == [] and body["comfyui_prompt_id"] is None

        for i in range(2):
            assert client.post("/api/generations", json={"prompt": f"p{i}"}).status_code == 202

        g = client.get(f"/api/generations/{gid}")
        assert g.status_code == 200 and g.json()["settings"] == {"steps": 30}

        lst = client.get("/api/generations", params={"page": 1, "pageSize": 2})
        assert lst.status_code == 200
        data = lst.json()
        assert data["total"] == 3 and len(data["items"]) == 2
        assert data["has_more"] is True and data["page_size"] == 2
        last = client.get("/api/generations", params={"page": 2, "pageSize": 2}).json()
        assert last["has_more"] is False and last["items"][0]["id"] == gid

        filtered = client.get("/api/generations", params={"status": "completed"}).json()
        assert filtered["total"] == 0

        assert client.get("/api/generations", params={"pageSize": 51}).status_code == 422
        assert client.get("/api/generations", params={"status": "bogus"}).status_code == 422
        assert client.post("/api/generations", json={"prompt": ""}).status_code == 422

        # pending generations cannot be retried
        assert client.post(f"/api/generations/{gid}/retry").status_code == 404

        d = client.delete(f"/api/generations/{gid}")
        assert d.status_code == 200 and d.json() == {"id": gid, "deleted": True}
        assert client.delete(f"/api/generations/{gid}").status_code == 404
        assert client.get(f"/api/generations/{gid}").status_code == 404


def test_retry_after_inference_failure(tmp_db_path):
    inference = FakeInference()
    inference.queue_error = InferenceError("Failed to queue prompt: 400 - bad node")
    app = _make_app(tmp_db_path, queue=MemoryQueue(), inference=inference, worker_count=1)
    with TestClient(app) as client:
        gid = client.post("/api/generations", json={"prompt": "x"}).json()["id"]
        failed = _wait_status(client, gid, "failed")
        assert failed["error_message"] == "Failed to queue prompt: 400 - bad node"

        inference.queue_error = None
        r = client.post(f"/api/generations/{gid}/retry")
        assert r.status_code == 200 and r.json()["id"] == gid
        done = _wait_status(client, gid, "completed")
        assert done["error_message"] is None
        assert done["images"][0]["filename"] == "Flux2_00001_.png"


def test_progress_requires_prompt_id(tmp_db_path):
    app = _make_app(tmp_db_path)
    with TestClient(app) as client:
        for params in ({}, {"promptId": ""}):
            r = client.get("/api/generate/progress", params=params)
            assert r.status_code == 400
            assert r.json() == {"error": "promptId (generation ID) is required"}


def test_progress_stream_for_finished_generation(tmp_db_path):
    inference = FakeInference()
    app = _make_app(tmp_db_path, queue=MemoryQueue(), inference=inference, worker_count=1)
    with TestClient(app) as client:
        gid = client.post("/api/generations", json={"prompt": "x", "settings": {"steps": 8}}).json()["id"]
        _wait_status(client, gid, "completed")

        r = client.get(
            "/api/generate/progress", params={"promptId": gid, "imageIndex": 2, "totalImages": 3}
        )
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")
        assert r.headers["cache-control"] == "no-cache"

        events = _sse_events(r.text)
        assert [e["type"] for e in events] == ["connected", "progress", "complete"]
        assert events[0]["totalSteps"] == 8 and events[0]["imageIndex"] == 2
        assert events[-1] == {
            "type": "complete",
            "currentStep": 8,
            "totalSteps": 8,
            "percentage": 100,
            "imageIndex": 2,
            "totalImages": 3,
            "status": "Image 2 of 3 - Generation complete!",
        }
        # the live subscription was released when the stream ended
        assert all(s.unsubscribe_calls == 1 for s in inference.subscriptions)


def test_progress_stream_errors(tmp_db_path):
    app = _make_app(tmp_db_path)
    with TestClient(app) as client:
        events = _sse_events(client.get("/api/generate/progress", params={"promptId": "nope"}).text)
        assert events == [{"type": "error", "status": "Error", "message": "Generation not found"}]

    down = _make_app(tmp_db_path, inference=FakeInference(healthy=False))
    with TestClient(down) as client:
        events = _sse_events(client.get("/api/generate/progress", params={"promptId": "nope"}).text)
        assert events == [{"type": "error", "status": "Error", "message": "ComfyUI is not running"}]


def test_health_reports_inference_reachability(tmp_db_path):
    with TestClient(_make_app(tmp_db_path)) as client:
        assert client.get("/api/health").json() == {
            "status": "healthy",
            "service": "genbridge",
            "comfyui": True,
        }
    with TestClient(_make_app(tmp_db_path, inference=FakeInference(healthy=False))) as client:
        assert client.get("/api/health").json()["comfyui"] is False
