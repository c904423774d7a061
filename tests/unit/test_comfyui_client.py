import json

import httpx
import pytest

from genbridge.comfyui import ComfyUIClient, websocket_url, with_client_id
from genbridge.exceptions import InferenceError, InferenceUnavailableError


def _client(handler, **kwargs) -> ComfyUIClient:
    http = httpx.AsyncClient(base_url="http://comfy:8188", transport=httpx.MockTransport(handler))
    return ComfyUIClient("http://comfy:8188", http_client=http, auto_listen=False, **kwargs)


def test_websocket_url_derivation():
    assert websocket_url("http://127.0.0.1:8000", "abc") == "ws://127.0.0.1:8000/ws?clientId=abc"
    assert websocket_url("https://gpu.example/comfy/", "c1") == "wss://gpu.example/comfy/ws?clientId=c1"
    c = ComfyUIClient("http://h:1/", client_id="cid", auto_listen=False)
    assert c.ws_url == "ws://h:1/ws?clientId=cid"
    configured = ComfyUIClient("http://h:1", ws_url="ws://other/ws", client_id="cid", auto_listen=False)
    assert configured.ws_url == "ws://other/ws?clientId=cid"


def test_configured_websocket_url_keeps_existing_client_id():
    assert with_client_id("wss://gpu/ws?token=t", "c1") == "wss://gpu/ws?token=t&clientId=c1"
    assert with_client_id("ws://gpu/ws?clientId=mine", "c1") == "ws://gpu/ws?clientId=mine"


@pytest.mark.asyncio
async def test_health_check_paths():
    ok = _client(lambda req: httpx.Response(200, json={"system": {}}))
    assert await ok.health_check() is True

    bad = _client(lambda req: httpx.Response(503))
    assert await bad.health_check() is False

    def boom(req):
        raise httpx.ConnectError("refused", request=req)

    down = _client(boom)
    assert await down.health_check() is False
    for c in (ok, bad, down):
        await c.close()


@pytest.mark.asyncio
async def test_queue_prompt_sends_client_id_and_maps_errors():
    seen = {}

    def handler(req: httpx.Request):
        seen["body"] = json.loads(req.content)
        return httpx.Response(200, json={"prompt_id": "p-1", "number": 3})

    c = _client(handler, client_id="me")
    assert await c.queue_prompt({"1": {}}) == "p-1"
    assert seen["body"] == {"prompt": {"1": {}}, "client_id": "me"}

    rejected = _client(lambda req: httpx.Response(400, text="invalid prompt"))
    with pytest.raises(InferenceError) as ei:
        await rejected.queue_prompt({})
    assert ei.value.status_code == 400 and "invalid prompt" in str(ei.value)

    empty = _client(lambda req: httpx.Response(200, json={}))
    with pytest.raises(InferenceError):
        await empty.queue_prompt({})

    def boom(req):
        raise httpx.ConnectError("refused", request=req)

    with pytest.raises(InferenceUnavailableError):
        await _client(boom).queue_prompt({})


@pytest.mark.asyncio
async def test_wait_for_completion_and_extract_images():
    calls = {"n": 0}

    def handler(req: httpx.Request):
        assert req.url.path == "/history/p-1"
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(200, json={})
        return httpx.Response(
            200,
            json={
                "p-1": {
                    "status": {"completed": True, "status_str": "success"},
                    "outputs": {
                        "9": {"images": [{"filename": "F_0001.png", "subfolder": "s", "type": "output"}]},
                        "3": {"text": ["no images here"]},
                    },
                }
            },
        )

    c = _client(handler)
    history = await c.wait_for_completion("p-1", poll_interval=0)
    assert calls["n"] == 2
    images = c.extract_images(history)
    assert len(images) == 1
    assert images[0].filename == "F_0001.png" and images[0].subfolder == "s"
    assert images[0].url == "http://comfy:8188/view?filename=F_0001.png&subfolder=s&type=output"


@pytest.mark.asyncio
async def test_wait_for_completion_raises_on_execution_error():
    def handler(req):
        return httpx.Response(
            200,
            json={
                "p-2": {
                    "status": {
                        "status_str": "error",
                        "messages": [["execution_start", {}], ["execution_error", {"node_id": "13"}]],
                    }
                }
            },
        )

    with pytest.raises(InferenceError, match="Workflow execution failed"):
        await _client(handler).wait_for_completion("p-2", poll_interval=0)

    with pytest.raises(InferenceError):
        await _client(lambda req: httpx.Response(500)).get_history("p-3")


def test_message_dispatch_and_subscription_release():
    c = ComfyUIClient(auto_listen=False)
    ticks = []
    other = []
    sub = c.subscribe("p-1", lambda v, m: ticks.append((v, m)))
    c.subscribe("p-2", lambda v, m: other.append((v, m)))
    assert c.subscriber_count("p-1") == 1

    c.handle_message({"type": "execution_progress", "data": {"prompt_id": "p-1", "value": 1, "max": 20}})
    c.handle_message({"type": "progress", "data": {"prompt_id": "p-1", "value": 2, "max": 20}})
    c.handle_message({"type": "progress", "data": {"prompt_id": "p-1", "value": 3}})  # no max
    c.handle_message({"type": "executing", "data": {"prompt_id": "p-1"}})
    c.handle_message({"type": "progress", "data": {"prompt_id": "nobody", "value": 1, "max": 2}})
    assert ticks == [(1, 20), (2, 20)]
    assert other == []
    assert c.has_inference_progress("p-1")

    # aggregate node progress is ignored once inference progress exists
    nodes = {"13": {"value": 5, "max": 20}, "8": {"value": 1, "max": 1}}
    c.handle_message({"type": "progress_state", "data": {"prompt_id": "p-1", "nodes": nodes}})
    assert ticks == [(1, 20), (2, 20)]

    c.handle_message({"type": "progress_state", "data": {"prompt_id": "p-2", "nodes": nodes}})
    c.handle_message(
        {"type": "progress_state", "data": {"prompt_id": "p-2", "nodes": {"1": {"value": 0, "max": 0}}}}
    )
    assert other == [(6, 21)]

    sub.unsubscribe()
    sub.unsubscribe()
    assert not sub.active
    assert c.subscriber_count("p-1") == 0
    assert not c.has_inference_progress("p-1")


def test_callback_failures_do_not_stop_dispatch():
    c = ComfyUIClient(auto_listen=False)
    got = []

    def bad(v, m):
        raise ValueError("broken consumer")

    c.subscribe("p", bad)
    with c.subscribe("p", lambda v, m: got.append(v)):
        c.handle_message({"type": "progress", "data": {"prompt_id": "p", "value": 7, "max": 9}})
    assert got == [7]
    assert c.subscriber_count("p") == 1


@pytest.mark.asyncio
async def test_close_clears_subscriptions():
    c = ComfyUIClient(auto_listen=False)
    c.subscribe("p", lambda v, m: None)
    await c.close()
    assert c.subscriber_count("p") == 0
