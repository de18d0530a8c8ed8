"""
Tests for the WebSocket RPC endpoint and the HTTP health routes.
Runs the real FastAPI app around a core wired to the scripted provider.
"""

import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import HANG, ScriptedProvider
from core import AgentCore
from errors import ProtocolError
from inference import FinalMessage, ProviderRouter, ToolCall, ToolCallRequest
from main import create_app
from orchestration.events import EventBus
from settings import ModelEntry


@pytest.fixture
def client(core):
    with TestClient(create_app(core)) as c:
        yield c


def _until(ws, method, limit=50):
    """Read frames until an event with `method` arrives. Returns (event, frames seen before it)."""
    seen = []
    for _ in range(limit):
        frame = ws.receive_json()
        if frame.get("method") == method:
            return frame, seen
        seen.append(frame)
    raise AssertionError(f"no {method} event in {limit} frames")


def _reply(ws, request_id, limit=50):
    for _ in range(limit):
        frame = ws.receive_json()
        if frame.get("id") == request_id and "method" not in frame:
            return frame
    raise AssertionError(f"no reply to {request_id}")


def _call(ws, request_id, method, **params):
    ws.send_text(json.dumps({"id": request_id, "method": method, "params": params}))
    return _reply(ws, request_id)


class TestHttp:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "ready": True, "task": None}

    def test_models(self, client):
        models = client.get("/api/models").json()
        assert [m["id"] for m in models] == ["scripted-model", "chat-model"]
        assert models[1]["supports_agent"] is False

    def test_backend_info(self, client):
        info = client.get("/api/backend").json()
        assert info["name"] == "kestrel"
        assert info["providers"]["scripted"]["reachable"] is True


class TestConnection:
    def test_backend_connected_on_open(self, client):
        with client.websocket_connect("/ws") as ws:
            event, _ = _until(ws, "backend_connected")
        params = event["params"]
        assert [m["id"] for m in params["models"]] == ["scripted-model", "chat-model"]
        assert params["backend_info"]["selected_model"] == 0

    def test_connection_error_when_no_provider_reachable(self, settings):
        router = ProviderRouter(settings)
        router.register_adapter(ScriptedProvider(reachable=False),
                                [ModelEntry(name="S", id="s", provider="scripted")])
        core = AgentCore(settings=settings, router=router, bus=EventBus())
        with TestClient(create_app(core)) as client:
            with client.websocket_connect("/ws") as ws:
                event, _ = _until(ws, "backend_connection_error")
        assert "offline" in event["params"]["error"]
        assert "backend_info" in event["params"]

    def test_ping_pong(self, client):
        with client.websocket_connect("/ws") as ws:
            _until(ws, "backend_connected")
            ws.send_text("ping")
            assert ws.receive_text() == "pong"

    def test_foreign_origin_rejected(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws", headers={"origin": "https://evil.example.com"}) as ws:
                ws.receive_json()
        assert exc.value.code == 4003

    def test_allowed_origin_accepted(self, client):
        with client.websocket_connect("/ws", headers={"origin": "http://localhost:3000"}) as ws:
            _until(ws, "backend_connected")


class TestProtocolErrors:
    def test_invalid_json(self, client):
        with client.websocket_connect("/ws") as ws:
            _until(ws, "backend_connected")
            ws.send_text("{not json")
            reply = ws.receive_json()
        assert reply == {"id": None, "error": {"code": ProtocolError.PARSE_ERROR, "message": "Invalid JSON"}}

    def test_non_object_frame(self, client):
        with client.websocket_connect("/ws") as ws:
            _until(ws, "backend_connected")
            ws.send_text("[1, 2]")
            assert ws.receive_json()["error"]["code"] == ProtocolError.INVALID_REQUEST

    def test_missing_method(self, client):
        with client.websocket_connect("/ws") as ws:
            _until(ws, "backend_connected")
            ws.send_text(json.dumps({"id": 4, "params": {}}))
            reply = _reply(ws, 4)
        assert reply["error"]["code"] == ProtocolError.INVALID_REQUEST

    def test_unknown_method(self, client):
        with client.websocket_connect("/ws") as ws:
            _until(ws, "backend_connected")
            reply = _call(ws, 1, "launch_rockets")
        assert reply["error"]["code"] == ProtocolError.METHOD_NOT_FOUND

    def test_invalid_params(self, client):
        with client.websocket_connect("/ws") as ws:
            _until(ws, "backend_connected")
            reply = _call(ws, "r1", "run", prompt="")
        assert reply["id"] == "r1"
        assert reply["error"]["code"] == ProtocolError.INVALID_PARAMS
        assert reply["error"]["data"][0]["loc"] == ["prompt"]

    def test_model_index_out_of_range(self, client):
        with client.websocket_connect("/ws") as ws:
            _until(ws, "backend_connected")
            reply = _call(ws, 2, "set_selected_model", model_index=9)
        assert reply["error"]["code"] == ProtocolError.INVALID_PARAMS

    def test_unknown_topic(self, client):
        with client.websocket_connect("/ws") as ws:
            _until(ws, "backend_connected")
            reply = _call(ws, 3, "subscribe", topic="weather")
        assert reply["error"]["code"] == ProtocolError.INVALID_PARAMS
        assert "tool_status" in reply["error"]["data"]["topics"]


class TestCalls:
    def test_get_and_set_models(self, client):
        with client.websocket_connect("/ws") as ws:
            _until(ws, "backend_connected")
            listing = _call(ws, 1, "get_available_models")["result"]
            selected = _call(ws, 2, "set_selected_model", model_index=1)["result"]
        assert listing["selected_model"] == 0
        assert len(listing["models"]) == 2
        assert selected == {"model_index": 1, "model": listing["models"][1]}

    def test_run_streams_events_until_complete(self, client, scripted_provider):
        scripted_provider.script = [
            ToolCallRequest(calls=[ToolCall(id="c1", name="glob_files", arguments={"pattern": "*.md"})]),
            FinalMessage(text="One markdown file."),
        ]
        with client.websocket_connect("/ws") as ws:
            _until(ws, "backend_connected")
            ws.send_text(json.dumps({"id": 7, "method": "run", "params": {"prompt": "find docs"}}))
            complete, frames = _until(ws, "processing_complete")
            executions = _call(ws, 8, "get_tool_executions")["result"]["executions"]

        [reply] = [f for f in frames if f.get("id") == 7]
        task_id = reply["result"]["task_id"]
        methods = [f["method"] for f in frames if "method" in f]
        assert methods[0] == "processing_started"
        assert methods.count("tool_status") == 2
        assert methods.count("tool_execution") == 2
        statuses = [f["params"]["execution"]["status"] for f in frames if f.get("method") == "tool_status"]
        assert statuses == ["running", "success"]
        assert complete["params"] == {"task_id": task_id, "response": "One markdown file.",
                                      "status": "completed"}
        assert [e["name"] for e in executions] == ["glob_files"]

    def test_unsubscribe_filters_events(self, client):
        with client.websocket_connect("/ws") as ws:
            _until(ws, "backend_connected")
            reply = _call(ws, 1, "unsubscribe", topic="processing_progress")
            assert reply["result"] == {"topic": "processing_progress", "subscribed": False}
            _call(ws, 2, "run", prompt="hello")
            _, frames = _until(ws, "processing_complete")
        assert not any(f.get("method") == "processing_progress" for f in frames)

    def test_busy_and_interrupt(self, client, scripted_provider):
        scripted_provider.script = [HANG]
        with client.websocket_connect("/ws") as ws:
            _until(ws, "backend_connected")
            first = _call(ws, 1, "run", prompt="think")
            busy = _call(ws, 2, "run", prompt="again")
            ws.send_text(json.dumps({"id": 3, "method": "interrupt_processing", "params": {}}))
            stopped = error = None
            while stopped is None or error is None:
                frame = ws.receive_json()
                if frame.get("id") == 3:
                    stopped = frame
                elif frame.get("method") == "processing_error":
                    error = frame
        assert busy["error"]["code"] == ProtocolError.BUSY
        assert stopped["result"]["interrupted"] is True
        assert stopped["result"]["task_id"] == first["result"]["task_id"]
        assert error["params"]["kind"] == "interrupted"
        assert error["params"]["error"] == "Task interrupted by user"

    def test_reset_conversation(self, client):
        with client.websocket_connect("/ws") as ws:
            _until(ws, "backend_connected")
            _call(ws, 1, "run", prompt="hello")
            _until(ws, "processing_complete")
            reply = _call(ws, 2, "reset_conversation")
        assert reply["result"] == {"cleared": 2}
