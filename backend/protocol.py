"""
RpcSession — one WebSocket client's call/reply and event channel.

Frames are JSON-RPC 2.0 style:
    call:   {"id": 1, "method": "run", "params": {"prompt": "..."}}
    reply:  {"id": 1, "result": {...}}  or  {"id": 1, "error": {"code", "message", "data"}}
    event:  {"method": "tool_status", "params": {...}}

Replies and events share one outbound queue drained by a single sender task,
so a client sees everything in the order it was produced.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from config import WS_MAX_MESSAGE_SIZE
from core import AgentCore
from errors import BackendConnectionError, KestrelError, ProtocolError
from models import EmptyParams, ExecutionsParams, RpcRequest, RunParams, SetModelParams, TopicParams
from orchestration.events import Event, Topic

logger = logging.getLogger(__name__)


def _reply(request_id, result: Any) -> dict:
    return {"id": request_id, "result": result}


def _error(request_id, err: ProtocolError) -> dict:
    return {"id": request_id, "error": err.to_rpc_error()}


def _validation_details(e: ValidationError) -> list[dict]:
    return [{"loc": [str(p) for p in err["loc"]], "msg": err["msg"]} for err in e.errors()]


class RpcSession:
    def __init__(self, websocket, core: AgentCore):
        self.websocket = websocket
        self.core = core
        self.session_id = f"ws-{uuid.uuid4().hex[:8]}"
        self._queue: Optional[asyncio.Queue] = None
        self._sender: Optional[asyncio.Task] = None
        self._handlers = {
            "get_available_models": (EmptyParams, self._get_available_models),
            "set_selected_model": (SetModelParams, self._set_selected_model),
            "run": (RunParams, self._run),
            "interrupt_processing": (EmptyParams, self._interrupt_processing),
            "subscribe": (TopicParams, self._subscribe),
            "unsubscribe": (TopicParams, self._unsubscribe),
            "get_tool_executions": (ExecutionsParams, self._get_tool_executions),
            "reset_conversation": (EmptyParams, self._reset_conversation),
        }

    # ── Lifecycle ──

    async def open(self):
        self._queue = self.core.bus.attach(self.session_id)
        self._sender = asyncio.create_task(self._send_loop(), name=f"sender:{self.session_id}")
        await self._announce()
        logger.info("Client %s connected", self.session_id)

    async def close(self):
        self.core.bus.detach(self.session_id)
        if self._sender is not None:
            self._sender.cancel()
            try:
                await self._sender
            except asyncio.CancelledError:
                pass
        logger.info("Client %s disconnected", self.session_id)

    async def _announce(self):
        providers = await self.core.refresh_backends()
        info = self.core.backend_info()
        if self.core.has_reachable_provider():
            event = Event(Topic.BACKEND_CONNECTED,
                          {"models": self.core.get_available_models(), "backend_info": info})
        else:
            errors = [f"{name}: {p.get('error', 'unreachable')}" for name, p in providers.items()]
            message = "; ".join(errors) or "No inference providers configured"
            logger.warning("No reachable provider for %s: %s", self.session_id, message)
            event = Event(Topic.BACKEND_CONNECTION_ERROR, {"error": message, "backend_info": info})
        self._queue.put_nowait(event)

    def send_text(self, text: str):
        self._queue.put_nowait(text)

    async def _send_loop(self):
        while True:
            item = await self._queue.get()
            if isinstance(item, str):
                await self.websocket.send_text(item)
            elif isinstance(item, Event):
                await self.websocket.send_json(item.to_dict())
            else:
                await self.websocket.send_json(item)

    # ── Calls ──

    async def handle_text(self, data: str):
        """Parse one inbound frame and queue its reply."""
        self._queue.put_nowait(await self.process(data))

    async def process(self, data: str) -> dict:
        if len(data) > WS_MAX_MESSAGE_SIZE:
            return _error(None, ProtocolError(ProtocolError.INVALID_REQUEST, "Message too large"))
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            return _error(None, ProtocolError(ProtocolError.PARSE_ERROR, "Invalid JSON"))
        if not isinstance(payload, dict):
            return _error(None, ProtocolError(ProtocolError.INVALID_REQUEST, "Invalid message format"))
        try:
            request = RpcRequest.model_validate(payload)
        except ValidationError as e:
            return _error(payload.get("id") if isinstance(payload.get("id"), (int, str)) else None,
                          ProtocolError(ProtocolError.INVALID_REQUEST, "Invalid request",
                                        data=_validation_details(e)))
        return await self.dispatch(request)

    async def dispatch(self, request: RpcRequest) -> dict:
        try:
            entry = self._handlers.get(request.method)
            if entry is None:
                raise ProtocolError(ProtocolError.METHOD_NOT_FOUND,
                                    f"Unknown method: {request.method[:50]}")
            model, handler = entry
            try:
                params = model.model_validate(request.params)
            except ValidationError as e:
                raise ProtocolError(ProtocolError.INVALID_PARAMS, f"Invalid params for {request.method}",
                                    data=_validation_details(e))
            return _reply(request.id, await handler(params))
        except ProtocolError as e:
            logger.info("[%s] %s rejected: %s", self.session_id, request.method, e)
            return _error(request.id, e)
        except BackendConnectionError as e:
            logger.warning("[%s] %s: backend unavailable: %s", self.session_id, request.method, e)
            return _error(request.id, ProtocolError(ProtocolError.BACKEND_UNAVAILABLE, str(e)))
        except KestrelError as e:
            logger.error("[%s] %s failed: %s", self.session_id, request.method, e)
            return _error(request.id, ProtocolError(ProtocolError.INTERNAL_ERROR, str(e), data=e.to_dict()))

    # ── Handlers ──

    async def _get_available_models(self, params: BaseModel) -> dict:
        return {"models": self.core.get_available_models(), "selected_model": self.core.selected_model}

    async def _set_selected_model(self, params: SetModelParams) -> dict:
        return self.core.set_selected_model(params.model_index)

    async def _run(self, params: RunParams) -> dict:
        return self.core.run(params.prompt, params.model_index)

    async def _interrupt_processing(self, params: BaseModel) -> dict:
        return await self.core.interrupt_processing()

    async def _subscribe(self, params: TopicParams) -> dict:
        topic = self.core.bus.subscribe(self.session_id, params.topic)
        return {"topic": topic.value, "subscribed": True}

    async def _unsubscribe(self, params: TopicParams) -> dict:
        topic = self.core.bus.unsubscribe(self.session_id, params.topic)
        return {"topic": topic.value, "subscribed": False}

    async def _get_tool_executions(self, params: ExecutionsParams) -> dict:
        return {"executions": self.core.get_tool_executions(params.task_id)}

    async def _reset_conversation(self, params: BaseModel) -> dict:
        return self.core.reset_conversation()
